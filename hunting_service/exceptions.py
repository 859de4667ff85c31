"""
服务异常定义
每个异常携带对外返回的 HTTP 状态码，由 main.py 中的异常处理器统一转换
"""

from typing import Optional


class HuntingServiceError(Exception):
    """服务内所有业务异常的基类"""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(HuntingServiceError):
    """TENANT_ID / CLIENT_ID / CLIENT_SECRET 未配置"""

    status_code = 500


class TokenAcquisitionError(HuntingServiceError):
    """无法从身份提供方获取访问令牌"""

    status_code = 502


class HuntingQueryError(HuntingServiceError):
    """狩猎 API 拒绝了查询或请求失败"""

    status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        if status_code is None and upstream_status == 400:
            status_code = 400
        super().__init__(message, status_code)
        self.upstream_status = upstream_status


class HuntingRateLimitError(HuntingServiceError):
    """狩猎 API 限流（HTTP 429）"""

    status_code = 429

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class HuntingResponseError(HuntingServiceError):
    """上游响应不是 JSON 或缺少必要字段"""

    status_code = 502


class StorageUnavailableError(HuntingServiceError):
    """需要 MongoDB 但当前不可用"""

    status_code = 503
