"""
Layer 1a – 令牌获取
OAuth2 客户端凭据流程：以 grant_type / resource / client_id / client_secret
换取访问令牌，内存缓存至到期前 TOKEN_REFRESH_MARGIN 秒。
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from hunting_service.config import HuntingServiceSettings, settings as default_settings
from hunting_service.exceptions import ConfigurationError, TokenAcquisitionError

logger = logging.getLogger(__name__)

_DEFAULT_LIFETIME = 3600


class AccessToken(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_at: float

    def is_expired(self, margin: int = 0, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at - margin

    @property
    def authorization(self) -> str:
        return f"Bearer {self.access_token}"


def extract_error_detail(payload: Any) -> Optional[str]:
    """从上游错误响应中提取可读的错误描述（兼容 OAuth2 与狩猎 API 两种格式）"""
    if not isinstance(payload, dict):
        return None
    if payload.get("error_description"):
        return str(payload["error_description"])
    error = payload.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("code")
    if error:
        return str(error)
    return payload.get("message")


def _parse_expiry(payload: Dict[str, Any], now: float) -> float:
    """expires_on 为绝对时间戳，expires_in 为相对秒数；两者可能是字符串"""
    expires_on = payload.get("expires_on")
    if expires_on is not None:
        try:
            return float(expires_on)
        except (TypeError, ValueError):
            logger.debug(f"无法解析 expires_on: {expires_on!r}")
    expires_in = payload.get("expires_in")
    if expires_in is not None:
        try:
            return now + float(expires_in)
        except (TypeError, ValueError):
            logger.debug(f"无法解析 expires_in: {expires_in!r}")
    return now + _DEFAULT_LIFETIME


class TokenProvider:
    """客户端凭据令牌提供者，带内存缓存与并发刷新保护"""

    def __init__(
        self,
        settings: Optional[HuntingServiceSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings or default_settings
        self._transport = transport
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    def build_request_body(self) -> Dict[str, str]:
        return {
            "grant_type": self._settings.GRANT_TYPE,
            "resource": self._settings.RESOURCE,
            "client_id": self._settings.CLIENT_ID,
            "client_secret": self._settings.CLIENT_SECRET,
        }

    async def fetch_token(self) -> AccessToken:
        """向令牌端点发起一次请求（不使用缓存）"""
        if not self._settings.CREDENTIALS_CONFIGURED:
            raise ConfigurationError("TENANT_ID / CLIENT_ID / CLIENT_SECRET 未配置")

        url = self._settings.TOKEN_URL
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.HTTP_TIMEOUT, transport=self._transport
            ) as client:
                resp = await client.post(url, data=self.build_request_body())
        except httpx.HTTPError as exc:
            raise TokenAcquisitionError(f"令牌请求失败: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if not resp.is_success:
            detail = extract_error_detail(payload) or resp.text[:200]
            raise TokenAcquisitionError(f"令牌端点返回 {resp.status_code}: {detail}")
        if not isinstance(payload, dict):
            raise TokenAcquisitionError("令牌端点返回的不是 JSON 对象")

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenAcquisitionError("令牌响应缺少 access_token 字段")

        token = AccessToken(
            access_token=access_token,
            token_type=payload.get("token_type") or "Bearer",
            expires_at=_parse_expiry(payload, time.time()),
        )
        logger.info(f"访问令牌获取成功，有效期至 {int(token.expires_at)}")
        return token

    def _reusable(
        self, token: Optional[AccessToken], force_refresh: bool, rejected: Optional[AccessToken]
    ) -> bool:
        if token is None or token.is_expired(self._settings.TOKEN_REFRESH_MARGIN):
            return False
        if rejected is not None:
            # 只要缓存的已不是被拒的那个令牌，说明别的协程已经换过
            return token.access_token != rejected.access_token
        return not force_refresh

    async def get_token(
        self,
        force_refresh: bool = False,
        rejected: Optional[AccessToken] = None,
    ) -> AccessToken:
        """
        返回有效令牌，缓存过期或强制刷新时重新获取

        Args:
            force_refresh: 无条件重新获取
            rejected: 被上游拒绝（401）的令牌；缓存仍是它时才重新获取，
                并发收到 401 的调用方共用同一次刷新
        """
        if self._reusable(self._token, force_refresh, rejected):
            return self._token

        async with self._lock:
            # 等锁期间其他协程可能已完成刷新
            if self._reusable(self._token, force_refresh, rejected):
                return self._token
            self._token = await self.fetch_token()
            return self._token

    def status(self) -> Dict[str, Any]:
        token = self._token
        return {
            "configured": self._settings.CREDENTIALS_CONFIGURED,
            "cached": token is not None and not token.is_expired(),
            "expires_at": int(token.expires_at) if token is not None else None,
        }


# ── 模块级别单例 ──────────────────────────────────────────
_token_provider: Optional[TokenProvider] = None


def get_token_provider() -> TokenProvider:
    global _token_provider
    if _token_provider is None:
        _token_provider = TokenProvider()
    return _token_provider
