"""
Layer 1b – 数据获取层
携带 Bearer 令牌向高级狩猎 API 提交查询，解析 Schema / Results，
统一为 HuntingResult 向上层提供。
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from hunting_service.config import HuntingServiceSettings, settings as default_settings
from hunting_service.exceptions import (
    HuntingQueryError,
    HuntingRateLimitError,
    HuntingResponseError,
)
from hunting_service.layers.token import (
    AccessToken,
    TokenProvider,
    extract_error_detail,
    get_token_provider,
)

logger = logging.getLogger(__name__)


class SchemaColumn(BaseModel):
    name: str
    type: str = "String"


class HuntingResult(BaseModel):
    """一次狩猎查询的结果集"""
    columns: List[SchemaColumn] = Field(default_factory=list)
    results: List[Dict[str, Any]] = Field(default_factory=list)
    stats: Optional[Dict[str, Any]] = None

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


def _lookup(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_hunting_payload(payload: Any) -> HuntingResult:
    """解析狩猎 API 的 JSON 响应体"""
    if not isinstance(payload, dict):
        raise HuntingResponseError("狩猎 API 返回的不是 JSON 对象")

    results = _lookup(payload, "Results", "results")
    if not isinstance(results, list):
        raise HuntingResponseError("狩猎 API 响应缺少 Results 字段")

    columns = []
    for col in _lookup(payload, "Schema", "schema") or []:
        if not isinstance(col, dict):
            continue
        name = _lookup(col, "Name", "name")
        if name:
            columns.append(SchemaColumn(name=name, type=_lookup(col, "Type", "type") or "String"))

    stats = _lookup(payload, "Stats", "stats")
    return HuntingResult(
        columns=columns,
        results=[r for r in results if isinstance(r, dict)],
        stats=stats if isinstance(stats, dict) else None,
    )


class AcquisitionLayer:
    """数据获取层：令牌 + 狩猎查询"""

    def __init__(
        self,
        token_provider: Optional[TokenProvider] = None,
        settings: Optional[HuntingServiceSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings or default_settings
        self._tokens = token_provider or get_token_provider()
        self._transport = transport

    async def run_query(self, query: str) -> HuntingResult:
        """提交查询并返回结果；令牌被拒（401）时刷新后重试一次"""
        if not query or not query.strip():
            raise ValueError("查询语句不能为空")

        token = await self._tokens.get_token()
        resp = await self._post_query(query, token)
        if resp.status_code == 401:
            logger.info("狩猎 API 返回 401，刷新令牌后重试")
            token = await self._tokens.get_token(rejected=token)
            resp = await self._post_query(query, token)

        result = self._parse_response(resp)
        logger.info(f"狩猎查询完成，共 {len(result.results)} 条记录")
        return result

    async def _post_query(self, query: str, token: AccessToken) -> httpx.Response:
        headers = {
            "Authorization": token.authorization,
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.HTTP_TIMEOUT, transport=self._transport
            ) as client:
                return await client.post(
                    self._settings.HUNTING_API_URL,
                    json={"Query": query},
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            raise HuntingQueryError(f"狩猎 API 请求失败: {exc}") from exc

    def _parse_response(self, resp: httpx.Response) -> HuntingResult:
        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if resp.status_code == 429:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            raise HuntingRateLimitError("狩猎 API 限流，请稍后重试", retry_after=retry_after)
        if not resp.is_success:
            detail = extract_error_detail(payload) or resp.text[:200]
            raise HuntingQueryError(
                f"狩猎 API 返回 {resp.status_code}: {detail}",
                upstream_status=resp.status_code,
            )
        return parse_hunting_payload(payload)


# ── 模块级别单例 ──────────────────────────────────────────
_acquisition: Optional[AcquisitionLayer] = None


def get_acquisition_layer() -> AcquisitionLayer:
    global _acquisition
    if _acquisition is None:
        _acquisition = AcquisitionLayer()
    return _acquisition
