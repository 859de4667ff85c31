"""
狩猎查询服务
整合数据获取、缓存、处理三层，对外提供统一的查询接口
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from hunting_service.config import settings
from hunting_service.layers.acquisition import HuntingResult, get_acquisition_layer
from hunting_service.layers.cache import get_cache_layer, query_fingerprint
from hunting_service.layers.processing import get_processing_layer

logger = logging.getLogger(__name__)

_QUERY_CACHE_NS = "hunting"


class QueryService:
    """狩猎查询业务服务"""

    def __init__(self):
        self._acq = get_acquisition_layer()
        self._cache = get_cache_layer()
        self._proc = get_processing_layer()

    async def _load(
        self, query: str, force_refresh: bool
    ) -> Tuple[HuntingResult, pd.DataFrame, bool, str]:
        """读取缓存或执行查询，返回 (结果, 规范化后的 DataFrame, 是否命中缓存, 指纹)"""
        fingerprint = query_fingerprint(query)

        if not force_refresh:
            cached = await self._cache.get(_QUERY_CACHE_NS, fingerprint)
            if cached is not None:
                result = HuntingResult(
                    columns=cached.get("schema") or [],
                    results=cached.get("results") or [],
                    stats=cached.get("stats"),
                )
                return result, self._proc.to_frame(result), True, fingerprint

        result = await self._acq.run_query(query)
        df = self._proc.normalize(self._proc.to_frame(result), result.columns)

        await self._cache.set(
            {
                "schema": [c.model_dump() for c in result.columns],
                "results": self._proc.to_records(df),
                "stats": result.stats,
            },
            _QUERY_CACHE_NS,
            fingerprint,
            ttl=settings.QUERY_CACHE_TTL,
        )
        return result, df, False, fingerprint

    async def run_query(
        self,
        query: str,
        force_refresh: bool = False,
        columns: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        执行狩猎查询（带三级缓存）

        Args:
            query: 查询语句，原样发送给狩猎 API
            force_refresh: 是否跳过缓存
            columns: 只返回指定列
            limit: 最多返回的行数
        """
        result, df, cached, fingerprint = await self._load(query, force_refresh)
        df = self._proc.limit(self._proc.select_columns(df, columns), limit)

        schema = [c.model_dump() for c in result.columns]
        if columns:
            schema = [c for c in schema if c["name"] in columns]

        return {
            "fingerprint": fingerprint,
            "cached": cached,
            "schema": schema,
            "count": len(df),
            "results": self._proc.to_records(df),
            "stats": result.stats,
        }

    async def run_query_csv(
        self,
        query: str,
        force_refresh: bool = False,
        columns: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> str:
        """执行查询并导出为 CSV 文本"""
        _, df, _, _ = await self._load(query, force_refresh)
        df = self._proc.limit(self._proc.select_columns(df, columns), limit)
        return self._proc.to_csv(df)


# ── 模块级别单例 ──────────────────────────────────────────
_query_service: Optional[QueryService] = None


def get_query_service() -> QueryService:
    global _query_service
    if _query_service is None:
        _query_service = QueryService()
    return _query_service
