"""
缓存管理路由
GET  /api/cache/stats     - 缓存统计
POST /api/cache/clear     - 清理缓存（按命名空间或查询语句）
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from hunting_service.models.response import ApiResponse
from hunting_service.routers.auth import get_current_user
from hunting_service.services.auth_service import Principal
from hunting_service.layers.cache import get_cache_layer, query_fingerprint

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


class ClearRequest(BaseModel):
    namespace: str = "hunting"
    key_parts: Optional[List[str]] = None
    query: Optional[str] = None


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(current_user: Principal = Depends(get_current_user)):
    """获取缓存统计信息（各后端键数量）"""
    stats = await get_cache_layer().stats()
    return ApiResponse.ok(data=stats)


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(body: ClearRequest, current_user: Principal = Depends(get_current_user)):
    """清理缓存条目；提供 query 时按查询指纹定位"""
    if body.query:
        parts = [query_fingerprint(body.query)]
    else:
        parts = body.key_parts or []
    if not parts:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="需要提供 query 或 key_parts",
        )
    await get_cache_layer().delete(body.namespace, *parts)
    return ApiResponse.ok(message=f"缓存已清理: {body.namespace}:{':'.join(parts)}")
