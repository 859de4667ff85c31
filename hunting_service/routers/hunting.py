"""
狩猎查询路由
POST /api/hunting/query        - 执行查询，返回 JSON 结果集
POST /api/hunting/query/csv    - 执行查询，返回 CSV
GET  /api/hunting/token        - 上游令牌状态（不返回令牌本身）
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from pydantic import BaseModel, Field

from hunting_service.layers.token import get_token_provider
from hunting_service.models.response import ApiResponse
from hunting_service.routers.auth import get_current_user
from hunting_service.services.auth_service import Principal
from hunting_service.services.query_service import get_query_service

router = APIRouter(prefix="/api/hunting", tags=["狩猎查询"])

CSV_MEDIA_TYPE = "text/csv; charset=utf-8"


class QueryRequest(BaseModel):
    query: str = Field(..., min_length=1, description="查询语句，原样转发给狩猎 API")
    force_refresh: bool = False
    columns: Optional[List[str]] = Field(default=None, description="只返回这些列")
    limit: Optional[int] = Field(default=None, ge=1, description="最多返回的行数")


@router.post("/query", response_model=ApiResponse)
async def run_query(body: QueryRequest, current_user: Principal = Depends(get_current_user)):
    """执行狩猎查询"""
    svc = get_query_service()
    try:
        data = await svc.run_query(
            body.query,
            force_refresh=body.force_refresh,
            columns=body.columns,
            limit=body.limit,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return ApiResponse.ok(data=data, message=f"查询成功，共 {data['count']} 条记录")


@router.post("/query/csv")
async def run_query_csv(body: QueryRequest, current_user: Principal = Depends(get_current_user)):
    """执行狩猎查询并以 CSV 返回，便于报表工具直接导入"""
    svc = get_query_service()
    try:
        content = await svc.run_query_csv(
            body.query,
            force_refresh=body.force_refresh,
            columns=body.columns,
            limit=body.limit,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return Response(content=content, media_type=CSV_MEDIA_TYPE)


@router.get("/token", response_model=ApiResponse)
async def token_status(current_user: Principal = Depends(get_current_user)):
    """查看上游访问令牌缓存状态"""
    return ApiResponse.ok(data=get_token_provider().status())
