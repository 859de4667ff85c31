"""
常用查询路由
GET    /api/hunting/saved               - 列出常用查询
POST   /api/hunting/saved               - 保存常用查询
GET    /api/hunting/saved/{name}        - 查看常用查询
DELETE /api/hunting/saved/{name}        - 删除常用查询
GET    /api/hunting/saved/{name}/run    - 执行常用查询（format=json / csv）
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from pydantic import BaseModel, Field

from hunting_service.models.response import ApiResponse
from hunting_service.routers.auth import get_current_user
from hunting_service.routers.hunting import CSV_MEDIA_TYPE
from hunting_service.services.auth_service import Principal
from hunting_service.services.query_service import get_query_service
from hunting_service.services.saved_query_service import get_saved_query_service

router = APIRouter(prefix="/api/hunting/saved", tags=["常用查询"])


class SavedQueryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.-]+$")
    query: str = Field(..., min_length=1)
    description: str = ""


async def _require(name: str) -> dict:
    saved = await get_saved_query_service().get_query(name)
    if saved is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"常用查询 '{name}' 不存在")
    return saved


@router.get("", response_model=ApiResponse)
async def list_saved(current_user: Principal = Depends(get_current_user)):
    queries = await get_saved_query_service().list_queries()
    return ApiResponse.ok(data={"queries": queries, "count": len(queries)})


@router.post("", response_model=ApiResponse)
async def create_saved(body: SavedQueryRequest, current_user: Principal = Depends(get_current_user)):
    ok = await get_saved_query_service().save_query(
        body.name, body.query, body.description, created_by=current_user.username
    )
    if not ok:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"常用查询 '{body.name}' 已存在",
        )
    return ApiResponse.ok(message=f"常用查询 '{body.name}' 保存成功")


@router.get("/{name}", response_model=ApiResponse)
async def get_saved(name: str, current_user: Principal = Depends(get_current_user)):
    return ApiResponse.ok(data=await _require(name))


@router.delete("/{name}", response_model=ApiResponse)
async def delete_saved(name: str, current_user: Principal = Depends(get_current_user)):
    if not await get_saved_query_service().delete_query(name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"常用查询 '{name}' 不存在")
    return ApiResponse.ok(message=f"常用查询 '{name}' 已删除")


@router.get("/{name}/run")
async def run_saved(
    name: str,
    format: str = Query(default="json", pattern="^(json|csv)$"),
    force_refresh: bool = Query(default=False),
    current_user: Principal = Depends(get_current_user),
):
    """执行常用查询；报表工具可直接以 GET 拉取"""
    saved = await _require(name)
    svc = get_query_service()
    if format == "csv":
        content = await svc.run_query_csv(saved["query"], force_refresh=force_refresh)
        return Response(content=content, media_type=CSV_MEDIA_TYPE)
    data = await svc.run_query(saved["query"], force_refresh=force_refresh)
    return ApiResponse.ok(data=data)
