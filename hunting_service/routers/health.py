"""健康检查路由"""

import time

from fastapi import APIRouter

from hunting_service import __version__
from hunting_service.db import check_health
from hunting_service.layers.token import get_token_provider

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health():
    """服务健康检查（含数据库与上游令牌状态）"""
    db_health = await check_health()
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Hunting DataService",
            "databases": db_health,
            "upstream": get_token_provider().status(),
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe：未配置客户端凭据时视为未就绪"""
    return {"ready": get_token_provider().status()["configured"]}
