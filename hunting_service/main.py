"""
Hunting 数据服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn hunting_service.main:app --host 0.0.0.0 --port 8002
    python -m hunting_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hunting_service import __version__
from hunting_service.config import settings
from hunting_service.db import init_mongodb, init_redis, close_connections
from hunting_service.exceptions import HuntingRateLimitError, HuntingServiceError
from hunting_service.models.response import ApiResponse
from hunting_service.routers import health, auth, hunting, saved, cache

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Hunting DataService v{__version__} 启动中")
    logger.info(f"   Token     : {settings.AUTHORITY_HOST} (tenant={settings.TENANT_ID or '-'})")
    logger.info(f"   Hunting   : {settings.HUNTING_API_URL}")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info("=" * 60)

    if not settings.CREDENTIALS_CONFIGURED:
        logger.warning("⚠️ 未配置 TENANT_ID / CLIENT_ID / CLIENT_SECRET，查询接口将不可用")

    # 初始化数据库连接（失败不阻断启动，降级运行）
    mongo_ok = await init_mongodb()
    redis_ok = await init_redis()

    if mongo_ok and redis_ok:
        logger.info("✅ 所有数据库连接就绪")
    elif mongo_ok:
        logger.warning("⚠️ Redis 不可用，缓存降级为 MongoDB + 文件模式")
    elif redis_ok:
        logger.warning("⚠️ MongoDB 不可用，常用查询不可用，缓存降级为 Redis + 文件模式")
    else:
        logger.warning("⚠️ 数据库均不可用，降级为文件缓存模式")

    yield

    logger.info("🔄 Hunting 数据服务正在关闭...")
    await close_connections()
    logger.info("✅ Hunting 数据服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Hunting 数据服务",
    description=(
        "为报表工具提供威胁狩猎数据的微服务：\n"
        "- 🔑 OAuth2 客户端凭据换取访问令牌（自动缓存与刷新）\n"
        "- 🔎 执行高级狩猎查询，返回 JSON 或 CSV\n"
        "- 📌 常用查询按名称保存，报表工具可直接 GET 拉取\n"
        "- 🗄️ 多级缓存（Redis → MongoDB → 文件）\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 令牌获取 + 狩猎 API 调用\n"
        "Cache Layer        ← Redis / MongoDB / 文件三级缓存\n"
        "Processing Layer   ← 按 Schema 规范化、列筛选、CSV 导出\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 异常处理 ──────────────────────────────────────────────
@app.exception_handler(HuntingServiceError)
async def hunting_exception_handler(request: Request, exc: HuntingServiceError):
    logger.warning(f"{type(exc).__name__}: {exc.message}")
    headers = {}
    if isinstance(exc, HuntingRateLimitError) and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse.from_exception(exc).model_dump(),
        headers=headers,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(hunting.router)
app.include_router(saved.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Hunting DataService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "hunting_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
