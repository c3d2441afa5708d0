"""
Avalanche 网络统计聚合服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn stats_service.main:app --host 0.0.0.0 --port 8001
    python -m stats_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stats_service import __version__
from stats_service.chains import get_chains
from stats_service.config import settings
from stats_service.errors import StatsServiceError
from stats_service.layers.acquisition import get_acquisition_layer
from stats_service.models.response import ApiResponse
from stats_service.routers import cache, health, overview, validators
from stats_service.services.overview_service import get_overview_service
from stats_service.services.validator_service import get_validator_stats_service

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
    logger.info(f"🚀 Avalanche Stats Service v{__version__} 启动中")
    logger.info(f"   Metrics API : {settings.METRICS_API_URL}")
    logger.info(f"   Data API    : {settings.DATA_API_URL}")
    logger.info(f"   ICM API     : {settings.ICM_API_URL}")
    logger.info(
        f"   缓存 TTL    : 快照 {settings.SNAPSHOT_CACHE_TTL}s / 单链 {settings.CHAIN_CACHE_TTL}s"
        f" / 验证者 {settings.VALIDATOR_CACHE_TTL}s / 版本 {settings.VERSION_CACHE_TTL}s"
    )
    logger.info("=" * 60)

    # 配置错误只影响概览接口，不阻断启动
    try:
        chains = get_chains()
        logger.info(f"✅ 已加载 {len(chains)} 条链配置")
    except StatsServiceError as exc:
        logger.error(f"⚠️ 链配置不可用，概览接口将返回错误: {exc}")

    yield

    logger.info("🔄 统计服务正在关闭...")
    await get_overview_service().close()
    await get_validator_stats_service().close()
    await get_acquisition_layer().close()
    logger.info("✅ 统计服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Avalanche 网络统计服务",
    description=(
        "面向看板的只读统计接口：\n"
        "- 📊 各链交易数 / 活跃地址 / ICM 消息量，按日期汇总\n"
        "- 🛡️ 各子网验证者质押与客户端版本分布\n"
        "- 🗄️ 单飞 TTL 缓存，部分数据源失败时仍返回其余数据\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 上游数据源适配器\n"
        "Cache Layer        ← 进程内 TTL 缓存 + single-flight\n"
        "Processing Layer   ← 数据点清洗与新鲜度策略\n"
        "Aggregation Layer  ← 按日期 / 按子网汇总\n"
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
@app.exception_handler(StatsServiceError)
async def stats_error_handler(request: Request, exc: StatsServiceError):
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(level, f"{request.url.path} 请求失败（{type(exc).__name__}）: {exc.message}")
    body = ApiResponse.fail(error=exc.message, message=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(overview.router)
app.include_router(validators.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Avalanche Stats Service",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "stats_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
