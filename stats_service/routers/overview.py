"""
概览统计路由
GET /api/overview-stats   - 全部链的指标概览与汇总
"""

from fastapi import APIRouter, Query, Response

from stats_service.models.metrics import OverviewMetrics
from stats_service.services.overview_service import get_overview_service

router = APIRouter(prefix="/api", tags=["概览统计"])


@router.get("/overview-stats", response_model=OverviewMetrics)
async def overview_stats(
    response: Response,
    clear_cache: bool = Query(default=False, alias="clearCache", description="清空缓存并强制刷新"),
):
    """获取各链指标与按日期汇总的总量"""
    result = await get_overview_service().get_overview(bypass_cache=clear_cache)

    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    response.headers["X-Data-Source"] = result.source
    response.headers["X-Chain-Count"] = str(result.total_chains - result.failed_chains)
    response.headers["X-Failed-Chains"] = str(result.failed_chains)
    response.headers["X-Fetch-Time"] = f"{result.fetch_time_ms}ms"
    if result.source != "fresh":
        response.headers["X-Cache-Age"] = f"{round(result.cache_age_ms / 1000)}s"
    return result.data
