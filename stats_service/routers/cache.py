"""
缓存管理路由
GET  /api/cache/stats     - 各缓存的命中与在途统计
POST /api/cache/clear     - 清空全部缓存
"""

from fastapi import APIRouter

from stats_service.models.response import ApiResponse
from stats_service.services.overview_service import get_overview_service
from stats_service.services.validator_service import get_validator_stats_service

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


def _all_caches():
    return get_overview_service().caches + get_validator_stats_service().caches


@router.get("/stats", response_model=ApiResponse)
async def cache_stats():
    """获取各缓存统计信息"""
    return ApiResponse.ok(data={c.name: c.stats() for c in _all_caches()})


@router.post("/clear", response_model=ApiResponse)
async def clear_cache():
    """清空概览与验证者缓存（在途请求不受影响）"""
    get_overview_service().clear_caches()
    get_validator_stats_service().clear_caches()
    return ApiResponse.ok(message=f"缓存已清理: {', '.join(c.name for c in _all_caches())}")
