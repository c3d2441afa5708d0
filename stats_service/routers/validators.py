"""
验证者统计路由
GET /api/validator-stats?network=mainnet|fuji   - 各子网质押与客户端版本分布
"""

from typing import List, Optional

from fastapi import APIRouter, Query, Response

from stats_service.models.metrics import SubnetStats
from stats_service.services.validator_service import get_validator_stats_service

router = APIRouter(prefix="/api", tags=["验证者统计"])


@router.get("/validator-stats", response_model=List[SubnetStats])
async def validator_stats(
    response: Response,
    network: Optional[str] = Query(default=None, description="网络: mainnet / fuji"),
):
    """获取指定网络的子网质押统计（质押量为完整精度的十进制字符串）"""
    stats = await get_validator_stats_service().get_network_stats(network)
    response.headers["Cache-Control"] = "public, max-age=300, stale-while-revalidate=600"
    response.headers["X-Network"] = network
    return stats
