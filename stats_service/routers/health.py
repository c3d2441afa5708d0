"""健康检查路由"""

import time

from fastapi import APIRouter

from stats_service import __version__
from stats_service.chains import get_chains, mainnet_chains

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health():
    """服务健康检查"""
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Avalanche Stats Service",
            "chains": len(mainnet_chains(get_chains())),
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes 存活检查"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes 就绪检查"""
    return {"ready": True}
