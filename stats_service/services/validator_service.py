"""
验证者 / 子网质押统计服务
验证者列表、子网列表、客户端版本三路并发获取（各自带缓存），再按子网汇总质押
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from stats_service.chains import get_chains, subnet_display_info
from stats_service.config import SUPPORTED_NETWORKS, settings
from stats_service.errors import AggregateTimeout, StatsServiceError, ValidationError
from stats_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from stats_service.layers.aggregation import StakeAggregator
from stats_service.layers.cache import CacheStore
from stats_service.models.metrics import (
    ChainConfig,
    SubnetRecord,
    SubnetStats,
    ValidatorRecord,
)

logger = logging.getLogger(__name__)


def validate_network(network: Optional[str]) -> str:
    if network not in SUPPORTED_NETWORKS:
        raise ValidationError(
            f"network 参数缺失或非法，可选值: {', '.join(SUPPORTED_NETWORKS)}",
            source="validator_stats",
        )
    return network


class ValidatorStatsService:
    """子网质押统计的请求协调器"""

    def __init__(
        self,
        acquisition: Optional[AcquisitionLayer] = None,
        chains: Optional[Tuple[ChainConfig, ...]] = None,
        validator_cache: Optional[CacheStore] = None,
        subnet_cache: Optional[CacheStore] = None,
        version_cache: Optional[CacheStore] = None,
        deadline: Optional[float] = None,
    ):
        self._acq = acquisition or get_acquisition_layer()
        self._chains = chains
        self._validator_cache = validator_cache or CacheStore("validators", len(SUPPORTED_NETWORKS))
        self._subnet_cache = subnet_cache or CacheStore("subnets", len(SUPPORTED_NETWORKS))
        self._version_cache = version_cache or CacheStore("validator_versions", len(SUPPORTED_NETWORKS))
        self._deadline = deadline or settings.VALIDATOR_STATS_DEADLINE
        self._aggregator = StakeAggregator()

    @property
    def caches(self) -> List[CacheStore]:
        return [self._validator_cache, self._subnet_cache, self._version_cache]

    async def get_network_stats(self, network: Optional[str]) -> List[SubnetStats]:
        """
        获取指定网络各子网的质押分布

        Raises:
            ValidationError: network 非 mainnet / fuji
            AggregateTimeout: 超过整体截止时间
            UpstreamError / UpstreamTimeout: 验证者或子网列表获取失败且无可用缓存
        """
        network = validate_network(network)
        try:
            validators, subnets, versions = await asyncio.wait_for(
                asyncio.gather(
                    self._validators(network),
                    self._subnets(network),
                    self._versions(network),
                ),
                timeout=self._deadline,
            )
        except asyncio.TimeoutError:
            raise AggregateTimeout(
                f"{network} 验证者统计超时（{self._deadline}s）", source="validator_stats"
            ) from None

        logger.info(
            f"[{network}] 验证者 {len(validators)}，子网 {len(subnets)}，版本数据 {len(versions)}"
        )
        stats = self._aggregator.aggregate(
            subnets, validators, versions, display=self._display_info(network)
        )
        return stats

    def clear_caches(self) -> None:
        for cache in self.caches:
            cache.clear()

    async def close(self) -> None:
        for cache in self.caches:
            await cache.close()

    # ── 三路数据源 ────────────────────────────────────────

    async def _validators(self, network: str) -> List[ValidatorRecord]:
        return await self._validator_cache.get(
            network,
            settings.VALIDATOR_CACHE_TTL,
            lambda: self._acq.data_api.list_validators(network),
            stale_on_error=True,
        )

    async def _subnets(self, network: str) -> List[SubnetRecord]:
        return await self._subnet_cache.get(
            network,
            settings.SUBNET_CACHE_TTL,
            lambda: self._acq.data_api.list_subnets(network),
            stale_on_error=True,
        )

    async def _versions(self, network: str) -> Dict[str, str]:
        """版本源失败时优先使用过期缓存，再退回空映射（全部记为 Unknown）"""
        try:
            return await self._version_cache.get(
                network,
                settings.VERSION_CACHE_TTL,
                lambda: self._acq.versions.get_versions(network),
                stale_on_error=True,
            )
        except StatsServiceError as exc:
            logger.warning(f"[{network}] 验证者版本不可用，按 Unknown 统计: {exc}")
            return {}

    def _display_info(self, network: str) -> Dict[str, Tuple[str, str]]:
        chains = self._chains if self._chains is not None else get_chains()
        testnet = network == "fuji"
        return subnet_display_info(tuple(c for c in chains if c.is_testnet == testnet))


# ── 模块级别单例 ──────────────────────────────────────────
_validator_service: Optional[ValidatorStatsService] = None


def get_validator_stats_service() -> ValidatorStatsService:
    global _validator_service
    if _validator_service is None:
        _validator_service = ValidatorStatsService()
    return _validator_service
