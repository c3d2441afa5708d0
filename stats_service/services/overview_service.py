"""
概览统计服务
整合数据获取、缓存、聚合三层：先查 "latest" 快照，未命中时并发拉取全部链，
单链失败只计入失败数，不影响整体响应。
快照过期后立即返回旧快照，同时在后台刷新（stale-while-revalidate）。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from stats_service.chains import get_chains, mainnet_chains
from stats_service.config import settings
from stats_service.errors import AggregateTimeout, UpstreamError, UpstreamTimeout
from stats_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from stats_service.layers.aggregation import ChainMetricsAggregator
from stats_service.layers.cache import CacheStore
from stats_service.models.metrics import (
    ActiveAddresses,
    ChainConfig,
    ChainMetrics,
    OverviewMetrics,
)

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "latest"


@dataclass(frozen=True)
class OverviewResult:
    """概览数据及其元信息（数据来源、耗时、失败链数）"""
    data: OverviewMetrics
    source: str
    fetch_time_ms: int
    total_chains: int
    failed_chains: int
    cache_age_ms: float = 0.0


class OverviewService:
    """概览读接口的请求协调器"""

    def __init__(
        self,
        acquisition: Optional[AcquisitionLayer] = None,
        chains: Optional[Tuple[ChainConfig, ...]] = None,
        chain_cache: Optional[CacheStore] = None,
        snapshot_cache: Optional[CacheStore] = None,
        chain_timeout: Optional[float] = None,
        deadline: Optional[float] = None,
    ):
        self._acq = acquisition or get_acquisition_layer()
        self._chains = chains
        self._chain_cache = chain_cache or CacheStore("chain_metrics", settings.CACHE_MAX_ENTRIES)
        self._snapshot_cache = snapshot_cache or CacheStore("overview_snapshot", 8)
        self._chain_timeout = chain_timeout or settings.CHAIN_FETCH_TIMEOUT
        self._deadline = deadline or settings.OVERVIEW_DEADLINE
        self._aggregator = ChainMetricsAggregator()
        self._revalidation: Optional["asyncio.Task[OverviewResult]"] = None

    @property
    def caches(self) -> List[CacheStore]:
        return [self._snapshot_cache, self._chain_cache]

    # ── 对外接口 ──────────────────────────────────────────

    async def get_overview(self, bypass_cache: bool = False) -> OverviewResult:
        """
        获取全部链的概览统计

        Args:
            bypass_cache: 清空快照与单链缓存并解除在途请求，强制重新拉取
        """
        if bypass_cache:
            logger.info("收到 clearCache 请求，清空概览缓存")
            self.clear_caches(detach=True)

        hit = self._snapshot_cache.peek(SNAPSHOT_KEY, settings.SNAPSHOT_CACHE_TTL)
        if hit is not None:
            result, age = hit
            return replace(result, source="cache", cache_age_ms=age)

        stale = self._snapshot_cache.get_stale(SNAPSHOT_KEY)
        if stale is not None:
            self._revalidate()
            result, age = stale
            return replace(result, source="stale-while-revalidate", cache_age_ms=age)

        return await self._snapshot_cache.get(
            SNAPSHOT_KEY, settings.SNAPSHOT_CACHE_TTL, self._fetch_fresh
        )

    def clear_caches(self, detach: bool = False) -> None:
        for cache in self.caches:
            cache.clear(detach=detach)

    async def close(self) -> None:
        if self._revalidation is not None and not self._revalidation.done():
            self._revalidation.cancel()
            await asyncio.gather(self._revalidation, return_exceptions=True)
        for cache in self.caches:
            await cache.close()

    # ── 后台刷新 ──────────────────────────────────────────

    def _revalidate(self) -> None:
        """后台刷新快照；同一时刻只保留一个刷新任务"""
        if self._revalidation is not None and not self._revalidation.done():
            return
        logger.info("概览快照已过期，返回旧快照并在后台刷新")
        self._revalidation = asyncio.ensure_future(
            self._snapshot_cache.get(SNAPSHOT_KEY, settings.SNAPSHOT_CACHE_TTL, self._fetch_fresh)
        )
        self._revalidation.add_done_callback(_log_revalidation)

    # ── 拉取与聚合 ────────────────────────────────────────

    def _configured_chains(self) -> List[ChainConfig]:
        return mainnet_chains(self._chains if self._chains is not None else get_chains())

    async def _fetch_fresh(self) -> OverviewResult:
        start = time.perf_counter()
        chains = self._configured_chains()

        try:
            outcomes = await asyncio.wait_for(
                asyncio.gather(*(self._get_chain(c) for c in chains), return_exceptions=True),
                timeout=self._deadline,
            )
        except asyncio.TimeoutError:
            raise AggregateTimeout(
                f"概览数据获取超时（{self._deadline}s，共 {len(chains)} 条链）",
                source="overview",
            ) from None

        fetched: List[ChainMetrics] = []
        failed = 0
        for chain, outcome in zip(chains, outcomes):
            if isinstance(outcome, BaseException):
                failed += 1
                logger.warning(f"链 {chain.chain_name}（{chain.chain_id}）获取失败: {outcome!r}")
            else:
                fetched.append(outcome)

        data = OverviewMetrics(
            chains=fetched,
            aggregated=self._aggregator.aggregate(fetched),
            last_updated=int(time.time() * 1000),
        )
        elapsed = int((time.perf_counter() - start) * 1000)
        logger.info(f"概览数据刷新完成: {len(fetched)}/{len(chains)} 条链成功，耗时 {elapsed}ms")
        return OverviewResult(
            data=data,
            source="fresh",
            fetch_time_ms=elapsed,
            total_chains=len(chains),
            failed_chains=failed,
        )

    async def _get_chain(self, chain: ChainConfig) -> ChainMetrics:
        return await self._chain_cache.get(
            chain.chain_id,
            settings.CHAIN_CACHE_TTL,
            lambda: self._fetch_chain_bounded(chain),
            stale_on_error=True,
        )

    async def _fetch_chain_bounded(self, chain: ChainConfig) -> ChainMetrics:
        try:
            return await asyncio.wait_for(self.fetch_chain_metrics(chain), timeout=self._chain_timeout)
        except asyncio.TimeoutError:
            raise UpstreamTimeout(
                f"链 {chain.chain_id} 指标获取超时（{self._chain_timeout}s）", source=chain.chain_id
            ) from None

    async def fetch_chain_metrics(self, chain: ChainConfig) -> ChainMetrics:
        """
        并发拉取单条链的全部指标

        各适配器失败时返回空结果；交易数与日活跃地址都失败时视为整条链失败，
        抛出 UpstreamError（由单链缓存决定是否退回过期数据）。
        """
        metrics, icm = self._acq.metrics, self._acq.icm
        tx, daily, weekly, monthly, icm_metric, validators = await asyncio.gather(
            metrics.get_time_series(chain.chain_id, "txCount", "day"),
            metrics.get_time_series(chain.chain_id, "activeAddresses", "day"),
            metrics.get_time_series(chain.chain_id, "activeAddresses", "week"),
            metrics.get_time_series(chain.chain_id, "activeAddresses", "month"),
            icm.get_icm_metric(chain.chain_id),
            metrics.get_validator_count(chain.subnet_id),
        )
        if tx.failed and daily.failed:
            raise UpstreamError(
                f"链 {chain.chain_id} 的交易数与活跃地址均获取失败", source=chain.chain_id
            )
        return ChainMetrics(
            chain_id=chain.chain_id,
            chain_name=chain.chain_name,
            chain_logo_uri=chain.chain_logo_uri,
            tx_count=tx,
            active_addresses=ActiveAddresses(daily=daily, weekly=weekly, monthly=monthly),
            icm_messages=icm_metric,
            validator_count=validators,
        )


def _log_revalidation(task: "asyncio.Task") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"概览后台刷新失败，继续使用旧快照: {exc}")


# ── 模块级别单例 ──────────────────────────────────────────
_overview_service: Optional[OverviewService] = None


def get_overview_service() -> OverviewService:
    global _overview_service
    if _overview_service is None:
        _overview_service = OverviewService()
    return _overview_service
