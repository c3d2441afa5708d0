"""
Layer 4 – 聚合层
  - 链指标聚合：把各链最新点按日期累加为总量序列
  - 质押聚合：按子网、按客户端版本累加验证者权重（任意精度整数）

失败的数据源以空结果参与聚合，不会中断整体计算。
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from stats_service.errors import DuplicateSubnetError
from stats_service.layers.processing import get_processing_layer
from stats_service.models.metrics import (
    ActiveAddresses,
    AggregatedMetrics,
    ChainMetrics,
    ClientVersionStats,
    SubnetRecord,
    SubnetStats,
    TimeSeriesMetric,
    ValidatorRecord,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
UNKNOWN_VERSION = "Unknown"
_VERSION_PREFIX = "avalanchego/"


class ChainMetricsAggregator:
    """多链指标 → 按日期汇总的总量"""

    def __init__(self):
        self._proc = get_processing_layer()

    def _date_totals(self, points: Iterable[Tuple[str, int, float]]) -> TimeSeriesMetric:
        rows = [{"date": d, "timestamp": ts, "value": v} for d, ts, v in points]
        if not rows:
            return TimeSeriesMetric()
        totals = (
            pd.DataFrame(rows)
            .groupby("date", as_index=False)
            .agg(timestamp=("timestamp", "max"), value=("value", "sum"))
        )
        return self._proc.series_from_totals(totals)

    @staticmethod
    def _latest(series: TimeSeriesMetric) -> List[Tuple[str, int, float]]:
        point = series.latest
        return [(point.date, point.timestamp, point.value)] if point else []

    def aggregate(self, chains: List[ChainMetrics]) -> AggregatedMetrics:
        tx, daily, weekly, monthly, icm = [], [], [], [], []
        total_validators = 0
        active_chains = 0

        for chain in chains:
            tx += self._latest(chain.tx_count)
            daily += self._latest(chain.active_addresses.daily)
            weekly += self._latest(chain.active_addresses.weekly)
            monthly += self._latest(chain.active_addresses.monthly)
            icm_point = chain.icm_messages.latest
            if icm_point:
                icm.append((icm_point.date, icm_point.timestamp, icm_point.message_count))

            # "N/A" 不计入总数，但链本身仍然参与枚举
            if isinstance(chain.validator_count, int) and not isinstance(chain.validator_count, bool):
                total_validators += chain.validator_count

            if _positive(chain.tx_count) or _positive(chain.active_addresses.daily):
                active_chains += 1

        tx_totals = self._date_totals(tx)
        latest_tx = tx_totals.latest
        return AggregatedMetrics(
            tx_count=tx_totals,
            active_addresses=ActiveAddresses(
                daily=self._date_totals(daily),
                weekly=self._date_totals(weekly),
                monthly=self._date_totals(monthly),
            ),
            icm_messages=self._date_totals(icm),
            total_tps=(latest_tx.value / SECONDS_PER_DAY) if latest_tx else 0.0,
            active_chains=active_chains,
            total_validators=total_validators,
        )


def _positive(series: TimeSeriesMetric) -> bool:
    point = series.latest
    return point is not None and point.value > 0


# ── 质押聚合 ──────────────────────────────────────────────

def normalize_version(raw: Optional[str]) -> str:
    """去掉 "avalanchego/" 前缀；缺失或为空时归为 Unknown"""
    if not raw:
        return UNKNOWN_VERSION
    version = raw[len(_VERSION_PREFIX):] if raw.startswith(_VERSION_PREFIX) else raw
    return version or UNKNOWN_VERSION


@dataclass
class VersionBucket:
    stake: int = 0
    node_count: int = 0


@dataclass
class SubnetStakeAccumulator:
    name: str
    id: str
    is_l1: bool = False
    total_stake: int = 0
    by_client_version: Dict[str, VersionBucket] = field(default_factory=dict)

    def add(self, weight: int, version: str) -> None:
        self.total_stake += weight
        bucket = self.by_client_version.setdefault(version, VersionBucket())
        bucket.stake += weight
        bucket.node_count += 1


class StakeAggregator:
    """验证者权重 → 子网 / 客户端版本维度的质押分布"""

    def seed(self, subnets: Iterable[SubnetRecord]) -> Dict[str, SubnetStakeAccumulator]:
        """为子网列表中的每个子网建立累加器（零质押也会先登记）"""
        accumulators: Dict[str, SubnetStakeAccumulator] = {}
        for subnet in subnets:
            if subnet.subnet_id in accumulators:
                raise DuplicateSubnetError(subnet.subnet_id)
            accumulators[subnet.subnet_id] = SubnetStakeAccumulator(
                name="/".join(b.blockchain_name for b in subnet.blockchains),
                id=subnet.subnet_id,
                is_l1=subnet.is_l1,
            )
        return accumulators

    def aggregate(
        self,
        subnets: Iterable[SubnetRecord],
        validators: Iterable[ValidatorRecord],
        versions: Mapping[str, str],
        display: Optional[Mapping[str, Tuple[str, str]]] = None,
    ) -> List[SubnetStats]:
        """
        汇总各子网质押

        Args:
            subnets: 权威子网列表
            validators: 经典 + L1 验证者
            versions: nodeId → 客户端版本
            display: subnetId → (展示名称, logo)，来自静态链配置
        """
        accumulators = self.seed(subnets)

        unknown = 0
        for validator in validators:
            acc = accumulators.get(validator.subnet_id)
            if acc is None:
                unknown += 1
                acc = accumulators[validator.subnet_id] = SubnetStakeAccumulator(
                    name=f"Unknown ({validator.subnet_id})",
                    id=validator.subnet_id,
                )
            acc.add(int(validator.weight), normalize_version(versions.get(validator.node_id)))

        if unknown:
            logger.debug(f"{unknown} 个验证者属于子网列表之外的子网")

        display = display or {}
        result: List[SubnetStats] = []
        for acc in accumulators.values():
            if acc.total_stake == 0:
                continue
            name, logo = display.get(acc.id, (acc.name, ""))
            result.append(
                SubnetStats(
                    name=name or acc.name,
                    id=acc.id,
                    total_stake=str(acc.total_stake),
                    by_client_version={
                        version: ClientVersionStats(
                            stake_string=str(bucket.stake), node_count=bucket.node_count
                        )
                        for version, bucket in acc.by_client_version.items()
                    },
                    is_l1=acc.is_l1,
                    chain_logo_uri=logo or None,
                )
            )
        return result
