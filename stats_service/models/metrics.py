"""
统计数据模型
所有模型均为不可变对象（frozen），缓存发布后的数据只会被整体替换，不会被原地修改
"""

from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

UNAVAILABLE = "N/A"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


# ── 时间序列 ──────────────────────────────────────────────

class MetricPoint(_Frozen):
    timestamp: int
    date: str
    value: float = 0.0


class TimeSeriesMetric(_Frozen):
    """按时间戳降序排列的指标序列，current_value 取第一个点"""
    data: List[MetricPoint] = Field(default_factory=list)
    current_value: Union[float, str] = UNAVAILABLE
    change_24h: float = 0.0
    change_percentage_24h: float = 0.0
    # 上游请求失败（而非确实无数据），不参与序列化
    failed: bool = Field(default=False, exclude=True)

    @property
    def latest(self) -> Optional[MetricPoint]:
        return self.data[0] if self.data else None


class ICMPoint(_Frozen):
    timestamp: int
    date: str
    message_count: float = Field(default=0.0, alias="messageCount")
    incoming_count: float = Field(default=0.0, alias="incomingCount")
    outgoing_count: float = Field(default=0.0, alias="outgoingCount")


class ICMMetric(_Frozen):
    data: List[ICMPoint] = Field(default_factory=list)
    current_value: Union[float, str] = UNAVAILABLE

    @property
    def latest(self) -> Optional[ICMPoint]:
        return self.data[0] if self.data else None


class ActiveAddresses(_Frozen):
    daily: TimeSeriesMetric = Field(default_factory=TimeSeriesMetric)
    weekly: TimeSeriesMetric = Field(default_factory=TimeSeriesMetric)
    monthly: TimeSeriesMetric = Field(default_factory=TimeSeriesMetric)


# ── 链级指标与聚合 ────────────────────────────────────────

class ChainConfig(_Frozen):
    """静态链配置（l1_chains.json 中的一项）"""
    chain_id: str = Field(alias="chainId")
    chain_name: str = Field(alias="chainName")
    chain_logo_uri: str = Field(default="", alias="chainLogoURI")
    subnet_id: Optional[str] = Field(default=None, alias="subnetId")
    is_testnet: bool = Field(default=False, alias="isTestnet")


class ChainMetrics(_Frozen):
    chain_id: str = Field(alias="chainId")
    chain_name: str = Field(alias="chainName")
    chain_logo_uri: str = Field(default="", alias="chainLogoURI")
    tx_count: TimeSeriesMetric = Field(default_factory=TimeSeriesMetric, alias="txCount")
    active_addresses: ActiveAddresses = Field(
        default_factory=ActiveAddresses, alias="activeAddresses"
    )
    icm_messages: ICMMetric = Field(default_factory=ICMMetric, alias="icmMessages")
    validator_count: Union[int, str] = Field(default=UNAVAILABLE, alias="validatorCount")


class AggregatedMetrics(_Frozen):
    tx_count: TimeSeriesMetric = Field(default_factory=TimeSeriesMetric, alias="txCount")
    active_addresses: ActiveAddresses = Field(
        default_factory=ActiveAddresses, alias="activeAddresses"
    )
    icm_messages: TimeSeriesMetric = Field(
        default_factory=TimeSeriesMetric, alias="icmMessages"
    )
    total_tps: float = Field(default=0.0, alias="totalTps")
    active_chains: int = Field(default=0, alias="activeChains")
    total_validators: int = Field(default=0, alias="totalValidators")


class OverviewMetrics(_Frozen):
    chains: List[ChainMetrics] = Field(default_factory=list)
    aggregated: AggregatedMetrics = Field(default_factory=AggregatedMetrics)
    last_updated: int


# ── 验证者与质押 ──────────────────────────────────────────

class ValidatorRecord(_Frozen):
    node_id: str = Field(alias="nodeId")
    subnet_id: str = Field(alias="subnetId")
    weight: int = 0


class Blockchain(_Frozen):
    blockchain_name: str = Field(default="", alias="blockchainName")


class SubnetRecord(_Frozen):
    subnet_id: str = Field(alias="subnetId")
    is_l1: bool = Field(default=False, alias="isL1")
    blockchains: List[Blockchain] = Field(default_factory=list)


class ClientVersionStats(_Frozen):
    stake_string: str = Field(alias="stakeString")
    node_count: int = Field(alias="nodeCount")


class SubnetStats(_Frozen):
    name: str
    id: str
    total_stake: str = Field(alias="totalStake")
    by_client_version: Dict[str, ClientVersionStats] = Field(
        default_factory=dict, alias="byClientVersion"
    )
    is_l1: bool = Field(default=False, alias="isL1")
    chain_logo_uri: Optional[str] = Field(default=None, alias="chainLogoURI")
