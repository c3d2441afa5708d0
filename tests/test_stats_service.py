"""
统计服务单元测试

覆盖范围：
  - 配置模块（默认值、版本源地址解析）
  - 数据处理层（新鲜度策略、数据点标准化）
  - 聚合层（按日期汇总、活跃链判定、质押精度、重复子网）
  - 链配置加载
  - 响应模型
  - FastAPI 路由（通过 TestClient 测试，上游全部 mock）
"""

import os
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from stats_service.models.metrics import (  # noqa: E402
    ActiveAddresses,
    Blockchain,
    ChainMetrics,
    ICMMetric,
    ICMPoint,
    MetricPoint,
    OverviewMetrics,
    SubnetRecord,
    TimeSeriesMetric,
    ValidatorRecord,
)

JAN_1 = 1704067200   # 2024-01-01 00:00 UTC
JAN_2 = 1704153600


# ─────────────────────────────────────────────────────────
# 辅助函数
# ─────────────────────────────────────────────────────────

def _series(*points) -> TimeSeriesMetric:
    """points: (timestamp, date, value)，按降序传入"""
    data = [MetricPoint(timestamp=ts, date=d, value=v) for ts, d, v in points]
    return TimeSeriesMetric(data=data, current_value=data[0].value if data else "N/A")


def _chain(chain_id: str, tx=None, daily=None, icm=None, validators=5) -> ChainMetrics:
    icm_metric = ICMMetric()
    if icm is not None:
        ts, d, v = icm
        icm_metric = ICMMetric(
            data=[ICMPoint(timestamp=ts, date=d, message_count=v)], current_value=v
        )
    return ChainMetrics(
        chain_id=chain_id,
        chain_name=f"Chain {chain_id}",
        tx_count=_series(*([tx] if tx else [])),
        active_addresses=ActiveAddresses(daily=_series(*([daily] if daily else []))),
        icm_messages=icm_metric,
        validator_count=validators,
    )


# ─────────────────────────────────────────────────────────
# 1. 配置模块测试
# ─────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        from stats_service.config import StatsServiceSettings
        s = StatsServiceSettings()
        assert s.PORT == 8001
        assert s.VERSION_CACHE_TTL < s.VALIDATOR_CACHE_TTL
        assert s.SNAPSHOT_CACHE_TTL > s.CHAIN_CACHE_TTL

    def test_discovery_url(self):
        from stats_service.config import StatsServiceSettings
        s = StatsServiceSettings(
            MAINNET_VALIDATOR_DISCOVERY_URL="https://example.org/mainnet.json",
            FUJI_VALIDATOR_DISCOVERY_URL="",
        )
        assert s.discovery_url("mainnet") == "https://example.org/mainnet.json"
        assert s.discovery_url("fuji") is None
        assert s.discovery_url("devnet") is None

    def test_env_override(self):
        with patch.dict(os.environ, {"CHAIN_CACHE_TTL": "42"}, clear=False):
            from stats_service.config import StatsServiceSettings
            assert StatsServiceSettings().CHAIN_CACHE_TTL == 42


# ─────────────────────────────────────────────────────────
# 2. 数据处理层测试
# ─────────────────────────────────────────────────────────

class TestFreshnessPolicy:
    def test_empty_sequence(self):
        from stats_service.layers.processing import drop_incomplete, select_complete_point
        assert select_complete_point([]) is None
        assert drop_incomplete([]) == []

    def test_single_point_falls_back_to_latest(self):
        from stats_service.layers.processing import select_complete_point
        assert select_complete_point(["today"]) == "today"

    def test_picks_second_most_recent(self):
        from stats_service.layers.processing import drop_incomplete, select_complete_point
        points = ["today", "yesterday", "day-before"]
        assert select_complete_point(points) == "yesterday"
        assert drop_incomplete(points) == ["yesterday", "day-before"]

    def test_custom_min_points(self):
        from stats_service.layers.processing import select_complete_point
        assert select_complete_point([1, 2, 3], min_points=1) == 1
        assert select_complete_point([1, 2, 3], min_points=3) == 3
        assert select_complete_point([1, 2], min_points=3) == 1

    def test_invalid_min_points(self):
        from stats_service.layers.processing import select_complete_point
        with pytest.raises(ValueError):
            select_complete_point([1, 2], min_points=0)


class TestProcessingLayer:
    def setup_method(self):
        from stats_service.layers.processing import ProcessingLayer
        self.proc = ProcessingLayer()

    def test_normalize_empty(self):
        assert self.proc.normalize_points([]) == []

    def test_normalize_sorts_descending_and_derives_date(self):
        points = self.proc.normalize_points([
            {"timestamp": JAN_1, "value": 10},
            {"timestamp": JAN_2, "value": 7},
        ])
        assert [p.timestamp for p in points] == [JAN_2, JAN_1]
        assert points[1].date == "2024-01-01"

    def test_normalize_coerces_bad_values(self):
        points = self.proc.normalize_points([
            {"timestamp": JAN_1, "value": "oops"},
            {"timestamp": "not-a-timestamp", "value": 3},
        ])
        assert len(points) == 1
        assert points[0].value == 0.0

    def test_normalize_drops_duplicate_timestamps(self):
        points = self.proc.normalize_points([
            {"timestamp": JAN_1, "value": 1},
            {"timestamp": JAN_1, "value": 2},
        ])
        assert len(points) == 1
        assert points[0].value == 2

    def test_normalize_icm_points(self):
        points = self.proc.normalize_icm_points([
            {"timestamp": JAN_1, "date": "2024-01-01", "messageCount": 4, "incomingCount": 1},
        ])
        assert points[0].message_count == 4
        assert points[0].outgoing_count == 0

    def test_build_time_series_change(self):
        points = self.proc.normalize_points([
            {"timestamp": JAN_2, "value": 150},
            {"timestamp": JAN_1, "value": 100},
        ])
        series = self.proc.build_time_series(points)
        assert series.current_value == 150
        assert series.change_24h == 50
        assert series.change_percentage_24h == 50

    def test_build_time_series_empty(self):
        series = self.proc.build_time_series([])
        assert series.data == []
        assert series.current_value == "N/A"


# ─────────────────────────────────────────────────────────
# 3. 聚合层测试
# ─────────────────────────────────────────────────────────

class TestChainMetricsAggregator:
    def setup_method(self):
        from stats_service.layers.aggregation import ChainMetricsAggregator
        self.agg = ChainMetricsAggregator()

    def test_same_date_values_are_summed(self):
        chains = [
            _chain("A", tx=(JAN_1, "2024-01-01", 10)),
            _chain("B", tx=(JAN_1, "2024-01-01", 5)),
        ]
        result = self.agg.aggregate(chains)
        assert len(result.tx_count.data) == 1
        assert result.tx_count.data[0].date == "2024-01-01"
        assert result.tx_count.data[0].value == 15

    def test_one_point_per_date_sorted_descending(self):
        chains = [
            _chain("A", tx=(JAN_1, "2024-01-01", 10)),
            _chain("B", tx=(JAN_2, "2024-01-02", 3)),
            _chain("C", tx=(JAN_2, "2024-01-02", 4)),
        ]
        result = self.agg.aggregate(chains)
        assert [p.date for p in result.tx_count.data] == ["2024-01-02", "2024-01-01"]
        assert result.tx_count.current_value == 7

    def test_validator_sum_skips_unavailable(self):
        chains = [_chain("A", validators=3), _chain("B", validators="N/A"), _chain("C", validators=4)]
        result = self.agg.aggregate(chains)
        assert result.total_validators == 7

    def test_active_chain_rule(self):
        chains = [
            _chain("tx-only", tx=(JAN_1, "2024-01-01", 1)),
            _chain("addr-only", daily=(JAN_1, "2024-01-01", 2)),
            _chain("idle", tx=(JAN_1, "2024-01-01", 0)),
            _chain("empty"),
        ]
        assert self.agg.aggregate(chains).active_chains == 2

    def test_icm_totals(self):
        chains = [
            _chain("A", icm=(JAN_1, "2024-01-01", 8)),
            _chain("B", icm=(JAN_1, "2024-01-01", 2)),
        ]
        assert self.agg.aggregate(chains).icm_messages.current_value == 10

    def test_empty_input(self):
        result = self.agg.aggregate([])
        assert result.tx_count.data == []
        assert result.active_chains == 0
        assert result.total_tps == 0.0

    def test_total_tps(self):
        result = self.agg.aggregate([_chain("A", tx=(JAN_1, "2024-01-01", 86400))])
        assert result.total_tps == 1.0


class TestStakeAggregator:
    def setup_method(self):
        from stats_service.layers.aggregation import StakeAggregator
        self.agg = StakeAggregator()

    def test_large_weights_keep_full_precision(self):
        validators = [
            ValidatorRecord(node_id="NodeID-A", subnet_id="S1", weight=2 ** 60),
            ValidatorRecord(node_id="NodeID-B", subnet_id="S1", weight=2 ** 60),
        ]
        stats = self.agg.aggregate([SubnetRecord(subnet_id="S1")], validators, {})
        assert stats[0].total_stake == str(2 ** 61)
        assert stats[0].total_stake == "2305843009213693952"

    def test_duplicate_subnet_is_fatal(self):
        from stats_service.errors import ConfigurationError, DuplicateSubnetError
        subnets = [SubnetRecord(subnet_id="S1"), SubnetRecord(subnet_id="S1")]
        with pytest.raises(DuplicateSubnetError) as exc_info:
            self.agg.aggregate(subnets, [], {})
        assert isinstance(exc_info.value, ConfigurationError)
        assert exc_info.value.subnet_id == "S1"

    def test_zero_stake_subnets_dropped(self):
        subnets = [SubnetRecord(subnet_id="S1"), SubnetRecord(subnet_id="S2")]
        validators = [ValidatorRecord(node_id="N1", subnet_id="S1", weight=1)]
        stats = self.agg.aggregate(subnets, validators, {})
        assert [s.id for s in stats] == ["S1"]

    def test_versions_grouped_and_normalized(self):
        validators = [
            ValidatorRecord(node_id="N1", subnet_id="S1", weight=10),
            ValidatorRecord(node_id="N2", subnet_id="S1", weight=20),
            ValidatorRecord(node_id="N3", subnet_id="S1", weight=30),
        ]
        versions = {"N1": "avalanchego/1.11.3", "N2": "avalanchego/1.11.3", "N3": ""}
        stats = self.agg.aggregate([SubnetRecord(subnet_id="S1")], validators, versions)
        by_version = stats[0].by_client_version
        assert by_version["1.11.3"].stake_string == "30"
        assert by_version["1.11.3"].node_count == 2
        assert by_version["Unknown"].node_count == 1
        # 子网总质押等于全部成员权重之和
        assert int(stats[0].total_stake) == sum(int(v.stake_string) for v in by_version.values())

    def test_unlisted_subnet_gets_unknown_accumulator(self):
        validators = [ValidatorRecord(node_id="N1", subnet_id="S9", weight=5)]
        stats = self.agg.aggregate([], validators, {})
        assert stats[0].name == "Unknown (S9)"

    def test_names_from_blockchains_and_chain_config(self):
        subnets = [
            SubnetRecord(
                subnet_id="S1",
                is_l1=True,
                blockchains=[Blockchain(blockchain_name="alpha"), Blockchain(blockchain_name="beta")],
            ),
            SubnetRecord(subnet_id="S2"),
        ]
        validators = [
            ValidatorRecord(node_id="N1", subnet_id="S1", weight=1),
            ValidatorRecord(node_id="N2", subnet_id="S2", weight=1),
        ]
        stats = self.agg.aggregate(
            subnets, validators, {}, display={"S2": ("Beam", "https://example.org/beam.png")}
        )
        assert stats[0].name == "alpha/beta"
        assert stats[0].is_l1 is True
        assert stats[1].name == "Beam"
        assert stats[1].chain_logo_uri == "https://example.org/beam.png"

    def test_normalize_version(self):
        from stats_service.layers.aggregation import normalize_version
        assert normalize_version("avalanchego/1.12.0") == "1.12.0"
        assert normalize_version("custom/2.0") == "custom/2.0"
        assert normalize_version(None) == "Unknown"
        assert normalize_version("avalanchego/") == "Unknown"


# ─────────────────────────────────────────────────────────
# 4. 链配置测试
# ─────────────────────────────────────────────────────────

class TestChainConfig:
    def test_bundled_chains(self):
        from stats_service.chains import load_chains, mainnet_chains
        chains = load_chains()
        assert any(c.chain_id == "43114" for c in chains)
        assert all(not c.is_testnet for c in mainnet_chains(chains))

    def test_missing_file_is_configuration_error(self, tmp_path):
        from stats_service.chains import load_chains
        from stats_service.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            load_chains(str(tmp_path / "missing.json"))

    def test_invalid_file_is_configuration_error(self, tmp_path):
        from stats_service.chains import load_chains
        from stats_service.errors import ConfigurationError
        bad = tmp_path / "chains.json"
        bad.write_text('[{"chainName": "no id"}]', encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_chains(str(bad))

    def test_subnet_display_info_first_wins(self):
        from stats_service.chains import subnet_display_info
        from stats_service.models.metrics import ChainConfig
        chains = (
            ChainConfig(chain_id="1", chain_name="First", subnet_id="S"),
            ChainConfig(chain_id="2", chain_name="Second", subnet_id="S"),
        )
        assert subnet_display_info(chains)["S"][0] == "First"


# ─────────────────────────────────────────────────────────
# 5. 响应模型测试
# ─────────────────────────────────────────────────────────

class TestApiResponse:
    def test_ok(self):
        from stats_service.models.response import ApiResponse
        r = ApiResponse.ok(data={"key": "value"}, message="done")
        assert r.success is True
        assert r.error is None

    def test_fail(self):
        from stats_service.models.response import ApiResponse
        r = ApiResponse.fail(error="not found", message="ValidationError")
        assert r.success is False
        assert r.error == "not found"

    def test_overview_serializes_with_aliases(self):
        chain = _chain("A", tx=(JAN_1, "2024-01-01", 1))
        body = OverviewMetrics(chains=[chain], last_updated=1).model_dump(by_alias=True)
        assert body["chains"][0]["chainId"] == "A"
        assert "activeChains" in body["aggregated"]
        assert body["chains"][0]["txCount"]["current_value"] == 1

    def test_failed_flag_not_serialized(self):
        body = TimeSeriesMetric(failed=True).model_dump(by_alias=True)
        assert "failed" not in body
        assert body["current_value"] == "N/A"


# ─────────────────────────────────────────────────────────
# 6. HTTP 路由测试（TestClient，上游全部 mock）
# ─────────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def client():
    from stats_service.main import app
    with TestClient(app) as c:
        yield c


def _overview_result(source="fresh", failed=0):
    from stats_service.services.overview_service import OverviewResult
    data = OverviewMetrics(chains=[_chain("A", tx=(JAN_1, "2024-01-01", 3))], last_updated=1)
    return OverviewResult(
        data=data, source=source, fetch_time_ms=12, total_chains=1 + failed,
        failed_chains=failed, cache_age_ms=3000,
    )


class TestHealthRoutes:
    def test_health_endpoint(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "ok"

    def test_healthz_endpoint(self, client):
        assert client.get("/healthz").json()["status"] == "ok"

    def test_root_endpoint(self, client):
        body = client.get("/").json()
        assert "version" in body
        assert "docs" in body


class TestOverviewRoutes:
    def test_fresh_overview(self, client):
        svc = MagicMock()
        svc.get_overview = AsyncMock(return_value=_overview_result(failed=1))
        with patch("stats_service.routers.overview.get_overview_service", return_value=svc):
            resp = client.get("/api/overview-stats")
        assert resp.status_code == 200
        body = resp.json()
        assert body["chains"][0]["chainId"] == "A"
        assert body["aggregated"]["activeChains"] == 1
        assert "last_updated" in body
        assert resp.headers["X-Data-Source"] == "fresh"
        assert resp.headers["X-Failed-Chains"] == "1"
        assert resp.headers["X-Chain-Count"] == "1"
        svc.get_overview.assert_awaited_once_with(bypass_cache=False)

    def test_cached_overview_reports_age(self, client):
        svc = MagicMock()
        svc.get_overview = AsyncMock(return_value=_overview_result(source="cache"))
        with patch("stats_service.routers.overview.get_overview_service", return_value=svc):
            resp = client.get("/api/overview-stats")
        assert resp.headers["X-Data-Source"] == "cache"
        assert resp.headers["X-Cache-Age"] == "3s"

    def test_clear_cache_flag(self, client):
        svc = MagicMock()
        svc.get_overview = AsyncMock(return_value=_overview_result())
        with patch("stats_service.routers.overview.get_overview_service", return_value=svc):
            client.get("/api/overview-stats", params={"clearCache": "true"})
        svc.get_overview.assert_awaited_once_with(bypass_cache=True)

    def test_aggregate_timeout_is_504(self, client):
        from stats_service.errors import AggregateTimeout
        svc = MagicMock()
        svc.get_overview = AsyncMock(side_effect=AggregateTimeout("概览数据获取超时"))
        with patch("stats_service.routers.overview.get_overview_service", return_value=svc):
            resp = client.get("/api/overview-stats")
        assert resp.status_code == 504
        assert resp.json()["success"] is False


class TestValidatorRoutes:
    def test_missing_network_is_400(self, client):
        resp = client.get("/api/validator-stats")
        assert resp.status_code == 400
        assert "mainnet" in resp.json()["error"]
        assert "fuji" in resp.json()["error"]

    def test_invalid_network_is_400(self, client):
        resp = client.get("/api/validator-stats", params={"network": "devnet"})
        assert resp.status_code == 400

    def test_upstream_failure_is_500(self, client):
        from stats_service.errors import UpstreamError
        svc = MagicMock()
        svc.get_network_stats = AsyncMock(side_effect=UpstreamError("data_api 返回 HTTP 502"))
        with patch("stats_service.routers.validators.get_validator_stats_service", return_value=svc):
            resp = client.get("/api/validator-stats", params={"network": "mainnet"})
        assert resp.status_code == 500

    def test_listing_timeout_is_500(self, client):
        from stats_service.errors import UpstreamTimeout
        from stats_service.services.validator_service import ValidatorStatsService
        data_api = SimpleNamespace(
            list_validators=AsyncMock(side_effect=UpstreamTimeout("data_api 请求超时")),
            list_subnets=AsyncMock(return_value=[]),
        )
        versions = SimpleNamespace(get_versions=AsyncMock(return_value={}))
        svc = ValidatorStatsService(
            acquisition=SimpleNamespace(data_api=data_api, versions=versions), chains=()
        )
        with patch("stats_service.routers.validators.get_validator_stats_service", return_value=svc):
            resp = client.get("/api/validator-stats", params={"network": "mainnet"})
        assert resp.status_code == 500
        assert resp.json()["message"] == "UpstreamTimeout"

    def test_timeout_is_504(self, client):
        from stats_service.errors import AggregateTimeout
        svc = MagicMock()
        svc.get_network_stats = AsyncMock(side_effect=AggregateTimeout("mainnet 验证者统计超时"))
        with patch("stats_service.routers.validators.get_validator_stats_service", return_value=svc):
            resp = client.get("/api/validator-stats", params={"network": "mainnet"})
        assert resp.status_code == 504
        assert "超时" in resp.json()["error"]

    def test_stats_body(self, client):
        from stats_service.layers.aggregation import StakeAggregator
        stats = StakeAggregator().aggregate(
            [SubnetRecord(subnet_id="S1", is_l1=True)],
            [ValidatorRecord(node_id="N1", subnet_id="S1", weight=2 ** 60)],
            {"N1": "avalanchego/1.12.0"},
        )
        svc = MagicMock()
        svc.get_network_stats = AsyncMock(return_value=stats)
        with patch("stats_service.routers.validators.get_validator_stats_service", return_value=svc):
            resp = client.get("/api/validator-stats", params={"network": "fuji"})
        assert resp.status_code == 200
        assert resp.headers["X-Network"] == "fuji"
        item = resp.json()[0]
        assert item["totalStake"] == str(2 ** 60)
        assert item["isL1"] is True
        assert item["byClientVersion"]["1.12.0"] == {"stakeString": str(2 ** 60), "nodeCount": 1}


class TestCacheRoutes:
    def test_stats_and_clear(self, client):
        resp = client.get("/api/cache/stats")
        assert resp.status_code == 200
        assert "overview_snapshot" in resp.json()["data"]
        resp = client.post("/api/cache/clear")
        assert resp.json()["success"] is True
