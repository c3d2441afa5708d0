"""
Layer 1 – 数据获取层
每个上游数据源一个适配器（指标 API / ICM 索引 / Data API / 验证者版本源），
统一分页与载荷格式，并按"取次新点"策略处理仍在累积的当前周期。

非严格接口（get_*）在网络错误、超时、载荷格式错误时一律返回空结果，不抛异常；
严格接口（list_* / get_versions）抛出 UpstreamError / UpstreamTimeout，
供缓存层在单飞请求中向等待者传播。
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

import aiohttp
from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as SchemaError

from stats_service.config import settings
from stats_service.errors import (
    ConfigurationError,
    StatsServiceError,
    UpstreamError,
    UpstreamTimeout,
)
from stats_service.layers.processing import drop_incomplete, get_processing_layer
from stats_service.models.metrics import (
    ICMMetric,
    SubnetRecord,
    TimeSeriesMetric,
    UNAVAILABLE,
    ValidatorRecord,
)

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=BaseModel)

# ── 时间窗口：只请求足够选出次新点的数据 ─────────────────────
_WINDOW_DAYS = {"day": 3, "week": 21, "month": 93}
_SERIES_PAGE_SIZE = 3
_ICM_DAYS = 3


# ── 上游载荷结构 ──────────────────────────────────────────

class _MetricsPage(BaseModel):
    results: List[Dict[str, Any]] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(default=None, alias="nextPageToken")


class _ClassicValidator(BaseModel):
    node_id: str = Field(alias="nodeId")
    subnet_id: str = Field(alias="subnetId")
    amount_staked: int = Field(default=0, alias="amountStaked")


class _L1Validator(BaseModel):
    node_id: str = Field(alias="nodeId")
    subnet_id: str = Field(alias="subnetId")
    weight: int = 0
    remaining_balance: int = Field(default=0, alias="remainingBalance")


class _ClassicValidatorsPage(BaseModel):
    validators: List[_ClassicValidator] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(default=None, alias="nextPageToken")


class _L1ValidatorsPage(BaseModel):
    validators: List[_L1Validator] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(default=None, alias="nextPageToken")


class _SubnetsPage(BaseModel):
    subnets: List[SubnetRecord] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(default=None, alias="nextPageToken")


class _VersionEntry(BaseModel):
    node_id: str = Field(alias="nodeId")
    version: Optional[str] = None


_ICM_PAYLOAD = TypeAdapter(List[Dict[str, Any]])
_VERSION_PAYLOAD = TypeAdapter(List[_VersionEntry])


class SourceClient:
    """上游 HTTP 数据源基类（aiohttp），负责会话、超时与错误归类"""

    name = "source"

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.SOURCE_TIMEOUT
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=self._headers,
            )
            self._owns_session = True
        return self._session

    async def _get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        执行 GET 请求并解析 JSON

        Raises:
            UpstreamTimeout: 超过单次请求超时
            UpstreamError: 非 2xx 状态、连接错误或非 JSON 响应
        """
        if not url.startswith("http"):
            url = f"{self.base_url}{url}"
        session = await self._get_session()
        clean = {k: v for k, v in (params or {}).items() if v is not None and v != ""}
        try:
            async with session.get(
                url,
                params=clean,
                timeout=aiohttp.ClientTimeout(total=timeout or self.timeout),
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise UpstreamError(
                        f"{self.name} 返回 HTTP {resp.status}: {body[:200]}", source=self.name
                    )
                return await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise UpstreamTimeout(
                f"{self.name} 请求超时（{timeout or self.timeout}s）: {url}", source=self.name
            ) from None
        except (aiohttp.ClientError, ValueError) as exc:
            raise UpstreamError(f"{self.name} 请求失败: {exc}", source=self.name) from exc

    def _parse(self, schema: Union[Type[S], TypeAdapter], payload: Any) -> Any:
        """按载荷结构校验；格式错误与网络错误一样归入 UpstreamError"""
        try:
            if isinstance(schema, TypeAdapter):
                return schema.validate_python(payload)
            return schema.model_validate(payload)
        except SchemaError as exc:
            raise UpstreamError(
                f"{self.name} 载荷格式错误: {exc.error_count()} 处", source=self.name
            ) from exc

    async def _collect_pages(
        self, url: str, params: Dict[str, Any], schema: Type[S]
    ) -> List[S]:
        """按 nextPageToken 拉取全部分页（最多 MAX_PAGES 页）"""
        pages: List[S] = []
        token: Optional[str] = None
        while True:
            payload = await self._get_json(url, {**params, "pageToken": token})
            page = self._parse(schema, payload)
            pages.append(page)
            token = page.next_page_token
            if not token:
                break
            if len(pages) >= settings.MAX_PAGES:
                logger.warning(f"{self.name} 分页达到上限 {settings.MAX_PAGES}: {url}")
                break
        return pages

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


# ── 指标 API ──────────────────────────────────────────────

class MetricsApiClient(SourceClient):
    """链级时间序列指标（交易数、活跃地址）与子网验证者数量"""

    name = "metrics_api"

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or settings.METRICS_API_URL, **kwargs)
        self._proc = get_processing_layer()

    def _token_params(self) -> Dict[str, Any]:
        token = settings.METRICS_BYPASS_TOKEN
        return {"rltoken": token} if token else {}

    async def fetch_series_points(
        self, chain_id: str, metric: str, interval: str = "day"
    ) -> List[Dict[str, Any]]:
        """严格接口：返回第一页原始数据点"""
        end = int(time.time())
        start = end - _WINDOW_DAYS.get(interval, _WINDOW_DAYS["day"]) * 86400
        payload = await self._get_json(
            f"/v2/chains/{chain_id}/metrics/{metric}",
            {
                "startTimestamp": start,
                "endTimestamp": end,
                "timeInterval": interval,
                "pageSize": _SERIES_PAGE_SIZE,
                **self._token_params(),
            },
        )
        return self._parse(_MetricsPage, payload).results

    async def get_time_series(
        self, chain_id: str, metric: str, interval: str = "day"
    ) -> TimeSeriesMetric:
        """获取单链指标（已跳过仍在累积的当前周期），失败时返回标记为 failed 的空序列"""
        try:
            raw = await self.fetch_series_points(chain_id, metric, interval)
        except StatsServiceError as exc:
            logger.warning(f"指标获取失败 {metric}/{interval}（链 {chain_id}）: {exc}")
            return TimeSeriesMetric(failed=True)
        points = drop_incomplete(self._proc.normalize_points(raw))
        return self._proc.build_time_series(points)

    async def get_validator_count(
        self, subnet_id: Optional[str], network: str = "mainnet"
    ) -> Union[int, str]:
        """获取子网验证者数量，不可用时返回 "N/A" """
        if not subnet_id or subnet_id == UNAVAILABLE:
            return UNAVAILABLE
        try:
            payload = await self._get_json(
                f"/v2/networks/{network}/metrics/validatorCount",
                {"pageSize": 1, "subnetId": subnet_id, **self._token_params()},
            )
            results = self._parse(_MetricsPage, payload).results
        except StatsServiceError as exc:
            logger.warning(f"验证者数量获取失败（子网 {subnet_id}）: {exc}")
            return UNAVAILABLE
        value = results[0].get("value") if results else None
        try:
            count = int(float(value)) if value is not None else 0
        except (TypeError, ValueError):
            return UNAVAILABLE
        return count if count > 0 else UNAVAILABLE


# ── ICM 消息索引 ──────────────────────────────────────────

class IcmApiClient(SourceClient):
    """跨链消息（ICM）日消息量"""

    name = "icm_api"

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or settings.ICM_API_URL, **kwargs)
        self._proc = get_processing_layer()

    async def get_icm_metric(self, chain_id: str, days: int = _ICM_DAYS) -> ICMMetric:
        try:
            payload = await self._get_json(
                f"/api/{chain_id}/metrics/dailyMessageVolume", {"days": days}
            )
            raw = self._parse(_ICM_PAYLOAD, payload)
        except StatsServiceError as exc:
            logger.warning(f"ICM 数据获取失败（链 {chain_id}）: {exc}")
            return ICMMetric()
        points = drop_incomplete(self._proc.normalize_icm_points(raw))
        return self._proc.build_icm_metric(points)


# ── Data API（验证者 / 子网列表） ───────────────────────────

class DataApiClient(SourceClient):
    """分页的验证者列表（经典 + 按权重的 L1）与子网列表"""

    name = "data_api"

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        headers = {"x-glacier-api-key": settings.DATA_API_KEY} if settings.DATA_API_KEY else None
        super().__init__(base_url or settings.DATA_API_URL, headers=headers, **kwargs)

    async def list_classic_validators(self, network: str) -> List[ValidatorRecord]:
        pages = await self._collect_pages(
            f"/v1/networks/{network}/validators",
            {"pageSize": settings.PAGE_SIZE, "validationStatus": "active"},
            _ClassicValidatorsPage,
        )
        validators = [
            ValidatorRecord(node_id=v.node_id, subnet_id=v.subnet_id, weight=v.amount_staked)
            for page in pages
            for v in page.validators
        ]
        logger.info(f"[{network}] 获取经典验证者 {len(validators)} 个")
        return validators

    async def list_l1_validators(self, network: str) -> List[ValidatorRecord]:
        pages = await self._collect_pages(
            f"/v1/networks/{network}/l1Validators",
            {"pageSize": settings.PAGE_SIZE, "includeInactiveL1Validators": "false"},
            _L1ValidatorsPage,
        )
        validators = [
            ValidatorRecord(node_id=v.node_id, subnet_id=v.subnet_id, weight=v.weight)
            for page in pages
            for v in page.validators
            if v.remaining_balance > 0
        ]
        logger.info(f"[{network}] 获取 L1 验证者 {len(validators)} 个")
        return validators

    async def list_validators(self, network: str) -> List[ValidatorRecord]:
        """两个互不重叠的列表直接拼接"""
        l1, classic = await asyncio.gather(
            self.list_l1_validators(network),
            self.list_classic_validators(network),
        )
        return l1 + classic

    async def list_subnets(self, network: str) -> List[SubnetRecord]:
        pages = await self._collect_pages(
            f"/v1/networks/{network}/subnets",
            {"pageSize": settings.PAGE_SIZE},
            _SubnetsPage,
        )
        subnets = [s for page in pages for s in page.subnets]
        logger.info(f"[{network}] 获取子网 {len(subnets)} 个")
        return subnets


# ── 验证者客户端版本源 ────────────────────────────────────

class ValidatorVersionClient(SourceClient):
    """扁平 JSON 源：[{nodeId, version}]"""

    name = "validator_versions"

    def __init__(self, **kwargs):
        super().__init__("", **kwargs)

    async def get_versions(self, network: str) -> Dict[str, str]:
        url = settings.discovery_url(network)
        if not url:
            raise ConfigurationError(f"未配置 {network} 的验证者版本源地址", source=self.name)
        entries = self._parse(_VERSION_PAYLOAD, await self._get_json(url))
        versions = {e.node_id: e.version or "Unknown" for e in entries}
        logger.info(f"[{network}] 获取验证者版本 {len(versions)} 条")
        return versions


class AcquisitionLayer:
    """数据获取层：持有全部上游适配器"""

    def __init__(
        self,
        metrics: Optional[MetricsApiClient] = None,
        icm: Optional[IcmApiClient] = None,
        data_api: Optional[DataApiClient] = None,
        versions: Optional[ValidatorVersionClient] = None,
    ):
        self.metrics = metrics or MetricsApiClient()
        self.icm = icm or IcmApiClient()
        self.data_api = data_api or DataApiClient()
        self.versions = versions or ValidatorVersionClient()

    async def close(self) -> None:
        for client in (self.metrics, self.icm, self.data_api, self.versions):
            await client.close()


# ── 模块级别单例 ──────────────────────────────────────────
_acquisition: Optional[AcquisitionLayer] = None


def get_acquisition_layer() -> AcquisitionLayer:
    global _acquisition
    if _acquisition is None:
        _acquisition = AcquisitionLayer()
    return _acquisition
