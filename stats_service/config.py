"""
统计服务配置模块
支持从环境变量 / .env 读取配置，所有上游地址、缓存 TTL 与超时均可覆盖
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_NETWORKS = ("mainnet", "fuji")


class StatsServiceSettings(BaseSettings):
    """统计服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8001)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── 上游数据源 ─────────────────────────────────────────
    METRICS_API_URL: str = Field(default="https://metrics.avax.network")
    ICM_API_URL: str = Field(default="https://idx6.solokhin.com")
    DATA_API_URL: str = Field(default="https://glacier-api.avax.network")
    METRICS_BYPASS_TOKEN: str = Field(default="")
    DATA_API_KEY: str = Field(default="")
    MAINNET_VALIDATOR_DISCOVERY_URL: str = Field(default="")
    FUJI_VALIDATOR_DISCOVERY_URL: str = Field(default="")
    CHAINS_FILE: str = Field(default="")             # 为空时使用内置 l1_chains.json

    # ── 缓存配置（秒） ─────────────────────────────────────
    CHAIN_CACHE_TTL: int = Field(default=300)        # 单链指标
    SNAPSHOT_CACHE_TTL: int = Field(default=900)     # 概览快照 "latest"
    VALIDATOR_CACHE_TTL: int = Field(default=300)    # 验证者列表
    SUBNET_CACHE_TTL: int = Field(default=300)       # 子网列表
    VERSION_CACHE_TTL: int = Field(default=60)       # 客户端版本源
    CACHE_MAX_ENTRIES: int = Field(default=1024)

    # ── 超时配置（秒） ─────────────────────────────────────
    SOURCE_TIMEOUT: float = Field(default=8.0)       # 单次上游 HTTP 请求
    CHAIN_FETCH_TIMEOUT: float = Field(default=10.0)  # 单条链的全部指标
    OVERVIEW_DEADLINE: float = Field(default=25.0)
    VALIDATOR_STATS_DEADLINE: float = Field(default=25.0)

    # ── 分页 ──────────────────────────────────────────────
    PAGE_SIZE: int = Field(default=100)
    MAX_PAGES: int = Field(default=50)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")

    def discovery_url(self, network: str) -> Optional[str]:
        """返回指定网络的验证者版本源地址（未配置时为 None）"""
        url = {
            "mainnet": self.MAINNET_VALIDATOR_DISCOVERY_URL,
            "fuji": self.FUJI_VALIDATOR_DISCOVERY_URL,
        }.get(network, "")
        return url or None


@lru_cache
def get_settings() -> StatsServiceSettings:
    """获取全局配置（单例）"""
    return StatsServiceSettings()


settings = get_settings()
