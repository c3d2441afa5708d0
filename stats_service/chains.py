"""
静态链配置
从 l1_chains.json（或 CHAINS_FILE 指定的文件）加载已知链列表，用于驱动指标拉取与子网命名
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError as SchemaError

from stats_service.config import settings
from stats_service.errors import ConfigurationError
from stats_service.models.metrics import ChainConfig

logger = logging.getLogger(__name__)

_BUNDLED = Path(__file__).parent / "data" / "l1_chains.json"
_CHAIN_LIST = TypeAdapter(List[ChainConfig])


def load_chains(path: Optional[str] = None) -> Tuple[ChainConfig, ...]:
    """读取链配置文件；文件缺失或格式错误视为配置错误"""
    source = Path(path or settings.CHAINS_FILE or _BUNDLED)
    try:
        raw = json.loads(source.read_text(encoding="utf-8"))
        chains = _CHAIN_LIST.validate_python(raw)
    except (OSError, ValueError, SchemaError) as exc:
        raise ConfigurationError(f"链配置加载失败（{source}）: {exc}", source="chains") from exc
    logger.info(f"已加载链配置 {len(chains)} 条: {source}")
    return tuple(chains)


@lru_cache
def get_chains() -> Tuple[ChainConfig, ...]:
    return load_chains()


def mainnet_chains(chains: Optional[Tuple[ChainConfig, ...]] = None) -> List[ChainConfig]:
    """过滤掉测试网链"""
    return [c for c in (chains if chains is not None else get_chains()) if not c.is_testnet]


def subnet_display_info(chains: Tuple[ChainConfig, ...]) -> Dict[str, Tuple[str, str]]:
    """subnetId → (链名称, logo)，同一子网取配置中第一条"""
    info: Dict[str, Tuple[str, str]] = {}
    for chain in chains:
        if chain.subnet_id and chain.subnet_id not in info:
            info[chain.subnet_id] = (chain.chain_name, chain.chain_logo_uri)
    return info
