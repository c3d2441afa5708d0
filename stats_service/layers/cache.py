"""
Layer 2 – 缓存层
进程内 TTL 缓存，同一个键在任意时刻最多只有一个上游请求在途（single-flight）。

状态机（每个键）：
  EMPTY → FETCHING → FRESH →（TTL 过期）→ STALE → FETCHING → FRESH …
  STALE 状态下刷新失败仍回到 STALE（旧数据可继续使用）；
  EMPTY 状态下获取失败保持 EMPTY，并把异常抛给调用方。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Set, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NO_DATA = object()


def _now_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """缓存条目；发布后不再修改，刷新时整体替换"""
    data: Any = _NO_DATA
    timestamp: float = 0.0
    in_flight: Optional["asyncio.Task[T]"] = None

    @property
    def has_data(self) -> bool:
        return self.data is not _NO_DATA

    def age_ms(self, now: float) -> float:
        return now - self.timestamp


class CacheStore(Generic[T]):
    """
    单飞（single-flight）TTL 缓存

    - 条目新鲜：直接返回，无 I/O
    - 已有在途请求：等待同一个请求的结果
    - 否则：先同步登记在途标记，再发起请求；成功后发布新条目，失败则保留旧条目
    """

    def __init__(
        self,
        name: str,
        max_entries: int = 1024,
        clock: Callable[[], float] = _now_ms,
    ):
        self.name = name
        self._max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._tasks: Set["asyncio.Task"] = set()
        self._hits = 0
        self._misses = 0
        self._stale_served = 0

    def _is_fresh(self, entry: Optional[CacheEntry], ttl: float, now: float) -> bool:
        return entry is not None and entry.has_data and entry.age_ms(now) < ttl * 1000

    def peek(self, key: str, ttl: float) -> Optional[Tuple[T, float]]:
        """仅在条目新鲜时返回 (数据, 条目年龄毫秒)，不触发任何 I/O"""
        now = self._clock()
        entry = self._entries.get(key)
        if self._is_fresh(entry, ttl, now):
            self._hits += 1
            return entry.data, entry.age_ms(now)
        return None

    def get_stale(self, key: str) -> Optional[Tuple[T, float]]:
        """返回任意年龄的已发布数据（用于降级）"""
        entry = self._entries.get(key)
        if entry is None or not entry.has_data:
            return None
        return entry.data, entry.age_ms(self._clock())

    async def get(
        self,
        key: str,
        ttl: float,
        fetch_fn: Callable[[], Awaitable[T]],
        stale_on_error: bool = False,
    ) -> T:
        now = self._clock()
        entry = self._entries.get(key)

        if self._is_fresh(entry, ttl, now):
            self._hits += 1
            logger.debug(f"缓存命中（{self.name}）: {key}")
            return entry.data

        if entry is not None and entry.in_flight is not None:
            task = entry.in_flight
            logger.debug(f"等待在途请求（{self.name}）: {key}")
        else:
            # 检查与登记之间没有 await，登记即互斥
            self._misses += 1
            task = asyncio.ensure_future(self._fill(key, fetch_fn))
            task.add_done_callback(_consume_exception)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            self._install(key, replace(entry, in_flight=task) if entry else CacheEntry(in_flight=task))

        try:
            return await asyncio.shield(task)
        except Exception:
            if stale_on_error:
                stale = self.get_stale(key)
                if stale is not None:
                    self._stale_served += 1
                    logger.warning(
                        f"刷新失败，使用过期缓存（{self.name}）: {key}，年龄 {stale[1] / 1000:.0f}s"
                    )
                    return stale[0]
            raise

    async def _fill(self, key: str, fetch_fn: Callable[[], Awaitable[T]]) -> T:
        try:
            data = await fetch_fn()
        except BaseException as exc:
            if self._owns(key):
                current = self._entries[key]
                if current.has_data:
                    self._entries[key] = replace(current, in_flight=None)
                    self._shrink(keep=key)
                else:
                    del self._entries[key]
            if not isinstance(exc, asyncio.CancelledError):
                logger.warning(f"缓存刷新失败（{self.name}）: {key}: {exc}")
            raise
        if self._owns(key):
            self._install(key, CacheEntry(data=data, timestamp=self._clock()))
            logger.debug(f"缓存写入（{self.name}）: {key}")
        else:
            # 已被 invalidate(detach=True) 解除登记，结果只交给原等待者
            logger.debug(f"丢弃已解除登记的请求结果（{self.name}）: {key}")
        return data

    def _owns(self, key: str) -> bool:
        current = self._entries.get(key)
        return current is not None and current.in_flight is asyncio.current_task()

    def _install(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry
        self._shrink(keep=key)

    def _shrink(self, keep: Optional[str] = None) -> None:
        """
        淘汰最旧的已结算条目，直到不超过 max_entries

        在途条目不会被淘汰；全部在途时可暂时超出上限，
        之后每个请求结算时再继续收缩。
        """
        while len(self._entries) > self._max_entries:
            settled = [
                (e.timestamp, k)
                for k, e in self._entries.items()
                if e.in_flight is None and k != keep
            ]
            if not settled:
                return
            _, oldest = min(settled)
            del self._entries[oldest]
            logger.debug(f"缓存已满，淘汰（{self.name}）: {oldest}")

    def invalidate(self, key: str, detach: bool = False) -> None:
        """
        清除键上的数据

        Args:
            detach: False 时在途请求完成后仍会发布结果；
                    True 时同时解除在途登记，下一次 get 发起新请求，旧请求的结果不再写入缓存
        """
        entry = self._entries.pop(key, None)
        if not detach and entry is not None and entry.in_flight is not None:
            self._entries[key] = CacheEntry(in_flight=entry.in_flight)

    def clear(self, detach: bool = False) -> None:
        for key in list(self._entries):
            self.invalidate(key, detach=detach)

    def stats(self) -> dict:
        now = self._clock()
        in_flight = sum(1 for e in self._entries.values() if e.in_flight is not None)
        with_data = [e for e in self._entries.values() if e.has_data]
        return {
            "name": self.name,
            "keys": len(with_data),
            "in_flight": in_flight,
            "oldest_age_s": round(max((e.age_ms(now) for e in with_data), default=0) / 1000, 1),
            "hits": self._hits,
            "misses": self._misses,
            "stale_served": self._stale_served,
            "max_entries": self._max_entries,
        }

    async def close(self) -> None:
        """取消所有在途请求（应用关闭时调用）"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._entries.clear()


def _consume_exception(task: "asyncio.Task") -> None:
    if not task.cancelled():
        task.exception()
