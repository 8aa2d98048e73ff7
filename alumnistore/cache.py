"""Read cache with in-flight request coalescing.

Entries are keyed by a canonical string of every query parameter (see
:func:`cache_key`).  While a computation runs, concurrent callers for the same
key await the same task, so N identical requests cost one upstream call.

Every completion path checks that the finishing task is still the current
entry for its key before touching the map; a slow failing computation must
never evict a newer one.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from alumnistore.errors import QuotaExceededError

logger = logging.getLogger(__name__)

T = TypeVar("T")

STALE_WARNING = "Served from cache due to Sheets quota."


def cache_key(version: Any, *params: Any) -> str:
    """Return ``v{version}|p1|p2|...``; ``None`` params become empty strings."""

    parts = [f"v{version}"]
    parts.extend("" if param is None else str(param) for param in params)
    return "|".join(parts)


@dataclass
class _Entry:
    task: "asyncio.Task[Any]"
    at: float
    in_flight: bool = True


class RequestCache:
    """TTL cache of awaited results; ``ttl_seconds=0`` means dedupe only."""

    def __init__(self, ttl_seconds: float = 0.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def cached(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        entry = self._entries.get(key)
        if entry is not None:
            if entry.in_flight or self._clock() - entry.at < self.ttl_seconds:
                return await asyncio.shield(entry.task)
            del self._entries[key]

        task = asyncio.ensure_future(compute())
        entry = _Entry(task=task, at=self._clock())
        self._entries[key] = entry
        task.add_done_callback(lambda done: self._settle(key, entry, done))
        return await asyncio.shield(task)

    def _settle(self, key: str, entry: _Entry, task: "asyncio.Task[Any]") -> None:
        failed = task.cancelled() or task.exception() is not None
        if self._entries.get(key) is not entry:
            return
        if failed or self.ttl_seconds <= 0:
            del self._entries[key]
            return
        entry.in_flight = False
        entry.at = self._clock()

    def evict(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class CachedResult(Generic[T]):
    data: T
    stale: bool = False
    warning: Optional[str] = None


@dataclass
class _Value:
    at: float
    data: Any


class StaleFallbackCache:
    """Coalescing cache that falls back to the last good value on quota errors.

    Successful values are kept past their TTL so they can be served (marked
    stale) when the provider refuses new reads.
    """

    def __init__(self, ttl_seconds: float = 0.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._values: Dict[str, _Value] = {}
        self._in_flight: Dict[str, "asyncio.Task[Any]"] = {}

    async def get(self, key: str, compute: Callable[[], Awaitable[T]]) -> CachedResult[T]:
        value = self._values.get(key)
        if value is not None and self._clock() - value.at < self.ttl_seconds:
            return CachedResult(value.data)

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(compute())
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._settle(key, done))

        try:
            data = await asyncio.shield(task)
        except QuotaExceededError:
            previous = self._values.get(key)
            if previous is None:
                raise
            logger.warning("Quota exceeded for %s; serving stale value", key)
            return CachedResult(previous.data, stale=True, warning=STALE_WARNING)
        return CachedResult(data)

    def _settle(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if task.cancelled() or task.exception() is not None:
            return
        self._values[key] = _Value(at=self._clock(), data=task.result())

    def evict(self, key: str) -> None:
        self._values.pop(key, None)

    def clear(self) -> None:
        self._values.clear()
        self._in_flight.clear()


_DEFAULT_CACHE: Optional[RequestCache] = None


def default_cache(ttl_seconds: float = 0.0) -> RequestCache:
    """Return the process-wide cache, created with ``ttl_seconds`` on first use."""

    global _DEFAULT_CACHE
    if _DEFAULT_CACHE is None:
        _DEFAULT_CACHE = RequestCache(ttl_seconds)
    return _DEFAULT_CACHE


__all__ = [
    "CachedResult",
    "RequestCache",
    "STALE_WARNING",
    "StaleFallbackCache",
    "cache_key",
    "default_cache",
]
