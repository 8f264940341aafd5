"""Keyed async result cache with TTL governance and request coalescing."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")

DEFAULT_TTL_MS = 3_600_000
DEFAULT_MAX_ENTRIES = 100

_MAX_AGE_RE = re.compile(r"(?:^|[,\s])max-age\s*=\s*\"?(\d+)\"?", re.IGNORECASE)

_LOGGER = logging.getLogger("choropleth.cache")


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    data: T
    timestamp: float
    expires_at: float


@dataclass(frozen=True, slots=True)
class FreshResult(Generic[T]):
    """Producer result carrying optional freshness metadata (a Cache-Control value)."""

    data: T | None
    freshness: str | None = None


Producer = Callable[[], Awaitable[Any]]


def parse_max_age(header: str | None) -> int | None:
    """Extract `max-age=<seconds>` from a cache-control style value."""
    if not header:
        return None
    match = _MAX_AGE_RE.search(header)
    if match is None:
        return None
    return int(match.group(1))


def resolve_ttl_ms(
    ttl_ms: float,
    freshness: str | None,
    *,
    respect_freshness_headers: bool,
) -> float:
    """Cap `ttl_ms` by a max-age directive. Never extends the supplied TTL."""
    if not respect_freshness_headers:
        return ttl_ms
    max_age_s = parse_max_age(freshness)
    if max_age_s is None:
        return ttl_ms
    return min(ttl_ms, max_age_s * 1000)


def _consume_outcome(task: asyncio.Future) -> None:
    # Every waiter may have been cancelled before a failing producer finished.
    if not task.cancelled() and task.exception() is not None:
        _LOGGER.debug("shared producer failed: %r", task.exception())


class ResultCache:
    """Capacity-bounded key/value cache for expensive async lookups.

    Concurrent `get_or_fetch` calls for the same key share one producer task.
    Entries are evicted oldest-inserted first once `max_entries` is reached.
    `clock` returns seconds and is injectable for tests.
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl_ms: float = DEFAULT_TTL_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if default_ttl_ms <= 0:
            raise ValueError("default_ttl_ms must be > 0")
        self.max_entries = max_entries
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._pending: dict[str, asyncio.Task[Any]] = {}

    def __len__(self) -> int:
        return sum(1 for key in list(self._entries) if self._live(key) is not None)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._live(key) is not None

    async def get_or_fetch(
        self,
        key: str,
        producer: Producer,
        *,
        ttl_ms: float | None = None,
        respect_freshness_headers: bool = False,
    ) -> Any:
        entry = self._live(key)
        if entry is not None:
            _LOGGER.debug("cache hit %s", key)
            return entry.data

        task = self._pending.get(key)
        if task is None:
            _LOGGER.debug("cache miss %s; invoking producer", key)
            task = asyncio.ensure_future(
                self._run_producer(
                    key,
                    producer,
                    ttl_ms=ttl_ms,
                    respect_freshness_headers=respect_freshness_headers,
                )
            )
            self._pending[key] = task
            task.add_done_callback(_consume_outcome)
        else:
            _LOGGER.debug("coalescing request for %s", key)
        # A caller giving up must not cancel the shared producer.
        return await asyncio.shield(task)

    async def _run_producer(
        self,
        key: str,
        producer: Producer,
        *,
        ttl_ms: float | None,
        respect_freshness_headers: bool,
    ) -> Any:
        try:
            result = await producer()
        finally:
            self._pending.pop(key, None)

        freshness: str | None = None
        if isinstance(result, FreshResult):
            freshness = result.freshness
            data = result.data
        else:
            data = result

        if data is None:
            _LOGGER.debug("producer for %s returned no data; not caching", key)
            return None

        effective_ttl = resolve_ttl_ms(
            self.default_ttl_ms if ttl_ms is None else ttl_ms,
            freshness,
            respect_freshness_headers=respect_freshness_headers,
        )
        self.set(key, data, ttl_ms=effective_ttl)
        return data

    def get(self, key: str) -> Any:
        entry = self._live(key)
        return None if entry is None else entry.data

    def set(self, key: str, data: Any, ttl_ms: float | None = None) -> None:
        effective_ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        if self._entries.pop(key, None) is None and len(self._entries) >= self.max_entries:
            self._evict_oldest()
        now = self._clock()
        self._entries[key] = CacheEntry(
            data=data,
            timestamp=now,
            expires_at=now + (effective_ttl / 1000.0),
        )

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def entry(self, key: str) -> CacheEntry[Any] | None:
        return self._live(key)

    def _live(self, key: str) -> CacheEntry[Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def _evict_oldest(self) -> None:
        oldest_key = min(self._entries, key=lambda k: self._entries[k].timestamp)
        _LOGGER.debug("evicting oldest cache entry %s", oldest_key)
        del self._entries[oldest_key]
