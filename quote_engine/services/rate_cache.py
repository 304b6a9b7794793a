"""In-process rate cache with single-flight refresh.

Caches rate answers per key with a TTL attached at write time:
- fresh entries are returned without any I/O
- expired or missing entries trigger one refresh per key, shared by all
  concurrent callers
- an expired value is served at once as a stale fallback while the refresh
  runs; only callers with no value wait for it
- expired entries are kept for a grace period, then evicted by the sweeper
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, NamedTuple

from ..config import CacheConfig
from ..exceptions import CacheMissError, ProviderTimeoutError
from ..models import RateCacheEntry, RateSource

logger = logging.getLogger(__name__)


class CacheLookup(NamedTuple):
    """Value returned by RateCache.get_or_fetch."""

    value: Any
    source: RateSource
    stale: bool = False
    error: str | None = None


class RateCache:
    """Shared rate cache for currency tables and tax provider answers.

    Reads never block on a refresh once a value exists: the expired value
    is served and the refresh writes its result for the next caller. Writes
    are last-writer-wins per key.
    """

    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.monotonic):
        """Initialize the cache.

        Args:
            config: Cache lifetimes and sweep settings.
            clock: Monotonic time source in seconds.
        """
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, RateCacheEntry] = {}
        self._refreshing: dict[str, asyncio.Task] = {}
        self._last_errors: dict[str, str] = {}
        self._sweep_task: asyncio.Task | None = None
        self._stats = {
            "hits": 0,
            "misses": 0,
            "refreshes": 0,
            "refresh_failures": 0,
            "stale_served": 0,
            "evictions": 0,
        }

    @staticmethod
    def make_key(*parts: Any) -> str:
        """Build a cache key such as 'gst:IN:8517'."""
        return ":".join(str(part).upper() for part in parts if part is not None and part != "")

    def get(self, key: str) -> RateCacheEntry | None:
        """Get the raw entry for a key, fresh or not."""
        return self._entries.get(key)

    def set(self, key: str, value: Any, ttl: float, source: RateSource = RateSource.LIVE) -> RateCacheEntry:
        """Store a value with its lifetime.

        Args:
            key: Cache key.
            value: Payload to cache.
            ttl: Lifetime in seconds.
            source: Where the value came from.

        Returns:
            The stored entry.
        """
        entry = RateCacheEntry(key=key, value=value, fetched_at=self._clock(), ttl=ttl, source=source)
        self._entries[key] = entry
        return entry

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: float,
        timeout: float | None = None,
    ) -> CacheLookup:
        """Get a fresh value, refreshing it through `fetcher` when needed.

        An expired entry is returned at once, tagged as a stale fallback,
        while a single background refresh replaces it. Only a caller with no
        value at all waits for the refresh.

        Args:
            key: Cache key.
            fetcher: Coroutine factory producing a new value; raises on failure.
            ttl: Lifetime of a newly fetched value, in seconds.
            timeout: How long a caller without a value waits for the refresh.

        Returns:
            CacheLookup tagged CACHE for fresh hits, LIVE for values fetched
            for this caller and FALLBACK for expired values.

        Raises:
            CacheMissError: No value exists and the refresh failed or timed out.
        """
        if not self.config.enabled:
            return await self._fetch_uncached(key, fetcher, timeout)

        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            self._stats["hits"] += 1
            logger.debug(f"Cache hit: {key}")
            return CacheLookup(entry.value, RateSource.CACHE)

        self._stats["misses"] += 1
        task = self._start_refresh(key, fetcher, ttl)

        if entry is not None:
            self._stats["stale_served"] += 1
            error = self._last_errors.get(key)
            logger.info(f"Serving expired value for {key} while it refreshes")
            return CacheLookup(entry.value, RateSource.FALLBACK, stale=True, error=error)

        try:
            if timeout is None:
                value = await asyncio.shield(task)
            else:
                value = await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError as e:
            raise CacheMissError(key, cause=ProviderTimeoutError(f"Refresh of {key} exceeded {timeout}s")) from e
        except Exception as e:
            raise CacheMissError(key, cause=e) from e
        return CacheLookup(value, RateSource.LIVE)

    def _start_refresh(self, key: str, fetcher: Callable[[], Awaitable[Any]], ttl: float) -> asyncio.Task:
        task = self._refreshing.get(key)
        if task is not None:
            logger.debug(f"Joining in-flight refresh: {key}")
            return task

        logger.debug(f"Refreshing: {key}")
        task = asyncio.create_task(self._refresh(key, fetcher, ttl))
        self._refreshing[key] = task
        task.add_done_callback(lambda t: self._on_refresh_done(key, t))
        return task

    async def _refresh(self, key: str, fetcher: Callable[[], Awaitable[Any]], ttl: float) -> Any:
        self._stats["refreshes"] += 1
        value = await fetcher()
        source = getattr(value, "source", RateSource.LIVE)
        self.set(key, value, ttl, source=source if isinstance(source, RateSource) else RateSource.LIVE)
        return value

    async def _fetch_uncached(
        self, key: str, fetcher: Callable[[], Awaitable[Any]], timeout: float | None
    ) -> CacheLookup:
        try:
            if timeout is None:
                value = await fetcher()
            else:
                value = await asyncio.wait_for(fetcher(), timeout)
        except asyncio.TimeoutError as e:
            raise CacheMissError(key, cause=ProviderTimeoutError(f"Fetch of {key} exceeded {timeout}s")) from e
        except Exception as e:
            raise CacheMissError(key, cause=e) from e
        return CacheLookup(value, RateSource.LIVE)

    def _on_refresh_done(self, key: str, task: asyncio.Task) -> None:
        if self._refreshing.get(key) is task:
            del self._refreshing[key]
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            self._last_errors.pop(key, None)
        else:
            self._stats["refresh_failures"] += 1
            self._last_errors[key] = str(error) or type(error).__name__
            logger.warning(f"Refresh of {key} failed: {error}")

    def sweep(self) -> int:
        """Evict entries expired for longer than the stale grace period.

        Returns:
            Number of evicted entries.
        """
        now = self._clock()
        grace = self.config.stale_grace
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at + grace]
        for key in expired:
            del self._entries[key]

        if expired:
            self._stats["evictions"] += len(expired)
            logger.debug(f"Evicted {len(expired)} expired cache entries")
        return len(expired)

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove all entries whose key starts with `prefix`."""
        prefix = prefix.upper()
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        """Remove all entries. In-flight refreshes still write their result."""
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"Rate cache cleared: {count} entries removed")

    def start_sweeper(self) -> None:
        """Start the periodic eviction task on the running loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            self.sweep()

    async def wait_for_refreshes(self, timeout: float | None = None) -> None:
        """Wait for in-flight refreshes to write their results."""
        tasks = list(self._refreshing.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def close(self) -> None:
        """Stop the sweeper and cancel in-flight refreshes."""
        tasks = list(self._refreshing.values())
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
            self._sweep_task = None

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshing.clear()

    def get_stats(self) -> dict[str, int]:
        """Get cache statistics."""
        return {
            **self._stats,
            "entries": len(self._entries),
            "active_refreshes": len(self._refreshing),
        }
