"""
In-process response cache for the CDN gateway.

Entries are keyed by the exact request URL (path plus raw query string) and
expire after a per-entry TTL. The store is bounded: when a new key arrives
at capacity, expired entries are purged first and then the oldest-inserted
entries are evicted.

Invalidation is substring based: ``invalidate("abc")`` drops every key that
contains ``abc``. This is coarse (an id that appears inside another key is
also cleared) and is kept for compatibility with existing clients.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_TTL = 3600
DEFAULT_CHECK_PERIOD = 600.0
DEFAULT_MAX_ENTRIES = 1000


@dataclass
class CachedResponse:
    """A fully rendered response body plus what is needed to replay it."""

    body: bytes
    media_type: Optional[str]
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: Optional[float]

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class ResponseCache:
    """TTL cache with a bounded entry count and a background expiry sweep."""

    def __init__(
        self,
        default_ttl: int = DEFAULT_TTL,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        check_period: float = DEFAULT_CHECK_PERIOD,
        *,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.check_period = check_period
        self.metrics = metrics
        self.logger = get_logger("cdn.response_cache")

        self._clock = clock
        # Insertion order doubles as eviction order
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._sweep_task: Optional[asyncio.Task] = None
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        """Return the live value for ``key`` or None."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._record_eviction("expired")
            self._misses += 1
            return None

        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value`` under ``key``, replacing any existing entry.

        ``ttl`` falls back to the cache default; a ttl of 0 never expires.
        """
        cache_ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        expires_at = now + cache_ttl if cache_ttl > 0 else None

        if key in self._entries:
            # A re-store counts as a fresh insertion
            del self._entries[key]
        else:
            self._make_room(now)

        self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
        self.logger.debug("Cached response", key=key, ttl=cache_ttl)

    def invalidate(self, pattern: Optional[str] = None) -> int:
        """Drop entries whose key contains ``pattern``; flush all without one.

        Returns the number of entries removed.
        """
        if not pattern:
            removed = len(self._entries)
            self._entries.clear()
            self.logger.info("Cache flushed", removed=removed)
            return removed

        matching = [key for key in self._entries if pattern in key]
        for key in matching:
            del self._entries[key]

        self.logger.info("Cache invalidated", pattern=pattern, removed=len(matching))
        return len(matching)

    def purge_expired(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
            self._record_eviction("expired")
        return len(expired)

    def _make_room(self, now: float) -> None:
        if len(self._entries) < self.max_entries:
            return

        self.purge_expired()

        while len(self._entries) >= self.max_entries:
            oldest_key, _ = self._entries.popitem(last=False)
            self._record_eviction("capacity")
            self.logger.debug("Evicted oldest cache entry", key=oldest_key)

    def _record_eviction(self, reason: str) -> None:
        self._evictions += 1
        if self.metrics:
            self.metrics.increment_counter("cache_evictions_total", reason=reason)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        lookups = self._hits + self._misses
        return {
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "default_ttl": self.default_ttl,
            "hits": self._hits,
            "misses": self._misses,
            "hit_ratio": round(self._hits / lookups, 4) if lookups else 0.0,
            "evictions": self._evictions,
            "sweeping": self.is_running,
        }

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Start the periodic expiry sweep."""
        if self.is_running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="response-cache-sweep")
        self.logger.info("Cache sweep started", check_period=self.check_period)

    async def stop(self) -> None:
        """Stop the sweep and drop all entries."""
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._entries.clear()
        self.logger.info("Cache sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_period)
            try:
                removed = self.purge_expired()
            except Exception as exc:
                self.logger.error("Cache sweep error", error=str(exc))
                continue
            if removed:
                self.logger.debug("Cache sweep purged entries", removed=removed)
