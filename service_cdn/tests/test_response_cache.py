"""
Unit tests for the CDN response cache.
"""

import asyncio

import pytest
from unittest.mock import MagicMock

from service_cdn.app.caching.response_cache import CachedResponse, ResponseCache


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestResponseCache:
    """Test cases for ResponseCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        """Create a small cache driven by the fake clock."""
        return ResponseCache(default_ttl=60, max_entries=3, check_period=0.01, clock=clock)

    def test_get_returns_stored_value(self, cache):
        """Test a live entry is returned."""
        value = CachedResponse(body=b"{}", media_type="application/json")
        cache.set("/api/files", value)

        assert cache.get("/api/files") is value

    def test_get_missing_key(self, cache):
        """Test a missing key is a miss."""
        assert cache.get("/nope") is None
        assert cache.get_stats()["misses"] == 1

    def test_entry_expires_after_ttl(self, cache, clock):
        """Test entries disappear once their TTL has elapsed."""
        cache.set("/api/stats", "stats", ttl=10)

        clock.advance(9.9)
        assert cache.get("/api/stats") == "stats"

        clock.advance(0.1)
        assert cache.get("/api/stats") is None
        assert len(cache) == 0

    def test_default_ttl_applies(self, cache, clock):
        """Test the default TTL is used when none is given."""
        cache.set("/a", 1)
        clock.advance(59)
        assert cache.get("/a") == 1
        clock.advance(1)
        assert cache.get("/a") is None

    def test_zero_ttl_never_expires(self, cache, clock):
        """Test a TTL of zero keeps the entry indefinitely."""
        cache.set("/forever", "value", ttl=0)
        clock.advance(10 ** 9)

        assert cache.get("/forever") == "value"
        assert cache.purge_expired() == 0

    def test_set_replaces_existing_entry(self, cache):
        """Test re-storing a key overwrites its value."""
        cache.set("/a", "old")
        cache.set("/a", "new")

        assert cache.get("/a") == "new"
        assert len(cache) == 1

    def test_capacity_evicts_oldest_insertion(self, cache):
        """Test the oldest inserted entry goes first at capacity."""
        cache.set("/a", 1)
        cache.set("/b", 2)
        cache.set("/c", 3)
        cache.get("/a")  # reads do not refresh insertion order
        cache.set("/d", 4)

        assert len(cache) == 3
        assert cache.get("/a") is None
        assert cache.get("/d") == 4
        assert cache.get_stats()["evictions"] == 1

    def test_restore_counts_as_fresh_insertion(self, cache):
        """Test a re-stored key moves to the back of the eviction order."""
        cache.set("/a", 1)
        cache.set("/b", 2)
        cache.set("/c", 3)
        cache.set("/a", 10)
        cache.set("/d", 4)

        assert cache.get("/a") == 10
        assert cache.get("/b") is None

    def test_capacity_purges_expired_before_evicting(self, cache, clock):
        """Test expired entries are reclaimed before live ones are evicted."""
        cache.set("/a", 1)
        cache.set("/short", 2, ttl=1)
        cache.set("/c", 3)
        clock.advance(2)

        cache.set("/d", 4)

        assert cache.get("/a") == 1
        assert cache.get("/c") == 3
        assert cache.get("/d") == 4

    def test_invalidate_by_substring(self, cache):
        """Test invalidation removes every key containing the pattern."""
        cache.set("/api/file/abc", 1)
        cache.set("/cdn/abc", 2)
        cache.set("/api/files", 3)

        removed = cache.invalidate("abc")

        assert removed == 2
        assert cache.get("/api/files") == 3
        assert cache.get("/cdn/abc") is None

    def test_invalidate_without_pattern_flushes(self, cache):
        """Test invalidation with no pattern empties the cache."""
        cache.set("/a", 1)
        cache.set("/b", 2)

        assert cache.invalidate() == 2
        assert len(cache) == 0

    def test_invalidate_no_match(self, cache):
        """Test invalidation with an unmatched pattern removes nothing."""
        cache.set("/a", 1)
        assert cache.invalidate("zzz") == 0
        assert len(cache) == 1

    def test_purge_expired(self, cache, clock):
        """Test purge removes only expired entries."""
        cache.set("/a", 1, ttl=5)
        cache.set("/b", 2, ttl=50)
        clock.advance(10)

        assert cache.purge_expired() == 1
        assert len(cache) == 1

    def test_stats(self, cache):
        """Test hit and miss accounting."""
        cache.set("/a", 1)
        cache.get("/a")
        cache.get("/a")
        cache.get("/b")

        stats = cache.get_stats()
        assert stats["entries"] == 1
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_ratio"] == pytest.approx(0.6667)
        assert stats["max_entries"] == 3
        assert stats["sweeping"] is False

    def test_eviction_metrics(self, clock):
        """Test evictions are reported with their reason."""
        metrics = MagicMock()
        cache = ResponseCache(default_ttl=60, max_entries=1, clock=clock, metrics=metrics)

        cache.set("/a", 1)
        cache.set("/b", 2)

        metrics.increment_counter.assert_called_once_with("cache_evictions_total", reason="capacity")

    def test_invalid_capacity(self):
        """Test a non-positive capacity is rejected."""
        with pytest.raises(ValueError):
            ResponseCache(max_entries=0)

    @pytest.mark.asyncio
    async def test_sweep_purges_expired_entries(self, cache, clock):
        """Test the background sweep removes expired entries."""
        cache.set("/a", 1, ttl=1)
        cache.set("/b", 2, ttl=0)
        clock.advance(5)

        await cache.start()
        assert cache.is_running
        try:
            for _ in range(100):
                if len(cache) == 1:
                    break
                await asyncio.sleep(0.01)
            remaining = len(cache)
        finally:
            await cache.stop()

        assert remaining == 1
        assert not cache.is_running

    @pytest.mark.asyncio
    async def test_sweep_keeps_live_entries(self, cache, clock):
        """Test the sweep leaves unexpired entries in place."""
        cache.set("/a", 1, ttl=100)

        await cache.start()
        await asyncio.sleep(0.05)
        assert cache.get("/a") == 1
        await cache.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, cache):
        """Test starting twice keeps a single sweep task."""
        await cache.start()
        task = cache._sweep_task
        await cache.start()

        assert cache._sweep_task is task
        await cache.stop()

    @pytest.mark.asyncio
    async def test_stop_clears_entries(self, cache):
        """Test stopping drops all entries."""
        await cache.start()
        cache.set("/a", 1)

        await cache.stop()

        assert len(cache) == 0
        assert cache.get_stats()["sweeping"] is False

    @pytest.mark.asyncio
    async def test_stop_without_start(self, cache):
        """Test stop is safe before start."""
        await cache.stop()
        assert not cache.is_running
