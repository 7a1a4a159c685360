"""Tests for the bounded LRU cache."""

import pytest

from devmind.daemon.cache import BoundedCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestBoundedCache:
    """Capacity, LRU order and TTL expiry."""

    def test_get_miss_returns_none(self):
        cache = BoundedCache(max_size=2)
        assert cache.get("missing") is None
        assert cache.stats()['misses'] == 1

    def test_set_and_get(self):
        cache = BoundedCache(max_size=2)
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache

    def test_evicts_least_recently_used(self):
        """Reading an entry protects it from the next eviction."""
        cache = BoundedCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.get("a") == 1

        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3
        assert cache.stats()['evictions'] == 1

    def test_size_never_exceeds_capacity(self):
        cache = BoundedCache(max_size=3)
        for i in range(50):
            cache.set(i, i)
            assert cache.size() <= 3
        assert cache.size() == 3

    def test_replacing_key_does_not_evict(self):
        cache = BoundedCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        assert cache.get("a") == 10
        assert cache.get("b") == 2
        assert cache.stats()['evictions'] == 0

    def test_entry_expires_after_ttl(self, clock):
        cache = BoundedCache(max_size=2, ttl_seconds=10, clock=clock)
        cache.set("a", 1)

        clock.advance(10)
        assert cache.get("a") == 1

        clock.advance(0.5)
        assert cache.get("a") is None
        assert cache.stats()['expirations'] == 1
        assert cache.size() == 0

    def test_per_entry_ttl_override(self, clock):
        cache = BoundedCache(max_size=5, ttl_seconds=100, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)
        clock.advance(5)
        assert "short" not in cache
        assert "long" in cache

    def test_purge_expired(self, clock):
        cache = BoundedCache(max_size=5, ttl_seconds=1, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        clock.advance(2)
        cache.set("c", 3)

        assert cache.purge_expired() == 2
        assert cache.size() == 1

    def test_clear_and_delete(self):
        cache = BoundedCache(max_size=5)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert len(cache) == 0

    def test_hit_rate(self):
        cache = BoundedCache(max_size=5)
        cache.set("a", 1)
        cache.get("a")
        cache.get("a")
        cache.get("b")
        stats = cache.stats()
        assert stats['hits'] == 2
        assert stats['hit_rate'] == pytest.approx(2 / 3)

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            BoundedCache(max_size=0)


@pytest.mark.asyncio
async def test_get_or_compute_caches_result():
    """Factory only runs on a miss."""
    cache = BoundedCache(max_size=5)
    calls = []

    async def factory():
        calls.append(1)
        return "value"

    assert await cache.get_or_compute("k", factory) == "value"
    assert await cache.get_or_compute("k", factory) == "value"
    assert len(calls) == 1
