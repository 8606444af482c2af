"""Tests for the time-bounded cache."""
from mountain_bot.cache import TTLCache


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    cache.set("fuji", "image")
    clock.now = 9.5
    assert cache.get("fuji") == "image"
    clock.now = 10.5
    assert cache.get("fuji") is None
    assert "fuji" not in cache
    assert len(cache) == 0


def test_capacity_evicts_oldest():
    cache = TTLCache(60, max_entries=2, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)
    assert "a" not in cache
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_recently_read_entries_survive_eviction():
    cache = TTLCache(60, max_entries=2, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    cache.set("c", 3)
    assert "a" in cache
    assert "b" not in cache


def test_zero_ttl_disables_cache():
    cache = TTLCache(0)
    cache.set("a", 1)
    assert cache.get("a", "miss") == "miss"
    assert len(cache) == 0


def test_purge_expired_counts_removed_entries():
    clock = FakeClock()
    cache = TTLCache(5, clock=clock)
    cache.set("a", 1)
    clock.now = 3
    cache.set("b", 2)
    clock.now = 6
    assert cache.purge_expired() == 1
    assert "b" in cache
    cache.clear()
    assert len(cache) == 0
