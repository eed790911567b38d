from __future__ import annotations

from ttl_cache import MISS, TTLCache


def test_get_returns_value_until_ttl(clock) -> None:
    cache = TTLCache(10, clock=clock)
    cache.set("a", 1)

    clock.now += 9.5
    assert cache.get("a") == 1

    clock.now += 0.5
    assert cache.get("a") is MISS
    assert len(cache) == 0


def test_cached_falsy_values_are_not_misses(clock) -> None:
    cache = TTLCache(10, clock=clock)
    cache.set("none", None)
    cache.set("false", False)

    assert cache.get("none") is None
    assert cache.get("false") is False
    assert cache.get("missing") is MISS
    assert not MISS


def test_per_entry_ttl_override(clock) -> None:
    cache = TTLCache(10, clock=clock)
    cache.set("short", "x", ttl=1)
    cache.set("long", "y")

    clock.now += 2
    assert not cache.has("short")
    assert cache.has("long")


def test_cleanup_removes_only_expired(clock) -> None:
    cache = TTLCache(5, clock=clock)
    cache.set("old", 1)
    clock.now += 3
    cache.set("new", 2)
    clock.now += 3

    assert cache.cleanup() == 1
    assert len(cache) == 1
    assert cache.get("new") == 2

    cache.clear()
    assert len(cache) == 0
