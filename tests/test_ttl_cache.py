"""Unit tests for the in-memory TTLCache."""

import threading

import pytest

from throttlecache.core.clock import ManualClock
from throttlecache.core.errors import InvalidArgumentError
from throttlecache.utils.ttl_cache import TTLCache, build_cache_key


def test_build_cache_key_is_stable_and_sensitive_to_changes() -> None:
    key1 = build_cache_key("validator_rankings", "mainnet", {"limit": 10, "sort": "mev"})
    key2 = build_cache_key("validator_rankings", "mainnet", {"sort": "mev", "limit": 10})
    key3 = build_cache_key("validator_rankings", "devnet", {"limit": 10, "sort": "mev"})
    key4 = build_cache_key("validator_rankings", "mainnet", {"limit": 10, "sort": "mev"}, salt="v2")

    assert key1 == key2
    assert key1 != key3
    assert key1 != key4
    assert key1.startswith("validator_rankings:")


def test_set_then_get_returns_value(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)

    cache.set("k", {"data": "test"}, 60)

    assert cache.get("k") == {"data": "test"}
    assert cache.get("missing") is None


def test_get_returns_default_when_absent(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)
    sentinel = object()

    assert cache.get("missing", sentinel) is sentinel


def test_falsy_values_are_cached(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)
    cache.set("zero", 0, 60)
    cache.set("none", None, 60)

    assert cache.has("zero") is True
    assert cache.get("zero", "absent") == 0
    assert cache.has("none") is True
    assert cache.get("none", "absent") is None


def test_expiry_boundary(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)
    cache.set("k", "v", 5)

    clock.advance(4.5)
    assert cache.get("k") == "v"

    clock.advance(0.5)
    assert cache.get("k") is None
    assert cache.stats()["evictions"] == 1


def test_expired_entry_is_removed_on_read(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)
    cache.set("k", "v", 5)

    clock.advance(6)

    assert cache.get("k") is None
    assert len(cache) == 0


def test_non_positive_ttl_is_not_stored(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)

    cache.set("zero", "v", 0)
    cache.set("negative", "v", -1)

    assert cache.has("zero") is False
    assert cache.has("negative") is False
    assert len(cache) == 0


def test_non_positive_ttl_drops_previous_value(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)
    cache.set("k", "v1", 60)

    cache.set("k", "v2", 0)

    assert cache.get("k") is None
    assert cache.has("k") is False
    assert len(cache) == 0


def test_get_can_skip_miss_accounting(clock: ManualClock, metrics) -> None:
    cache = TTLCache(clock=clock, metrics=metrics)
    cache.set("k", "v", 60)

    assert cache.get("missing", count_miss=False) is None
    assert cache.get("k", count_miss=False) == "v"

    stats = cache.stats()
    assert stats["misses"] == 0
    assert stats["hits"] == 1
    assert metrics.get_metrics("cache.miss") is None


def test_set_and_get_updates_hit_miss_counters(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)

    assert cache.get("missing") is None
    cache.set("key", "value", 10)
    assert cache.get("key") == "value"

    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1


def test_delete_and_has(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)
    cache.set("k", "v", 60)

    assert cache.has("k") is True
    assert cache.delete("k") is True
    assert cache.has("k") is False
    assert cache.get("k") is None
    assert cache.delete("k") is False


def test_has_does_not_count_hits(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)
    cache.set("k", "v", 60)

    cache.has("k")
    cache.has("missing")

    stats = cache.stats()
    assert stats["hits"] == 0
    assert stats["misses"] == 0


def test_lru_eviction_removes_least_recently_used(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock, max_entries=2)
    cache.set("a", {"v": 1}, 100)
    cache.set("b", {"v": 2}, 100)

    # Access "a" so that "b" becomes least recently used
    assert cache.get("a") == {"v": 1}

    cache.set("c", {"v": 3}, 100)

    assert cache.get("a") == {"v": 1}
    assert cache.get("c") == {"v": 3}
    assert cache.get("b") is None


def test_capacity_eviction_prefers_expired_entries(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock, max_entries=2)
    cache.set("a", 1, 100)
    cache.set("short", 2, 1)
    cache.get("short")

    clock.advance(2)
    cache.set("c", 3, 100)

    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_invalidate_by_pattern(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)
    cache.set("validators:mainnet:1", 1, 60)
    cache.set("validators:devnet:1", 2, 60)
    cache.set("bundles:mainnet:1", 3, 60)

    removed = cache.invalidate("mainnet")

    assert removed == 2
    assert cache.get("validators:devnet:1") == 2
    assert cache.get("validators:mainnet:1") is None


def test_purge_expired_reclaims_unread_entries(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)
    cache.set("short", 1, 5)
    cache.set("long", 2, 50)

    clock.advance(10)

    assert cache.purge_expired() == 1
    assert cache.stats()["keys"] == ["long"]


def test_clear_resets_state(clock: ManualClock) -> None:
    cache = TTLCache(clock=clock)
    cache.set("a", {"v": 1}, 10)
    cache.set("b", {"v": 2}, 10)
    cache.get("a")

    cache.clear()

    stats = cache.stats()
    assert stats["entries"] == 0
    assert stats["hits"] == 0
    assert stats["misses"] == 0
    assert stats["evictions"] == 0


def test_cache_counters_feed_metrics(clock: ManualClock, metrics) -> None:
    cache = TTLCache(clock=clock, metrics=metrics)
    cache.set("k", "v", 10)
    cache.get("k")
    cache.get("missing")

    assert metrics.get_metrics("cache.hit").count == 1
    assert metrics.get_metrics("cache.miss").count == 1


@pytest.mark.parametrize("key", ["", None])
def test_invalid_keys_rejected(key) -> None:
    cache = TTLCache()

    with pytest.raises(InvalidArgumentError):
        cache.get(key)
    with pytest.raises(InvalidArgumentError):
        cache.set(key, "v", 10)


def test_invalid_ttl_and_capacity_rejected() -> None:
    with pytest.raises(InvalidArgumentError):
        TTLCache(max_entries=0)

    cache = TTLCache()
    with pytest.raises(InvalidArgumentError):
        cache.set("k", "v", "10")
    with pytest.raises(InvalidArgumentError):
        cache.set("k", "v", float("nan"))


def test_thread_safety_under_concurrent_sets() -> None:
    cache = TTLCache(max_entries=None)
    total_keys = 50

    def _writer(idx: int) -> None:
        cache.set(f"k-{idx}", {"v": idx}, 30)

    threads = [threading.Thread(target=_writer, args=(i,)) for i in range(total_keys)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert cache.stats()["entries"] == total_keys
    # Ensure a random subset is readable
    assert cache.get("k-0") == {"v": 0}
    assert cache.get("k-25") == {"v": 25}
    assert cache.get("k-49") == {"v": 49}
