# tests/test_smart_cache.py
"""Tests for the entry store: expiry, capacity, invalidation and lifecycle."""

import asyncio

import pytest

from core.cache_entry import CachePolicy
from core.event_bus import (
    CacheCleanup,
    CacheCleared,
    CacheEvicted,
    CacheHit,
    CacheInvalidated,
    CacheMiss,
    CacheSet,
)
from core.exceptions import StoreDestroyedError, ValidationError
from core.smart_cache import SmartCache


class TestGetAndSet:
    def test_set_then_get_returns_value(self, clock, graph, bus):
        store = SmartCache("test", dependencies=graph, event_bus=bus)
        store.set("k", {"a": 1}, ttl=10)
        assert store.get("k") == {"a": 1}

    def test_missing_key_returns_default(self, clock):
        store = SmartCache()
        assert store.get("nope") is None
        assert store.get("nope", "fallback") == "fallback"

    def test_stale_entry_is_removed_on_read(self, clock, bus, recorded):
        store = SmartCache("test", event_bus=bus)
        store.set("k", "v", ttl=10)
        clock.advance(10.5)

        assert store.get("k") is None
        assert store.get_detailed_info()["entries"] == []
        assert len(store) == 0

        miss = [e for e in recorded if isinstance(e, CacheMiss)]
        assert len(miss) == 1
        assert miss[0].expired is True

    def test_entry_is_live_just_before_expiry(self, clock):
        store = SmartCache()
        store.set("k", "v", ttl=10)
        clock.advance(9.9)
        assert store.get("k") == "v"

    def test_default_ttl_used_when_not_given(self, clock):
        store = SmartCache(policy=CachePolicy(default_ttl=5))
        store.set("k", "v")
        assert store.get_entry("k").base_ttl == 5
        clock.advance(5.1)
        assert store.get("k") is None

    @pytest.mark.parametrize("ttl", [0, -1, "10", True])
    def test_invalid_ttl_rejected(self, ttl):
        store = SmartCache()
        with pytest.raises(ValidationError):
            store.set("k", "v", ttl=ttl)
        assert len(store) == 0

    @pytest.mark.parametrize("priority", [-1, 1.5, False])
    def test_invalid_priority_rejected(self, priority):
        store = SmartCache()
        with pytest.raises(ValidationError):
            store.set("k", "v", priority=priority)

    @pytest.mark.parametrize("tags", ["route", b"route", ["route", ""], ["route", 7], {"route": 1}])
    def test_invalid_tags_rejected(self, graph, tags):
        store = SmartCache(dependencies=graph)
        with pytest.raises(ValidationError):
            store.set("k", "v", tags=tags)
        assert len(store) == 0
        assert graph.get_tags("k") == set()

    def test_tag_collections_accepted(self, clock, graph):
        store = SmartCache(dependencies=graph)
        store.set("a", 1, tags=("route", "speed"))
        store.set("b", 2, tags=frozenset({"route"}))
        assert graph.get_tags("a") == {"route", "speed"}
        assert graph.get_keys("route") == {"a", "b"}

    @pytest.mark.parametrize("key", ["", None, 42])
    def test_invalid_key_rejected(self, key):
        store = SmartCache()
        with pytest.raises(ValidationError):
            store.set(key, "v")
        with pytest.raises(ValidationError):
            store.get(key)

    def test_hit_and_miss_events_carry_latency(self, clock, bus, recorded):
        store = SmartCache("test", event_bus=bus)
        store.set("k", "v")
        store.get("k")
        store.get("other")

        hit = next(e for e in recorded if isinstance(e, CacheHit))
        miss = next(e for e in recorded if isinstance(e, CacheMiss))
        assert hit.key == "k" and hit.response_time_ms >= 0
        assert miss.key == "other" and miss.expired is False

    def test_set_event_reports_size_and_tags(self, clock, bus, graph, recorded):
        store = SmartCache("test", dependencies=graph, event_bus=bus)
        store.set("k", "value", tags=["route"], priority=3)

        event = next(e for e in recorded if isinstance(e, CacheSet))
        assert event.size > 0
        assert event.priority == 3
        assert event.tags == frozenset({"route"})

    def test_events_suppressed_when_metrics_disabled(self, clock, bus, recorded):
        store = SmartCache("test", CachePolicy(enable_metrics=False), event_bus=bus)
        store.set("k", "v")
        store.get("k")
        assert recorded == []


class TestAdaptiveExpiry:
    def test_new_key_gets_exactly_base_ttl(self, clock):
        store = SmartCache()
        store.set("k", "v", ttl=100)
        entry = store.get_entry("k")
        assert entry.effective_ttl == 100

    def test_hot_key_ttl_grows(self, clock):
        store = SmartCache()
        store.set("hot", "v", ttl=100)
        for _ in range(20):
            assert store.get("hot") == "v"

        entry = store.get_entry("hot")
        assert entry.effective_ttl >= entry.base_ttl
        # Hot multiplier 1.5 and boost capped at 2.0.
        assert entry.effective_ttl == pytest.approx(300)

    def test_cold_key_ttl_shrinks(self, clock):
        store = SmartCache()
        store.set("cold", "v", ttl=100)
        for index in range(999):
            store.get(f"missing-{index}")
        assert store.get("cold") == "v"

        entry = store.get_entry("cold")
        assert entry.effective_ttl <= entry.base_ttl
        assert entry.effective_ttl == pytest.approx(100 * 0.5 * 1.1)

    def test_ttl_extension_keeps_hot_entry_alive(self, clock):
        store = SmartCache()
        store.set("hot", "v", ttl=10)
        for _ in range(10):
            store.get("hot")
        clock.advance(15)
        assert store.get("hot") == "v"

    def test_remembered_multiplier_applies_on_rewrite(self, clock):
        store = SmartCache()
        store.set("hot", "v", ttl=100)
        for _ in range(5):
            store.get("hot")
        store.set("hot", "v2", ttl=100)
        assert store.get_entry("hot").effective_ttl == pytest.approx(150)


class TestCapacity:
    def test_size_never_exceeds_max(self, clock):
        store = SmartCache(policy=CachePolicy(max_size=5))
        for index in range(50):
            store.set(f"k{index}", index)
            assert len(store) <= 5

    def test_max_plus_one_evicts_exactly_one(self, clock, bus, recorded):
        store = SmartCache("test", CachePolicy(max_size=3), event_bus=bus)
        for key in ("a", "b", "c"):
            store.set(key, key)
            clock.advance(1)
        store.set("d", "d")

        assert len(store) == 3
        assert store.keys() == ["b", "c", "d"]
        evicted = [e for e in recorded if isinstance(e, CacheEvicted)]
        assert [(e.key, e.reason) for e in evicted] == [("a", "size_limit")]

    def test_lowest_score_is_evicted(self, clock):
        store = SmartCache(policy=CachePolicy(max_size=3))
        store.set("important", 1, priority=5)
        store.set("popular", 2)
        store.set("plain", 3)
        store.get("popular")
        store.set("new", 4)

        assert "plain" not in store.keys()
        assert {"important", "popular", "new"} == set(store.keys())

    def test_ties_evict_earliest_inserted(self, clock):
        store = SmartCache(policy=CachePolicy(max_size=2))
        store.set("first", 1)
        store.set("second", 2)
        store.set("third", 3)
        assert store.keys() == ["second", "third"]

    def test_overwrite_does_not_evict(self, clock):
        store = SmartCache(policy=CachePolicy(max_size=2))
        store.set("a", 1)
        store.set("b", 2)
        store.set("a", 10)
        assert set(store.keys()) == {"a", "b"}
        assert store.get("a") == 10

    def test_overwrite_refreshes_insertion_order(self, clock):
        store = SmartCache(policy=CachePolicy(max_size=2))
        store.set("a", 1)
        store.set("b", 2)
        store.set("a", 3)
        store.set("c", 4)
        assert store.keys() == ["a", "c"]


class TestInvalidation:
    def test_invalidate_is_idempotent(self, clock):
        store = SmartCache()
        store.set("k", "v")
        assert store.invalidate("k") is True
        assert store.invalidate("k") is False

    def test_invalidate_never_set_key(self, clock):
        assert SmartCache().invalidate("ghost") is False

    def test_invalidate_removes_dependencies_and_tracking(self, clock, graph):
        store = SmartCache(dependencies=graph)
        store.set("k", "v", ttl=100, tags=["route"])
        for _ in range(5):
            store.get("k")
        store.invalidate("k")

        assert graph.get_tags("k") == set()
        assert graph.get_keys("route") == set()
        store.set("k", "v", ttl=100)
        assert store.get_entry("k").effective_ttl == 100

    def test_invalidate_event_only_when_existing(self, clock, bus, recorded):
        store = SmartCache("test", event_bus=bus)
        store.set("k", "v")
        store.invalidate("k", reason="manual")
        store.invalidate("k")
        invalidated = [e for e in recorded if isinstance(e, CacheInvalidated)]
        assert [(e.key, e.reason) for e in invalidated] == [("k", "manual")]

    def test_invalidate_pattern(self, clock):
        store = SmartCache()
        for key in ("route:1", "route:2", "weather:1"):
            store.set(key, key)
        assert store.invalidate_pattern(r"^route:") == 2
        assert store.keys() == ["weather:1"]

    def test_invalid_pattern_rejected(self, clock):
        with pytest.raises(ValidationError):
            SmartCache().invalidate_pattern("(")


class TestCleanupAndLifecycle:
    def test_cleanup_removes_only_stale(self, clock, bus, recorded):
        store = SmartCache("test", event_bus=bus)
        store.set("short", 1, ttl=5)
        store.set("long", 2, ttl=50)
        clock.advance(10)

        assert store.cleanup() == 1
        assert store.keys() == ["long"]
        cleanup = [e for e in recorded if isinstance(e, CacheCleanup)]
        assert cleanup[0].removed_count == 1
        assert cleanup[0].keys == ("short",)

    def test_cleanup_is_idempotent(self, clock):
        store = SmartCache()
        store.set("k", 1, ttl=1)
        clock.advance(2)
        assert store.cleanup() == 1
        assert store.cleanup() == 0

    def test_clear_resets_counters(self, clock, bus, recorded):
        store = SmartCache("test", event_bus=bus)
        store.set("a", 1)
        store.set("b", 2)
        store.get("a")
        assert store.clear() == 2
        stats = store.get_stats()
        assert stats["cache_size"] == 0
        assert stats["total_requests"] == 0
        assert stats["memory_usage"] == 0
        cleared = [e for e in recorded if isinstance(e, CacheCleared)]
        assert cleared[0].size == 2

    def test_destroyed_store_refuses_operations(self, clock, graph):
        store = SmartCache(dependencies=graph)
        store.set("k", "v", tags=["route"])
        store.destroy()
        store.destroy()

        assert store.is_destroyed
        assert graph.get_keys("route") == set()
        for call in (
            lambda: store.get("k"),
            lambda: store.set("k", "v"),
            lambda: store.invalidate("k"),
            lambda: store.cleanup(),
            lambda: store.clear(),
            lambda: store.contains("k"),
            lambda: store.get_entry("k"),
            lambda: store.keys(),
            lambda: len(store),
            lambda: store.get_stats(),
            lambda: store.get_detailed_info(),
        ):
            with pytest.raises(StoreDestroyedError):
                call()

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_cleanup_timer_sweeps_and_stops_on_destroy(self, clock):
        store = SmartCache(policy=CachePolicy(cleanup_interval=0.01))
        store.set("k", "v", ttl=1)
        clock.advance(5)
        task = store.start_cleanup_timer()

        for _ in range(50):
            if len(store) == 0:
                break
            await asyncio.sleep(0.01)
        assert len(store) == 0

        store.destroy()
        await asyncio.gather(task, return_exceptions=True)
        assert task.done()

    def test_cleanup_timer_requires_running_loop(self):
        store = SmartCache()
        with pytest.raises(RuntimeError):
            store.start_cleanup_timer()


class TestStats:
    def test_hit_rate_defaults_to_zero(self):
        stats = SmartCache().get_stats()
        assert stats["hit_rate"] == 0.0
        assert stats["miss_rate"] == 0.0

    def test_rates_sum_to_one(self, clock):
        store = SmartCache()
        store.set("k", "v")
        store.get("k")
        store.get("k")
        store.get("missing")
        stats = store.get_stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] + stats["miss_rate"] == pytest.approx(1.0)

    def test_detailed_info_sorted_by_access_count(self, clock):
        store = SmartCache()
        store.set("a", 1, tags=[])
        store.set("b", 2, tags=[])
        store.get("b")
        info = store.get_detailed_info()
        assert [entry["key"] for entry in info["entries"]] == ["b", "a"]
        assert info["entries"][0]["is_valid"] is True
        assert info["config"]["max_size"] == 1000
