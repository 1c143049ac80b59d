# tests/test_cache_dependencies.py
"""Tests for the dependency graph and cascading invalidation."""

from unittest.mock import MagicMock

import pytest

from core.cache_dependencies import DependencyGraph, calculate_invalidation_priority
from core.event_bus import CacheInvalidated
from core.exceptions import DependencyInconsistencyError
from core.smart_cache import SmartCache


class TestRegistration:
    def setup_method(self) -> None:
        self.graph = DependencyGraph()

    def test_set_dependencies_is_bidirectional(self):
        self.graph.set_dependencies("a", ["route", "speed"])
        assert self.graph.get_tags("a") == {"route", "speed"}
        assert self.graph.get_keys("route") == {"a"}
        assert self.graph.get_keys("speed") == {"a"}

    def test_set_dependencies_replaces_previous_tags(self):
        self.graph.set_dependencies("a", ["route"])
        self.graph.set_dependencies("a", ["weather"])
        assert self.graph.get_tags("a") == {"weather"}
        assert self.graph.get_keys("route") == set()
        assert self.graph.get_dependency_info()["tags"] == {"weather": 1}

    def test_set_dependencies_idempotent(self):
        self.graph.set_dependencies("a", ["route"])
        self.graph.set_dependencies("a", ["route"])
        assert self.graph.get_keys("route") == {"a"}
        assert self.graph.verify_consistency(strict=True) == []

    def test_remove_dependencies_drops_empty_tags(self):
        self.graph.set_dependencies("a", ["route"])
        self.graph.remove_dependencies("a")
        info = self.graph.get_dependency_info()
        assert info["total_dependencies"] == 0
        assert info["total_tags"] == 0

    @pytest.mark.parametrize(
        ("key", "expected"),
        [
            ("route:R1", ["route"]),
            ("waypoint:R1:0", ["waypoints"]),
            ("distance_total", ["route", "waypoints"]),
            ("flight_time", ["route", "speed"]),
            ("leg_duration", ["route", "speed"]),
            ("fuel_burn", ["route", "speed", "fuel_flow"]),
            ("weather:68:33", ["location", "weather"]),
            ("tile:1:2:3", ["location", "zoom"]),
            ("map:overview", ["location", "zoom"]),
            ("calculation:eta", ["route", "speed", "fuel_flow"]),
            ("route_fuel", ["route", "speed", "fuel_flow"]),
            ("misc", []),
        ],
    )
    def test_auto_detect_dependencies(self, key, expected):
        assert DependencyGraph.auto_detect_dependencies(key) == expected


class TestPriority:
    def test_route_outranks_speed_outranks_weather(self):
        route = calculate_invalidation_priority("route", 1)
        speed = calculate_invalidation_priority("speed", 1)
        weather = calculate_invalidation_priority("weather", 1)
        other = calculate_invalidation_priority("zoom", 1)
        assert route > speed > weather > other

    def test_key_count_bonus_is_capped(self):
        assert calculate_invalidation_priority("zoom", 5) == pytest.approx(1.5)
        assert calculate_invalidation_priority("zoom", 500) == pytest.approx(3.0)


class TestCascade:
    def test_invalidate_by_tag_cascades(self, clock, graph, bus, recorded):
        store = SmartCache("test", dependencies=graph, event_bus=bus)
        store.set("a", 1, tags=["route"])
        store.set("b", 2, tags=["route"])
        store.set("w", 3, tags=["weather"])

        assert graph.invalidate_by_tag("route", "route_change") == 2

        assert store.get("a") is None
        assert store.get("b") is None
        assert store.get("w") == 3
        events = [e for e in recorded if isinstance(e, CacheInvalidated)]
        assert sorted(e.key for e in events) == ["a", "b"]
        assert {e.tag for e in events} == {"route"}
        assert {e.reason for e in events} == {"route_change"}

    def test_unknown_tag_is_noop(self, graph):
        assert graph.invalidate_by_tag("nothing") == 0

    def test_cascade_spans_attached_stores(self, clock, graph):
        first = SmartCache("first", dependencies=graph)
        second = SmartCache("second", dependencies=graph)
        first.set("a", 1, tags=["speed"])
        second.set("b", 2, tags=["speed"])

        graph.invalidate_by_tag("speed")
        assert len(first) == 0
        assert len(second) == 0

    def test_nested_invalidation_completes_before_return(self, clock, graph, bus):
        store = SmartCache(dependencies=graph, event_bus=bus)
        store.set("a", 1, tags=["route"])
        store.set("b", 2, tags=["derived"])

        def cascade(event):
            if event.key == "a":
                graph.invalidate_by_tag("derived", "nested")

        bus.subscribe(CacheInvalidated.kind, cascade)
        graph.invalidate_by_tag("route")

        assert store.get("a") is None
        assert store.get("b") is None
        info = graph.get_dependency_info()
        assert info["queue_length"] == 0
        assert info["batches_processed"] == 2

    def test_rule_action_runs_after_domain_change(self, clock, graph):
        store = SmartCache(dependencies=graph)
        store.set("a", 1, tags=["route"])
        store.set("b", 2, tags=["derived"])

        graph.add_invalidation_rule(
            "route_invalidates_derived",
            lambda context: context["type"] == "route_change",
            lambda context: graph.invalidate_by_tag("derived", "rule"),
        )
        graph.handle_route_change("R1")

        assert len(store) == 0

    def test_stale_registration_is_dropped(self, graph):
        graph.set_dependencies("orphan", ["route"])
        graph.invalidate_by_tag("route")
        assert graph.get_keys("route") == set()


class TestRules:
    def setup_method(self) -> None:
        self.graph = DependencyGraph()

    def test_rule_triggers_on_matching_context(self):
        action = MagicMock()
        self.graph.add_invalidation_rule("speed", lambda c: c["type"] == "speed_change", action)
        assert self.graph.check_invalidation_rules({"type": "speed_change"}) == ["speed"]
        assert self.graph.check_invalidation_rules({"type": "other"}) == []
        action.assert_called_once()

    def test_failing_rule_is_logged_not_raised(self):
        def boom(context):
            raise RuntimeError("boom")

        self.graph.add_invalidation_rule("bad", lambda c: True, boom)
        assert self.graph.check_invalidation_rules({"type": "x"}) == []

    def test_remove_rule(self):
        self.graph.add_invalidation_rule("r", lambda c: True, lambda c: None)
        assert self.graph.remove_invalidation_rule("r") is True
        assert self.graph.remove_invalidation_rule("r") is False


class TestDomainHandlers:
    def test_speed_change_invalidates_speed_tags(self, clock, graph):
        store = SmartCache(dependencies=graph)
        store.set("eta", 1, tags=["speed"])
        store.set("fuel_total", 2, tags=["fuel_calculations"])
        store.set("route", 3, tags=["route"])
        assert graph.handle_speed_change(120.0) == 2
        assert store.keys() == ["route"]

    def test_fuel_flow_change(self, clock, graph):
        store = SmartCache(dependencies=graph)
        store.set("burn", 1, tags=["total_fuel"])
        graph.handle_fuel_flow_change(30.0)
        assert len(store) == 0

    def test_route_cleared_also_drops_map(self, clock, graph):
        store = SmartCache(dependencies=graph)
        store.set("tile", 1, tags=["map"])
        store.set("calc", 2, tags=["calculations"])
        graph.handle_route_cleared()
        assert len(store) == 0


class TestConsistency:
    def test_consistent_graph_passes_strict_check(self, graph):
        graph.set_dependencies("a", ["route", "speed"])
        graph.set_dependencies("b", ["route"])
        assert graph.verify_consistency(strict=True) == []

    def test_strict_mode_raises_on_mismatch(self, graph):
        graph.set_dependencies("a", ["route"])
        graph._reverse["route"].discard("a")
        with pytest.raises(DependencyInconsistencyError):
            graph.verify_consistency(strict=True)

    def test_self_heal_rebuilds_reverse_index(self, graph):
        graph.set_dependencies("a", ["route"])
        graph.set_dependencies("b", ["route"])
        graph._reverse["route"] = {"a", "ghost"}

        assert graph.verify_consistency() == ["route"]
        assert graph.get_keys("route") == {"a", "b"}
        assert graph.verify_consistency(strict=True) == []

    def test_clear(self, graph):
        graph.set_dependencies("a", ["route"])
        graph.clear()
        assert graph.get_dependency_info()["total_dependencies"] == 0
