# tests/test_cache_metrics.py
"""Tests for metrics collection, alerting and reporting."""

import asyncio

import pytest

from core.cache_entry import CachePolicy
from core.cache_metrics import AlertThresholds, CacheMetrics, MetricsPolicy, extract_data_type
from core.event_bus import (
    CacheAlert,
    CacheCleanup,
    CacheError,
    CacheEventKind,
    CacheEvicted,
    CacheHit,
    CacheInvalidated,
    CacheMiss,
    CacheSet,
    MetricsReport,
)
from core.exceptions import PrefetchError
from core.smart_cache import SmartCache


@pytest.fixture
def metrics(bus):
    return CacheMetrics(event_bus=bus)


class TestCounters:
    def test_rates_default_to_zero(self, metrics):
        summary = metrics.get_summary_metrics()
        assert summary["hit_rate"] == 0.0
        assert summary["miss_rate"] == 0.0
        assert summary["total_requests"] == 0

    @pytest.mark.parametrize(("hits", "misses"), [(1, 0), (0, 1), (3, 7), (50, 1)])
    def test_rates_sum_to_one(self, metrics, bus, hits, misses):
        for _ in range(hits):
            bus.publish(CacheHit(key="k", response_time_ms=1.0))
        for _ in range(misses):
            bus.publish(CacheMiss(key="k", response_time_ms=1.0))
        summary = metrics.get_summary_metrics()
        assert summary["hit_rate"] + summary["miss_rate"] == pytest.approx(1.0)
        assert summary["hit_rate"] == pytest.approx(hits / (hits + misses))

    def test_latency_statistics(self, metrics, bus):
        for elapsed in (2.0, 4.0, 9.0):
            bus.publish(CacheHit(key="k", response_time_ms=elapsed))
        performance = metrics.get_performance_metrics()
        assert performance["average_response_time"] == pytest.approx(5.0)
        assert performance["min_response_time"] == 2.0
        assert performance["max_response_time"] == 9.0
        assert performance["total_response_time"] == pytest.approx(15.0)

    def test_memory_follows_store(self, clock, metrics, bus):
        store = SmartCache("test", CachePolicy(max_size=2), event_bus=bus)
        store.set("a", "x" * 10)
        store.set("b", "y" * 10)
        assert metrics.metrics.memory_usage == store.get_stats()["memory_usage"]

        store.set("a", "x" * 100)
        assert metrics.metrics.memory_usage == store.get_stats()["memory_usage"]

        store.set("c", "z")
        assert metrics.metrics.memory_usage == store.get_stats()["memory_usage"]
        assert metrics.metrics.evictions == 1

        store.invalidate("c")
        assert metrics.metrics.memory_usage == store.get_stats()["memory_usage"]
        assert metrics.metrics.cache_size == len(store)

    def test_expired_miss_and_cleanup_release_memory(self, clock, metrics, bus):
        store = SmartCache("test", event_bus=bus)
        store.set("a", "1", ttl=1)
        store.set("b", "2", ttl=1)
        clock.advance(2)
        store.get("a")
        store.cleanup()
        assert metrics.metrics.memory_usage == 0
        assert metrics.metrics.cleanups == 1

    def test_each_operation_counted_once(self, metrics, bus):
        bus.publish(CacheSet(key="route:1", size=10, ttl=60, priority=1))
        bus.publish(CacheHit(key="route:1", response_time_ms=0.5))
        bus.publish(CacheMiss(key="weather:1", response_time_ms=0.5))
        bus.publish(CacheInvalidated(key="route:1"))
        bus.publish(CacheEvicted(key="weather:1"))
        bus.publish(CacheCleanup(removed_count=0))

        full = metrics.get_full_stats()["metrics"]
        assert (full["sets"], full["hits"], full["misses"]) == (1, 1, 1)
        assert (full["invalidations"], full["evictions"], full["cleanups"]) == (1, 1, 1)
        assert full["gets"] == 2

    def test_breakdowns(self, metrics, bus):
        bus.publish(CacheHit(key="route:R1", response_time_ms=1))
        bus.publish(CacheHit(key="route:R1", response_time_ms=1))
        bus.publish(CacheMiss(key="weather:1:2", response_time_ms=1))

        data_types = metrics.get_data_type_metrics()
        assert data_types["route"]["hits"] == 2
        assert data_types["route"]["unique_keys"] == 1
        assert data_types["weather"]["misses"] == 1

        top = metrics.get_top_keys_metrics(limit=1)
        assert top[0]["key"] == "route:R1"

    def test_tracked_keys_are_bounded(self, metrics, bus, monkeypatch):
        monkeypatch.setattr("core.cache_metrics.MAX_TRACKED_KEYS", 50)
        for index in range(300):
            bus.publish(CacheMiss(key=f"predictive:map_zoomed:lat:{index}", response_time_ms=0.1))

        assert len(metrics.key_metrics) == 50
        assert "predictive:map_zoomed:lat:299" in metrics.key_metrics
        data_types = metrics.get_data_type_metrics()
        assert data_types["map"]["unique_keys"] == 50
        assert data_types["map"]["misses"] == 300

    def test_breakdowns_disabled(self, bus):
        metrics = CacheMetrics(MetricsPolicy(enable_detailed_metrics=False), event_bus=bus)
        bus.publish(CacheHit(key="route:R1", response_time_ms=1))
        assert metrics.get_data_type_metrics() == {}
        assert metrics.metrics.hits == 1

    @pytest.mark.parametrize(
        ("key", "data_type"),
        [
            ("route:R1", "route"),
            ("waypoint:R1:0", "waypoint"),
            ("weather:current:1:2", "weather"),
            ("tile:1:2:3", "map"),
            ("map:overview", "map"),
            ("calculation:fuel:", "calculation"),
            ("tool:get_metar_data:", "aviation_weather"),
            ("predictive:speed_changed:", "predictive"),
            ("misc", "other"),
        ],
    )
    def test_extract_data_type(self, key, data_type):
        assert extract_data_type(key) == data_type

    def test_history_is_bounded(self, bus):
        metrics = CacheMetrics(MetricsPolicy(history_size=3), event_bus=bus)
        for index in range(10):
            bus.publish(CacheMiss(key=f"k{index}", response_time_ms=0.1))
        history = metrics.get_history()
        assert [entry["key"] for entry in history] == ["k7", "k8", "k9"]


class TestAlerts:
    def test_low_hit_rate_needs_enough_traffic(self, bus):
        metrics = CacheMetrics(MetricsPolicy(thresholds=AlertThresholds(min_requests=100)), event_bus=bus)
        for _ in range(100):
            bus.publish(CacheMiss(key="k", response_time_ms=0.1))
        assert not [a for a in metrics.alerts if a["type"] == "low_hit_rate"]

        bus.publish(CacheMiss(key="k", response_time_ms=0.1))
        low = [a for a in metrics.alerts if a["type"] == "low_hit_rate"]
        assert len(low) == 1
        assert low[0]["severity"] == "medium"

    def test_alert_fires_once_within_cooldown(self, bus, monkeypatch):
        now = [0.0]
        monkeypatch.setattr("core.cache_metrics._now", lambda: now[0])
        metrics = CacheMetrics(
            MetricsPolicy(thresholds=AlertThresholds(response_time_ms=1.0), alert_cooldown=60.0),
            event_bus=bus,
        )
        for _ in range(5):
            bus.publish(CacheHit(key="k", response_time_ms=50.0))
        assert len([a for a in metrics.alerts if a["type"] == "high_response_time"]) == 1

        now[0] = 61.0
        bus.publish(CacheHit(key="k", response_time_ms=50.0))
        assert len([a for a in metrics.alerts if a["type"] == "high_response_time"]) == 2

    def test_alert_rearms_after_recovery(self, bus):
        metrics = CacheMetrics(
            MetricsPolicy(thresholds=AlertThresholds(memory_bytes=100), alert_cooldown=3600.0),
            event_bus=bus,
        )
        bus.publish(CacheSet(key="big", size=500, ttl=60, priority=1))
        bus.publish(CacheHit(key="big", response_time_ms=0.1))
        bus.publish(CacheInvalidated(key="big"))
        bus.publish(CacheMiss(key="big", response_time_ms=0.1))
        bus.publish(CacheSet(key="big", size=500, ttl=60, priority=1))
        bus.publish(CacheHit(key="big", response_time_ms=0.1))

        memory = [a for a in metrics.alerts if a["type"] == "high_memory_usage"]
        assert len(memory) == 2
        assert memory[0]["severity"] == "high"

    def test_zero_cooldown_refires_every_check(self, bus):
        metrics = CacheMetrics(
            MetricsPolicy(thresholds=AlertThresholds(response_time_ms=1.0), alert_cooldown=0.0),
            event_bus=bus,
        )
        for _ in range(3):
            bus.publish(CacheHit(key="k", response_time_ms=50.0))
        assert len([a for a in metrics.alerts if a["type"] == "high_response_time"]) == 3

    def test_error_observation_raises_error_alert(self, metrics, bus):
        published = []
        bus.subscribe(CacheEventKind.ALERT, published.append)
        bus.publish(CacheError(key="predictive:x:", operation="prefetch", error=PrefetchError("boom")))

        assert metrics.metrics.errors == 1
        assert metrics.error_types == {"PrefetchError": 1}
        assert published and isinstance(published[0], CacheAlert)
        alert = published[0].alert
        assert alert["type"] == "error"
        assert alert["severity"] == "high"
        assert len(alert["id"]) == 32

    def test_high_error_rate(self, bus):
        metrics = CacheMetrics(event_bus=bus)
        bus.publish(CacheError(key=None, operation="cleanup", error=RuntimeError("x")))
        bus.publish(CacheMiss(key="k", response_time_ms=0.1))
        assert [a for a in metrics.alerts if a["type"] == "high_error_rate"]

    def test_alert_list_is_capped(self, bus):
        metrics = CacheMetrics(MetricsPolicy(max_alerts=5), event_bus=bus)
        for index in range(8):
            bus.publish(CacheError(key=f"k{index}", operation="prefetch", error=RuntimeError("x")))
        assert len(metrics.alerts) == 5
        assert metrics.alerts[0]["key"] == "k3"

    def test_acknowledge(self, metrics, bus):
        bus.publish(CacheError(key="k", operation="prefetch", error=RuntimeError("x")))
        alert_id = metrics.alerts[0]["id"]
        assert metrics.acknowledge_alert(alert_id) is True
        assert metrics.get_active_alerts() == []
        assert metrics.acknowledge_alert("missing") is False

    def test_alert_creation_never_raises(self, metrics, bus):
        def broken(event):
            raise RuntimeError("subscriber failure")

        bus.subscribe(CacheEventKind.ALERT, broken)
        assert metrics.create_alert("custom", "message", severity="low") is not None


class TestReports:
    def test_report_contents(self, metrics, bus):
        published = []
        bus.subscribe(CacheEventKind.METRICS_REPORT, published.append)
        for _ in range(3):
            bus.publish(CacheMiss(key="route:R1", response_time_ms=1.0))

        report = metrics.generate_report()
        assert set(report) == {"timestamp", "summary", "performance", "data_types", "top_keys", "alerts", "recommendations"}
        assert report["summary"]["total_requests"] == 3
        assert any(r["type"] == "hit_rate" for r in report["recommendations"])
        assert isinstance(published[0], MetricsReport)

    def test_efficiency_of_idle_cache(self, metrics):
        assert metrics.calculate_efficiency() == pytest.approx(0.5)

    def test_reset_and_destroy(self, metrics, bus):
        bus.publish(CacheHit(key="k", response_time_ms=1.0))
        metrics.reset()
        assert metrics.metrics.hits == 0
        metrics.destroy()
        bus.publish(CacheHit(key="k", response_time_ms=1.0))
        assert metrics.metrics.hits == 0
        assert bus.listener_count(CacheEventKind.HIT) == 0

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_periodic_report(self, bus):
        metrics = CacheMetrics(MetricsPolicy(report_interval=0.01), event_bus=bus)
        reports = []
        bus.subscribe(CacheEventKind.METRICS_REPORT, reports.append)
        metrics.start_reporting()
        for _ in range(50):
            if reports:
                break
            await asyncio.sleep(0.01)
        metrics.destroy()
        assert reports
