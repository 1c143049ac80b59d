# core/cache_metrics.py
"""
Metrics and alerting for the cache subsystem.

`CacheMetrics` subscribes to the cache events on the bus and keeps running
counters, latency statistics, per-key and per-data-type breakdowns and a
bounded event history. After every hit or miss it re-evaluates four alert
conditions. Alerts are edge-triggered: an alert fires when its condition
becomes true and again only after `cooldown` seconds while it stays true.
A zero cooldown re-fires on every check.

A periodic asyncio task generates a report (summary, per-data-type metrics,
top keys, active alerts, recommendations) and publishes it as a
`MetricsReport` event.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from core.event_bus import (
    CacheAlert,
    CacheCleanup,
    CacheCleared,
    CacheError,
    CacheEventKind,
    CacheEvicted,
    CacheHit,
    CacheInvalidated,
    CacheMiss,
    CacheSet,
    EventBus,
    MetricsReport,
)

logger = structlog.get_logger(__name__)

MAX_TRACKED_KEYS: int = 10_000
TOP_KEYS_LIMIT: int = 10
RECOMMENDATION_MEMORY_BYTES: int = 50 * 1024 * 1024
RECOMMENDATION_ERROR_SHARE: float = 0.01


def _now() -> float:
    return time.monotonic()


@dataclass
class AlertThresholds:
    hit_rate: float = 0.7
    response_time_ms: float = 100.0
    memory_bytes: int = 100 * 1024 * 1024
    error_rate: float = 0.05
    min_requests: int = 100


@dataclass
class MetricsPolicy:
    """Tuning for metrics collection. Durations are seconds."""

    thresholds: AlertThresholds = field(default_factory=AlertThresholds)
    report_interval: float = 60.0
    history_size: int = 1000
    retention_hours: float = 24.0
    enable_detailed_metrics: bool = True
    max_alerts: int = 100
    alert_cooldown: float = 60.0


@dataclass
class OperationCounters:
    """Counter shape shared by the global, per-key and per-data-type views."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    evictions: int = 0
    errors: int = 0
    total_response_time: float = 0.0
    average_response_time: float = 0.0
    last_accessed: float | None = None

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.total_requests
        return self.hits / total if total > 0 else 0.0

    def record_response(self, elapsed_ms: float) -> None:
        self.total_response_time += elapsed_ms
        total = self.total_requests
        if total > 0:
            self.average_response_time += (elapsed_ms - self.average_response_time) / total

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["total_requests"] = self.total_requests
        data["hit_rate"] = self.hit_rate
        return data


@dataclass
class GlobalMetrics(OperationCounters):
    gets: int = 0
    cleanups: int = 0
    min_response_time: float = float("inf")
    max_response_time: float = 0.0
    memory_usage: int = 0
    cache_size: int = 0

    @property
    def miss_rate(self) -> float:
        return 1.0 - self.hit_rate if self.total_requests > 0 else 0.0

    @property
    def error_rate(self) -> float:
        total = self.total_requests
        return self.errors / total if total > 0 else 0.0

    def record_response(self, elapsed_ms: float) -> None:
        super().record_response(elapsed_ms)
        self.min_response_time = min(self.min_response_time, elapsed_ms)
        self.max_response_time = max(self.max_response_time, elapsed_ms)


def extract_data_type(key: str) -> str:
    """Classify a cache key by the domain data it holds."""
    if "route" in key:
        return "route"
    if "waypoint" in key:
        return "waypoint"
    if "weather" in key:
        return "weather"
    if "map" in key or "tile" in key:
        return "map"
    if "calculation" in key:
        return "calculation"
    if "metar" in key or "taf" in key:
        return "aviation_weather"
    if "predictive" in key:
        return "predictive"
    return "other"


class CacheMetrics:
    """Collects cache observations from the event bus and raises alerts."""

    def __init__(self, policy: MetricsPolicy | None = None, *, event_bus: EventBus | None = None) -> None:
        self.policy = policy or MetricsPolicy()
        self._event_bus = event_bus
        self.metrics = GlobalMetrics()
        self.error_types: dict[str, int] = {}
        self.key_metrics: OrderedDict[str, OperationCounters] = OrderedDict()
        self.data_type_metrics: dict[str, OperationCounters] = {}
        self._data_type_keys: dict[str, set[str]] = {}
        self._key_sizes: dict[str, int] = {}
        self.history: deque[dict[str, Any]] = deque(maxlen=self.policy.history_size)
        self.alerts: deque[dict[str, Any]] = deque(maxlen=self.policy.max_alerts)
        self._alert_state: dict[str, float] = {}
        self._report_task: asyncio.Task | None = None
        self._subscriptions: list[tuple[CacheEventKind, Any]] = []
        self._destroyed = False

        if event_bus is not None:
            self._subscribe(event_bus)

    def _subscribe(self, bus: EventBus) -> None:
        handlers = {
            CacheEventKind.HIT: self.record_hit,
            CacheEventKind.MISS: self.record_miss,
            CacheEventKind.SET: self.record_set,
            CacheEventKind.INVALIDATED: self.record_invalidation,
            CacheEventKind.EVICTED: self.record_eviction,
            CacheEventKind.CLEANUP: self.record_cleanup,
            CacheEventKind.CLEARED: self.record_cleared,
            CacheEventKind.ERROR: self.record_error,
        }
        for kind, handler in handlers.items():
            bus.subscribe(kind, handler)
            self._subscriptions.append((kind, handler))

    # -------------------------------------------------------------- recording

    def record_hit(self, event: CacheHit) -> None:
        self.metrics.hits += 1
        self.metrics.gets += 1
        self.metrics.record_response(event.response_time_ms)
        self._update_breakdowns(event.key, "hit", event.response_time_ms)
        self._add_to_history("hit", key=event.key, response_time=event.response_time_ms)
        self.check_alerts()

    def record_miss(self, event: CacheMiss) -> None:
        self.metrics.misses += 1
        self.metrics.gets += 1
        self.metrics.record_response(event.response_time_ms)
        if event.expired:
            self._forget_size(event.key)
        self._update_breakdowns(event.key, "miss", event.response_time_ms)
        self._add_to_history("miss", key=event.key, response_time=event.response_time_ms, expired=event.expired)
        self.check_alerts()

    def record_set(self, event: CacheSet) -> None:
        self.metrics.sets += 1
        previous = self._key_sizes.get(event.key, 0)
        self._key_sizes[event.key] = event.size
        self.metrics.memory_usage += event.size - previous
        self.metrics.cache_size = len(self._key_sizes)
        self._update_breakdowns(event.key, "set")
        self._add_to_history("set", key=event.key, size=event.size, ttl=event.ttl)

    def record_invalidation(self, event: CacheInvalidated) -> None:
        self.metrics.invalidations += 1
        self._forget_size(event.key)
        self._update_breakdowns(event.key, "invalidation")
        self._add_to_history("invalidation", key=event.key, reason=event.reason, tag=event.tag)

    def record_eviction(self, event: CacheEvicted) -> None:
        self.metrics.evictions += 1
        self._forget_size(event.key)
        self._update_breakdowns(event.key, "eviction")
        self._add_to_history("eviction", key=event.key, reason=event.reason)

    def record_cleanup(self, event: CacheCleanup) -> None:
        self.metrics.cleanups += 1
        for key in event.keys:
            self._forget_size(key)
        self._add_to_history("cleanup", removed_count=event.removed_count)

    def record_cleared(self, event: CacheCleared) -> None:
        for key in event.keys:
            self._forget_size(key)
        self._add_to_history("clear", size=event.size)

    def record_error(self, event: CacheError) -> None:
        self.metrics.errors += 1
        error_type = type(event.error).__name__
        self.error_types[error_type] = self.error_types.get(error_type, 0) + 1
        if event.key:
            self._update_breakdowns(event.key, "error")
        self._add_to_history(
            "error",
            key=event.key,
            operation=event.operation,
            error_type=error_type,
            error=str(event.error),
        )
        self.create_alert(
            "error",
            f"Cache error during {event.operation}: {event.error}",
            severity="high",
            key=event.key,
            operation=event.operation,
        )

    def _forget_size(self, key: str) -> None:
        size = self._key_sizes.pop(key, None)
        if size is not None:
            self.metrics.memory_usage = max(0, self.metrics.memory_usage - size)
            self.metrics.cache_size = len(self._key_sizes)

    def _update_breakdowns(self, key: str, operation: str, response_time: float | None = None) -> None:
        if not self.policy.enable_detailed_metrics:
            return

        counters = self.key_metrics.get(key)
        if counters is None:
            counters = OperationCounters()
            self.key_metrics[key] = counters
            if len(self.key_metrics) > MAX_TRACKED_KEYS:
                dropped, _ = self.key_metrics.popitem(last=False)
                self._data_type_keys.get(extract_data_type(dropped), set()).discard(dropped)
        else:
            self.key_metrics.move_to_end(key)

        data_type = extract_data_type(key)
        type_counters = self.data_type_metrics.setdefault(data_type, OperationCounters())
        self._data_type_keys.setdefault(data_type, set()).add(key)

        stamp = time.time()
        for target in (counters, type_counters):
            target.last_accessed = stamp
            if operation == "hit":
                target.hits += 1
            elif operation == "miss":
                target.misses += 1
            elif operation == "set":
                target.sets += 1
            elif operation == "invalidation":
                target.invalidations += 1
            elif operation == "eviction":
                target.evictions += 1
            elif operation == "error":
                target.errors += 1
            if response_time is not None:
                target.record_response(response_time)

    def _add_to_history(self, event_type: str, **data: Any) -> None:
        self.history.append({"type": event_type, "timestamp": time.time(), **data})

    # ----------------------------------------------------------------- alerts

    def check_alerts(self) -> list[dict[str, Any]]:
        """Evaluate the alert conditions. Returns the alerts fired by this check."""
        thresholds = self.policy.thresholds
        metrics = self.metrics
        conditions = {
            "low_hit_rate": (
                metrics.total_requests > thresholds.min_requests and metrics.hit_rate < thresholds.hit_rate,
                f"Cache hit rate is low: {metrics.hit_rate * 100:.1f}%",
                "medium",
                metrics.hit_rate,
                thresholds.hit_rate,
            ),
            "high_response_time": (
                metrics.average_response_time > thresholds.response_time_ms,
                f"Cache response time is high: {metrics.average_response_time:.2f}ms",
                "medium",
                metrics.average_response_time,
                thresholds.response_time_ms,
            ),
            "high_memory_usage": (
                metrics.memory_usage > thresholds.memory_bytes,
                f"Cache memory usage is high: {metrics.memory_usage / 1024 / 1024:.2f}MB",
                "high",
                metrics.memory_usage,
                thresholds.memory_bytes,
            ),
            "high_error_rate": (
                metrics.error_rate > thresholds.error_rate,
                f"Cache error rate is high: {metrics.error_rate * 100:.1f}%",
                "high",
                metrics.error_rate,
                thresholds.error_rate,
            ),
        }

        fired: list[dict[str, Any]] = []
        now = _now()
        for alert_type, (active, message, severity, value, threshold) in conditions.items():
            if not active:
                self._alert_state.pop(alert_type, None)
                continue
            last_fired = self._alert_state.get(alert_type)
            if last_fired is not None and now - last_fired < self.policy.alert_cooldown:
                continue
            self._alert_state[alert_type] = now
            alert = self.create_alert(alert_type, message, severity=severity, value=value, threshold=threshold)
            if alert is not None:
                fired.append(alert)
        return fired

    def create_alert(self, alert_type: str, message: str, *, severity: str, **data: Any) -> dict[str, Any] | None:
        """Append an alert and publish it. Never raises."""
        try:
            alert = {
                "id": uuid.uuid4().hex,
                "type": alert_type,
                "message": message,
                "severity": severity,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "acknowledged": False,
                **data,
            }
            self.alerts.append(alert)
            logger.warning("Cache alert", alert_type=alert_type, severity=severity, message=message)
            if self._event_bus is not None:
                self._event_bus.publish(CacheAlert(alert=alert))
            return alert
        except Exception:
            logger.error("Failed to create cache alert", alert_type=alert_type, exc_info=True)
            return None

    def acknowledge_alert(self, alert_id: str) -> bool:
        for alert in self.alerts:
            if alert["id"] == alert_id:
                alert["acknowledged"] = True
                return True
        return False

    def get_active_alerts(self) -> list[dict[str, Any]]:
        return [alert for alert in self.alerts if not alert["acknowledged"]]

    # --------------------------------------------------------------- reports

    def get_summary_metrics(self) -> dict[str, Any]:
        metrics = self.metrics
        return {
            "hit_rate": metrics.hit_rate,
            "miss_rate": metrics.miss_rate,
            "total_requests": metrics.total_requests,
            "average_response_time": metrics.average_response_time,
            "memory_usage": metrics.memory_usage,
            "cache_size": metrics.cache_size,
            "error_rate": metrics.error_rate,
        }

    def get_performance_metrics(self) -> dict[str, Any]:
        metrics = self.metrics
        return {
            "average_response_time": metrics.average_response_time,
            "min_response_time": metrics.min_response_time if metrics.total_requests else 0.0,
            "max_response_time": metrics.max_response_time,
            "total_response_time": metrics.total_response_time,
            "efficiency": self.calculate_efficiency(),
        }

    def get_data_type_metrics(self) -> dict[str, dict[str, Any]]:
        result = {}
        for data_type, counters in self.data_type_metrics.items():
            data = counters.as_dict()
            data["unique_keys"] = len(self._data_type_keys.get(data_type, ()))
            result[data_type] = data
        return result

    def get_top_keys_metrics(self, limit: int = TOP_KEYS_LIMIT) -> list[dict[str, Any]]:
        ranked = sorted(
            self.key_metrics.items(),
            key=lambda item: item[1].total_requests,
            reverse=True,
        )
        return [{"key": key, **counters.as_dict()} for key, counters in ranked[:limit]]

    def calculate_efficiency(self) -> float:
        """Blend of hit rate, latency and memory efficiency, 0..1."""
        thresholds = self.policy.thresholds
        metrics = self.metrics
        latency_efficiency = max(0.0, 1.0 - metrics.average_response_time / thresholds.response_time_ms)
        memory_efficiency = max(0.0, 1.0 - metrics.memory_usage / thresholds.memory_bytes)
        return metrics.hit_rate * 0.5 + latency_efficiency * 0.3 + memory_efficiency * 0.2

    def generate_recommendations(self) -> list[dict[str, str]]:
        metrics = self.metrics
        recommendations = []
        if metrics.total_requests > 0 and metrics.hit_rate < 0.7:
            recommendations.append(
                {
                    "type": "hit_rate",
                    "priority": "high",
                    "message": "Consider increasing cache TTL or improving cache key strategy",
                }
            )
        if metrics.average_response_time > 100:
            recommendations.append(
                {
                    "type": "performance",
                    "priority": "medium",
                    "message": "Consider optimizing cache lookup or reducing cache size",
                }
            )
        if metrics.memory_usage > RECOMMENDATION_MEMORY_BYTES:
            recommendations.append(
                {
                    "type": "memory",
                    "priority": "medium",
                    "message": "Consider implementing cache compression or reducing cache size",
                }
            )
        if metrics.errors > metrics.total_requests * RECOMMENDATION_ERROR_SHARE:
            recommendations.append(
                {
                    "type": "errors",
                    "priority": "high",
                    "message": "Investigate and fix cache errors",
                }
            )
        return recommendations

    def generate_report(self) -> dict[str, Any]:
        report = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "summary": self.get_summary_metrics(),
            "performance": self.get_performance_metrics(),
            "data_types": self.get_data_type_metrics(),
            "top_keys": self.get_top_keys_metrics(),
            "alerts": self.get_active_alerts(),
            "recommendations": self.generate_recommendations(),
        }
        logger.info(
            "Cache metrics report",
            hit_rate=round(report["summary"]["hit_rate"], 3),
            total_requests=report["summary"]["total_requests"],
            active_alerts=len(report["alerts"]),
        )
        if self._event_bus is not None:
            self._event_bus.publish(MetricsReport(report=report))
        return report

    def start_reporting(self) -> asyncio.Task:
        """Start the periodic report. Must be called from a running event loop."""
        self.stop_reporting()
        loop = asyncio.get_running_loop()
        self._report_task = loop.create_task(self._report_loop(), name="cache-metrics-report")
        return self._report_task

    def stop_reporting(self) -> None:
        if self._report_task is not None:
            self._report_task.cancel()
            self._report_task = None

    async def _report_loop(self) -> None:
        while not self._destroyed:
            await asyncio.sleep(self.policy.report_interval)
            if self._destroyed:
                break
            try:
                self.generate_report()
            except Exception:
                logger.error("Metrics report failed", exc_info=True)

    def get_history(self) -> list[dict[str, Any]]:
        """History entries newer than the retention window."""
        cutoff = time.time() - self.policy.retention_hours * 3600
        return [entry for entry in self.history if entry["timestamp"] >= cutoff]

    def get_full_stats(self) -> dict[str, Any]:
        metrics = self.metrics.as_dict()
        metrics.update(
            {
                "gets": self.metrics.gets,
                "cleanups": self.metrics.cleanups,
                "miss_rate": self.metrics.miss_rate,
                "error_rate": self.metrics.error_rate,
                "memory_usage": self.metrics.memory_usage,
                "cache_size": self.metrics.cache_size,
                "error_types": dict(self.error_types),
            }
        )
        return {
            "metrics": metrics,
            "performance": self.get_performance_metrics(),
            "data_types": self.get_data_type_metrics(),
            "top_keys": self.get_top_keys_metrics(),
            "history": self.get_history(),
            "alerts": list(self.alerts),
            "config": asdict(self.policy),
        }

    # ------------------------------------------------------------- lifecycle

    def reset(self) -> None:
        self.metrics = GlobalMetrics()
        self.error_types.clear()
        self.key_metrics.clear()
        self.data_type_metrics.clear()
        self._data_type_keys.clear()
        self._key_sizes.clear()
        self.history.clear()
        self.alerts.clear()
        self._alert_state.clear()
        logger.info("Cache metrics reset")

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self.stop_reporting()
        if self._event_bus is not None:
            for kind, handler in self._subscriptions:
                self._event_bus.unsubscribe(kind, handler)
        self._subscriptions.clear()
        self.reset()
        logger.info("Cache metrics destroyed")
