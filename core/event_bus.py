# core/event_bus.py
"""
Typed event bus connecting the cache components and the EFB domain layer.

Every event is a frozen dataclass whose `kind` class attribute names one
member of a closed enum. Handlers subscribe per kind and are called
synchronously, in subscription order, when an event of that kind is
published. A failing handler is logged and skipped; publishing never raises.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

import structlog

from models.flight_models import CalculationResult, RemoteToolResult, Route, WeatherReport
from models.prediction_models import ActionContext

logger = structlog.get_logger(__name__)


class CacheEventKind(str, Enum):
    """Events emitted by the cache components."""

    HIT = "cache-hit"
    MISS = "cache-miss"
    SET = "cache-set"
    INVALIDATED = "cache-invalidated"
    EVICTED = "cache-evicted"
    CLEANUP = "cache-cleanup"
    CLEARED = "cache-cleared"
    ERROR = "cache-error"
    ALERT = "cache-alert"
    METRICS_REPORT = "cache-metrics-report"


class EFBEventKind(str, Enum):
    """Events emitted by the EFB application."""

    ROUTE_LOADED = "route-loaded"
    ROUTE_CLEARED = "route-cleared"
    CALCULATION_COMPLETE = "calculation-complete"
    SPEED_CHANGED = "speed-changed"
    FUEL_FLOW_CHANGED = "fuel-flow-changed"
    WAYPOINT_SELECTED = "waypoint-selected"
    MAP_ZOOMED = "map-zoomed"
    MAP_PANNED = "map-panned"
    WEATHER_DATA_RECEIVED = "weather-data-received"
    REMOTE_TOOL_RESULT = "remote-tool-result"


# --- cache events ---------------------------------------------------------


@dataclass(frozen=True)
class CacheHit:
    kind: ClassVar[CacheEventKind] = CacheEventKind.HIT
    key: str
    response_time_ms: float
    access_count: int = 0


@dataclass(frozen=True)
class CacheMiss:
    kind: ClassVar[CacheEventKind] = CacheEventKind.MISS
    key: str
    response_time_ms: float
    expired: bool = False


@dataclass(frozen=True)
class CacheSet:
    kind: ClassVar[CacheEventKind] = CacheEventKind.SET
    key: str
    size: int
    ttl: float
    priority: int
    tags: frozenset[str] = frozenset()


@dataclass(frozen=True)
class CacheInvalidated:
    kind: ClassVar[CacheEventKind] = CacheEventKind.INVALIDATED
    key: str
    reason: str = "manual"
    tag: str | None = None


@dataclass(frozen=True)
class CacheEvicted:
    kind: ClassVar[CacheEventKind] = CacheEventKind.EVICTED
    key: str
    reason: str = "size_limit"


@dataclass(frozen=True)
class CacheCleanup:
    kind: ClassVar[CacheEventKind] = CacheEventKind.CLEANUP
    removed_count: int
    keys: tuple[str, ...] = ()


@dataclass(frozen=True)
class CacheCleared:
    kind: ClassVar[CacheEventKind] = CacheEventKind.CLEARED
    size: int
    keys: tuple[str, ...] = ()


@dataclass(frozen=True)
class CacheError:
    kind: ClassVar[CacheEventKind] = CacheEventKind.ERROR
    key: str | None
    operation: str
    error: BaseException


@dataclass(frozen=True)
class CacheAlert:
    kind: ClassVar[CacheEventKind] = CacheEventKind.ALERT
    alert: dict[str, Any]


@dataclass(frozen=True)
class MetricsReport:
    kind: ClassVar[CacheEventKind] = CacheEventKind.METRICS_REPORT
    report: dict[str, Any]


# --- EFB domain events ----------------------------------------------------


@dataclass(frozen=True)
class RouteLoaded:
    kind: ClassVar[EFBEventKind] = EFBEventKind.ROUTE_LOADED
    route: Route


@dataclass(frozen=True)
class RouteCleared:
    kind: ClassVar[EFBEventKind] = EFBEventKind.ROUTE_CLEARED


@dataclass(frozen=True)
class CalculationComplete:
    kind: ClassVar[EFBEventKind] = EFBEventKind.CALCULATION_COMPLETE
    calculation: CalculationResult


@dataclass(frozen=True)
class SpeedChanged:
    kind: ClassVar[EFBEventKind] = EFBEventKind.SPEED_CHANGED
    speed: float


@dataclass(frozen=True)
class FuelFlowChanged:
    kind: ClassVar[EFBEventKind] = EFBEventKind.FUEL_FLOW_CHANGED
    fuel_flow: float


@dataclass(frozen=True)
class WaypointSelected:
    kind: ClassVar[EFBEventKind] = EFBEventKind.WAYPOINT_SELECTED
    context: ActionContext = field(default_factory=ActionContext)


@dataclass(frozen=True)
class MapZoomed:
    kind: ClassVar[EFBEventKind] = EFBEventKind.MAP_ZOOMED
    context: ActionContext = field(default_factory=ActionContext)


@dataclass(frozen=True)
class MapPanned:
    kind: ClassVar[EFBEventKind] = EFBEventKind.MAP_PANNED
    context: ActionContext = field(default_factory=ActionContext)


@dataclass(frozen=True)
class WeatherDataReceived:
    kind: ClassVar[EFBEventKind] = EFBEventKind.WEATHER_DATA_RECEIVED
    report: WeatherReport


@dataclass(frozen=True)
class RemoteToolResultReceived:
    kind: ClassVar[EFBEventKind] = EFBEventKind.REMOTE_TOOL_RESULT
    result: RemoteToolResult


CacheEvent = Union[
    CacheHit,
    CacheMiss,
    CacheSet,
    CacheInvalidated,
    CacheEvicted,
    CacheCleanup,
    CacheCleared,
    CacheError,
    CacheAlert,
    MetricsReport,
]

EFBEvent = Union[
    RouteLoaded,
    RouteCleared,
    CalculationComplete,
    SpeedChanged,
    FuelFlowChanged,
    WaypointSelected,
    MapZoomed,
    MapPanned,
    WeatherDataReceived,
    RemoteToolResultReceived,
]

Event = Union[CacheEvent, EFBEvent]
EventKind = Union[CacheEventKind, EFBEventKind]
Handler = Callable[[Any], None]


class EventBus:
    """Explicit subscription registry keyed by event kind."""

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[Handler]] = {}
        self._lock = threading.RLock()

    def subscribe(self, kind: EventKind, handler: Handler) -> None:
        with self._lock:
            self._handlers.setdefault(kind, []).append(handler)

    def unsubscribe(self, kind: EventKind, handler: Handler) -> bool:
        """Remove one registration of `handler`; False if it was not subscribed."""
        with self._lock:
            handlers = self._handlers.get(kind)
            if not handlers or handler not in handlers:
                return False
            handlers.remove(handler)
            if not handlers:
                del self._handlers[kind]
            return True

    def publish(self, event: Event) -> int:
        """Deliver `event` to every handler of its kind.

        Returns:
            The number of handlers that completed without raising.
        """
        kind = type(event).kind
        with self._lock:
            handlers = list(self._handlers.get(kind, ()))

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.error(
                    "Event handler failed",
                    event_kind=kind.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    exc_info=True,
                )
        return delivered

    def listener_count(self, kind: EventKind) -> int:
        with self._lock:
            return len(self._handlers.get(kind, ()))

    def kinds(self) -> list[EventKind]:
        with self._lock:
            return list(self._handlers)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
