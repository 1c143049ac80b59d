# core/efb_cache.py
"""
Domain facade over the EFB cache subsystem.

`EFBCache` owns one entry store per namespace (route, weather, calculation,
map, remote tool, general). All stores share one dependency graph, one event
bus and one metrics collector; a single prefetcher writes back through the
facade. Keys are routed to a store by prefix, so the generic `get`/`set`
API and the typed `cache_*`/`get_*` entry points see the same data.

The facade is the only subscriber to EFB domain events. Each handler runs
its steps in a fixed order: dependent entries are invalidated first, then
new data is cached, then the action is recorded for prediction.

Use `create_efb_cache()` to build a fully wired instance from settings.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

import config
from config.settings import EFBCacheSettings
from core.cache_dependencies import DependencyGraph
from core.cache_entry import CachePolicy
from core.cache_metrics import AlertThresholds, CacheMetrics, MetricsPolicy
from core.cache_policies import (
    CALCULATION,
    GENERAL,
    MAP,
    NAMESPACES,
    REMOTE_TOOL,
    ROUTE,
    WEATHER,
    CachePolicyManager,
    calculation_ttl,
    namespace_for_key,
    remote_tool_ttl,
    weather_ttl,
)
from core.event_bus import EFBEventKind, EventBus
from core.exceptions import StoreDestroyedError
from core.predictive_cache import (
    Loader,
    PredictiveCache,
    PrefetchPolicy,
    generate_nearby_tiles,
    load_map_preload,
)
from core.smart_cache import SmartCache
from models.flight_models import CalculationResult, Location, RemoteToolResult, Route, Waypoint, WeatherReport
from models.prediction_models import ActionContext

logger = structlog.get_logger(__name__)

ROUTE_PRIORITY = 3
WAYPOINT_PRIORITY = 2
WEATHER_PRIORITY = 2
CALCULATION_PRIORITY = 2
MAP_PRIORITY = 1
REMOTE_TOOL_PRIORITY = 2

WeatherProvider = Callable[[Location], Awaitable[WeatherReport | Mapping[str, Any] | None]]
TileProvider = Callable[[Mapping[str, Any]], Awaitable[Any]]


@dataclass
class EFBCacheOptions:
    enable_route_caching: bool = True
    enable_weather_caching: bool = True
    enable_calculation_caching: bool = True
    enable_map_caching: bool = True
    enable_remote_tool_caching: bool = True
    enable_predictive_caching: bool = True
    default_user_id: str = "default_user"


def _params_suffix(parameters: Mapping[str, Any]) -> str:
    return "|".join(f"{key}:{parameters[key]}" for key in sorted(parameters))


def weather_key(location: Location, weather_type: str = "current") -> str:
    return f"weather:{weather_type}:{round(location.lat, 2)}:{round(location.lon, 2)}"


def calculation_key(calculation_id: str, parameters: Mapping[str, Any]) -> str:
    return f"calculation:{calculation_id}:{_params_suffix(parameters)}"


def remote_tool_key(tool_name: str, parameters: Mapping[str, Any]) -> str:
    return f"tool:{tool_name}:{_params_suffix(parameters)}"


def map_key(key: str) -> str:
    return key if key.startswith(("tile:", "map:")) else f"map:{key}"


def tile_key(tile: Mapping[str, Any]) -> str:
    return f"tile:{tile['lat']}:{tile['lon']}:{tile['zoom']}"


def calculation_dependencies(parameters: Mapping[str, Any]) -> list[str]:
    tags = ["calculations"]
    for parameter, tag in (("route", "route"), ("speed", "speed"), ("fuel_flow", "fuel_flow"), ("waypoints", "waypoints")):
        if parameter in parameters:
            tags.append(tag)
    return tags


def remote_tool_dependencies(tool_name: str, parameters: Mapping[str, Any]) -> list[str]:
    tags = ["remote_tool"]
    if "location" in parameters or "lat" in parameters or "lon" in parameters:
        tags.append("location")
    if "weather" in tool_name:
        tags.append("weather")
    return tags


class EFBCache:
    """Typed entry points and event handlers over the namespaced stores."""

    def __init__(
        self,
        stores: Mapping[str, SmartCache],
        dependencies: DependencyGraph,
        metrics: CacheMetrics,
        event_bus: EventBus,
        options: EFBCacheOptions | None = None,
    ) -> None:
        missing = [namespace for namespace in NAMESPACES if namespace not in stores]
        if missing:
            raise ValueError(f"Missing cache stores for namespaces: {missing}")
        self.stores = dict(stores)
        self.dependencies = dependencies
        self.metrics = metrics
        self.event_bus = event_bus
        self.options = options or EFBCacheOptions()
        self.predictive: PredictiveCache | None = None
        self.weather_provider: WeatherProvider | None = None
        self.tile_provider: TileProvider | None = None
        self._domain_handlers: list[tuple[EFBEventKind, Callable[[Any], None]]] = []
        self._destroyed = False

    # ------------------------------------------------------------- wiring

    def bind_predictive(self, predictive: PredictiveCache) -> None:
        self.predictive = predictive

    def subscribe_domain_events(self) -> None:
        """Register the facade's handlers for every EFB event kind."""
        handlers: dict[EFBEventKind, Callable[[Any], None]] = {
            EFBEventKind.ROUTE_LOADED: lambda event: self.on_route_loaded(event.route),
            EFBEventKind.ROUTE_CLEARED: lambda event: self.on_route_cleared(),
            EFBEventKind.CALCULATION_COMPLETE: lambda event: self.on_calculation_complete(event.calculation),
            EFBEventKind.SPEED_CHANGED: lambda event: self.on_speed_changed(event.speed),
            EFBEventKind.FUEL_FLOW_CHANGED: lambda event: self.on_fuel_flow_changed(event.fuel_flow),
            EFBEventKind.WAYPOINT_SELECTED: lambda event: self.on_waypoint_selected(event.context),
            EFBEventKind.MAP_ZOOMED: lambda event: self.on_map_zoomed(event.context),
            EFBEventKind.MAP_PANNED: lambda event: self.on_map_panned(event.context),
            EFBEventKind.WEATHER_DATA_RECEIVED: lambda event: self.on_weather_data(event.report),
            EFBEventKind.REMOTE_TOOL_RESULT: lambda event: self.on_remote_tool_result(event.result),
        }
        for kind, handler in handlers.items():
            self.event_bus.subscribe(kind, handler)
            self._domain_handlers.append((kind, handler))

    def prefetch_loaders(self) -> dict[str, Loader]:
        """Loaders that resolve predicted actions through this facade's providers."""
        return {
            "weather_requested": self._load_weather,
            "map_zoomed": self._load_map_tiles,
            "map_panned": self._load_map_tiles,
        }

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def _ensure_alive(self, operation: str) -> None:
        if self._destroyed:
            raise StoreDestroyedError("EFB cache has been destroyed", details={"operation": operation})

    def store_for(self, key: str) -> SmartCache:
        return self.stores[namespace_for_key(key)]

    # -------------------------------------------------------- generic API

    def get(self, key: str, default: Any = None) -> Any:
        self._ensure_alive("get")
        return self.store_for(key).get(key, default)

    def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: float | None = None,
        tags: Any = None,
        priority: int = 1,
    ) -> bool:
        self._ensure_alive("set")
        return self.store_for(key).set(key, value, ttl=ttl, tags=tags, priority=priority)

    def invalidate(self, key: str) -> bool:
        self._ensure_alive("invalidate")
        return self.store_for(key).invalidate(key)

    def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> int:
        self._ensure_alive("invalidate_pattern")
        return sum(store.invalidate_pattern(pattern) for store in self.stores.values())

    def invalidate_by_tag(self, tag: str, reason: str = "manual") -> int:
        self._ensure_alive("invalidate_by_tag")
        return self.dependencies.invalidate_by_tag(tag, reason)

    def get_stats(self) -> dict[str, Any]:
        """Counters summed over every namespace plus the per-namespace view."""
        per_store = {namespace: store.get_stats() for namespace, store in self.stores.items()}
        hits = sum(stats["hits"] for stats in per_store.values())
        misses = sum(stats["misses"] for stats in per_store.values())
        total = hits + misses
        hit_rate = hits / total if total > 0 else 0.0
        return {
            "hits": hits,
            "misses": misses,
            "total_requests": total,
            "hit_rate": hit_rate,
            "miss_rate": 1.0 - hit_rate if total > 0 else 0.0,
            "cache_size": sum(stats["cache_size"] for stats in per_store.values()),
            "memory_usage": sum(stats["memory_usage"] for stats in per_store.values()),
            "namespaces": per_store,
        }

    def get_detailed_info(self) -> dict[str, Any]:
        return {
            "namespaces": {namespace: store.get_detailed_info() for namespace, store in self.stores.items()},
            "dependencies": self.dependencies.get_dependency_info(),
        }

    def record_user_action(
        self,
        user_id: str,
        action: str,
        context: ActionContext | Mapping[str, Any] | None = None,
    ) -> None:
        if not self.options.enable_predictive_caching or self.predictive is None:
            return
        self.predictive.record_action(user_id, action, context)

    def get_prediction_stats(self) -> dict[str, Any]:
        if self.predictive is None:
            return {}
        return self.predictive.get_stats()

    # ------------------------------------------------------------- routes

    def cache_route(self, route: Route) -> bool:
        if not self.options.enable_route_caching:
            return False
        data = {
            "id": route.id,
            "waypoints": [waypoint.model_dump() for waypoint in route.waypoints],
            "distance": route.distance,
            "duration": route.duration,
            "fuel": route.fuel,
            "metadata": {"source": route.source, "version": route.version},
        }
        self.set(f"route:{route.id}", data, tags=["route", "waypoints"], priority=ROUTE_PRIORITY)
        for index, waypoint in enumerate(route.waypoints):
            self.cache_waypoint(route.id, index, waypoint)
        logger.info("Route cached", route_id=route.id, waypoints=len(route.waypoints))
        return True

    def get_route(self, route_id: str) -> dict[str, Any] | None:
        return self.get(f"route:{route_id}")

    def cache_waypoint(self, route_id: str, index: int, waypoint: Waypoint) -> bool:
        if not self.options.enable_route_caching:
            return False
        return self.set(
            f"waypoint:{route_id}:{index}",
            waypoint.model_dump(),
            tags=["waypoints", "route"],
            priority=WAYPOINT_PRIORITY,
        )

    def get_waypoint(self, route_id: str, index: int) -> dict[str, Any] | None:
        return self.get(f"waypoint:{route_id}:{index}")

    # ------------------------------------------------------------ weather

    def cache_weather_data(self, report: WeatherReport) -> bool:
        if not self.options.enable_weather_caching:
            return False
        key = weather_key(report.location, report.type)
        self.set(
            key,
            report.model_dump(),
            ttl=weather_ttl(report.type),
            tags=["weather", "location"],
            priority=WEATHER_PRIORITY,
        )
        logger.debug("Weather data cached", key=key, weather_type=report.type)
        return True

    def get_weather_data(self, location: Location, weather_type: str = "current") -> dict[str, Any] | None:
        return self.get(weather_key(location, weather_type))

    # -------------------------------------------------------- calculations

    def cache_calculation(self, calculation: CalculationResult) -> bool:
        if not self.options.enable_calculation_caching:
            return False
        key = calculation_key(calculation.id, calculation.parameters)
        self.set(
            key,
            calculation.result,
            ttl=calculation_ttl(calculation.id),
            tags=calculation_dependencies(calculation.parameters),
            priority=CALCULATION_PRIORITY,
        )
        logger.debug("Calculation cached", key=key)
        return True

    def get_calculation(self, calculation_id: str, parameters: Mapping[str, Any]) -> Any:
        return self.get(calculation_key(calculation_id, parameters))

    # ---------------------------------------------------------------- map

    def cache_map_data(self, key: str, data: Any) -> bool:
        if not self.options.enable_map_caching:
            return False
        return self.set(map_key(key), data, tags=["map", "location"], priority=MAP_PRIORITY)

    def get_map_data(self, key: str) -> Any:
        return self.get(map_key(key))

    # -------------------------------------------------------- remote tools

    def cache_remote_tool_result(self, result: RemoteToolResult) -> bool:
        if not self.options.enable_remote_tool_caching:
            return False
        key = remote_tool_key(result.tool_name, result.parameters)
        self.set(
            key,
            result.result,
            ttl=remote_tool_ttl(result.tool_name),
            tags=remote_tool_dependencies(result.tool_name, result.parameters),
            priority=REMOTE_TOOL_PRIORITY,
        )
        logger.debug("Remote tool result cached", tool_name=result.tool_name)
        return True

    def get_remote_tool_result(self, tool_name: str, parameters: Mapping[str, Any]) -> Any:
        return self.get(remote_tool_key(tool_name, parameters))

    # ---------------------------------------------------- domain handlers

    def on_route_loaded(self, route: Route) -> None:
        self.dependencies.handle_route_change(route.id)
        self.cache_route(route)
        self.record_user_action(
            self.options.default_user_id,
            "route_loaded",
            ActionContext(route_id=route.id, waypoints=route.waypoints, distance=route.distance),
        )

    def on_route_cleared(self) -> None:
        self.dependencies.handle_route_cleared()
        self.invalidate_pattern(r"^route:")
        self.invalidate_pattern(r"^waypoint:")
        self.record_user_action(self.options.default_user_id, "route_cleared")
        logger.info("Route data cleared from cache")

    def on_calculation_complete(self, calculation: CalculationResult) -> None:
        self.cache_calculation(calculation)

    def on_speed_changed(self, speed: float) -> None:
        self.dependencies.handle_speed_change(speed)
        self.record_user_action(self.options.default_user_id, "speed_changed", ActionContext(speed=speed))

    def on_fuel_flow_changed(self, fuel_flow: float) -> None:
        self.dependencies.handle_fuel_flow_change(fuel_flow)
        self.record_user_action(
            self.options.default_user_id,
            "fuel_flow_changed",
            ActionContext(fuel_flow=fuel_flow),
        )

    def on_weather_data(self, report: WeatherReport) -> None:
        self.cache_weather_data(report)
        self.record_user_action(
            self.options.default_user_id,
            "weather_requested",
            ActionContext(location=report.location),
        )

    def on_remote_tool_result(self, result: RemoteToolResult) -> None:
        self.cache_remote_tool_result(result)

    def on_waypoint_selected(self, context: ActionContext) -> None:
        self.record_user_action(self.options.default_user_id, "waypoint_selected", context)

    def on_map_zoomed(self, context: ActionContext) -> None:
        self.record_user_action(self.options.default_user_id, "map_zoomed", context)

    def on_map_panned(self, context: ActionContext) -> None:
        self.record_user_action(self.options.default_user_id, "map_panned", context)

    # ---------------------------------------------------- prefetch loaders

    async def _load_weather(self, context: ActionContext) -> dict[str, Any] | None:
        location = context.location
        if location is None and context.lat is not None and context.lon is not None:
            location = Location(lat=context.lat, lon=context.lon)
        if location is None or self.weather_provider is None:
            return None
        report = await self.weather_provider(location)
        if report is None:
            return None
        if not isinstance(report, WeatherReport):
            report = WeatherReport.model_validate({"location": location, **report})
        if not self._destroyed:
            self.cache_weather_data(report)
        return report.model_dump()

    async def _load_map_tiles(self, context: ActionContext) -> dict[str, Any] | None:
        if self.tile_provider is None:
            return await load_map_preload(context)
        loaded = []
        for tile in generate_nearby_tiles(context):
            data = await self.tile_provider(tile)
            if data is None or self._destroyed:
                continue
            self.cache_map_data(tile_key(tile), data)
            loaded.append(tile)
        if not loaded:
            return None
        return {"type": "map_preload", "tiles": loaded}

    # ------------------------------------------------------------ lifecycle

    def start(self) -> None:
        """Start the periodic timers. Must be called from a running event loop."""
        self._ensure_alive("start")
        for store in self.stores.values():
            store.start_cleanup_timer()
        self.metrics.start_reporting()
        logger.info("EFB cache started", namespaces=list(self.stores))

    def get_all_stats(self) -> dict[str, Any]:
        return {
            "stores": {namespace: store.get_stats() for namespace, store in self.stores.items()},
            "dependencies": self.dependencies.get_dependency_info(),
            "predictive": self.get_prediction_stats(),
            "metrics": self.metrics.get_full_stats(),
        }

    def clear_all(self) -> int:
        self._ensure_alive("clear_all")
        removed = sum(store.clear() for store in self.stores.values())
        self.dependencies.clear()
        if self.predictive is not None:
            self.predictive.clear()
        logger.info("All EFB caches cleared", removed=removed)
        return removed

    clear = clear_all

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        if self.predictive is not None:
            self.predictive.destroy()
        for store in self.stores.values():
            store.destroy()
        self.metrics.destroy()
        for kind, handler in self._domain_handlers:
            self.event_bus.unsubscribe(kind, handler)
        self._domain_handlers.clear()
        self.dependencies.clear()
        logger.info("EFB cache destroyed")


def create_efb_cache(
    settings: EFBCacheSettings | None = None,
    *,
    weather_provider: WeatherProvider | None = None,
    tile_provider: TileProvider | None = None,
    event_bus: EventBus | None = None,
) -> EFBCache:
    """
    Build and wire a complete cache system from settings.

    Args:
        settings: Configuration; the loaded `config.settings` when omitted.
        weather_provider: Async callable returning weather for a location,
            used when prefetching predicted weather requests.
        tile_provider: Async callable returning map tile data, used when
            prefetching neighbouring tiles.
        event_bus: Bus shared with the EFB application. A new one is created
            when omitted.

    Returns:
        A facade subscribed to the bus's EFB events. Call `start()` from a
        running event loop to enable the periodic timers.
    """
    settings = settings or config.settings
    bus = event_bus or EventBus()
    dependencies = DependencyGraph()

    metrics = CacheMetrics(
        MetricsPolicy(
            thresholds=AlertThresholds(
                hit_rate=settings.ALERT_HIT_RATE_THRESHOLD,
                response_time_ms=settings.ALERT_RESPONSE_TIME_MS,
                memory_bytes=settings.ALERT_MEMORY_BYTES,
                error_rate=settings.ALERT_ERROR_RATE,
                min_requests=settings.ALERT_MIN_REQUESTS,
            ),
            report_interval=settings.METRICS_REPORT_INTERVAL_SECONDS,
            history_size=settings.METRICS_HISTORY_SIZE,
            retention_hours=settings.METRICS_RETENTION_HOURS,
            enable_detailed_metrics=settings.ENABLE_DETAILED_METRICS,
            max_alerts=settings.MAX_ALERTS,
            alert_cooldown=settings.ALERT_COOLDOWN_SECONDS,
        ),
        event_bus=bus,
    )

    policies = CachePolicyManager(
        CachePolicy(
            default_ttl=settings.CACHE_DEFAULT_TTL_SECONDS,
            max_size=settings.CACHE_MAX_SIZE,
            cleanup_interval=settings.CACHE_CLEANUP_INTERVAL_SECONDS,
        )
    )
    stores = {
        namespace: SmartCache(
            namespace,
            policies.get_policy(namespace),
            dependencies=dependencies,
            event_bus=bus,
        )
        for namespace in (ROUTE, WEATHER, CALCULATION, MAP, REMOTE_TOOL, GENERAL)
    }

    cache = EFBCache(
        stores,
        dependencies,
        metrics,
        bus,
        EFBCacheOptions(
            enable_route_caching=settings.ENABLE_ROUTE_CACHING,
            enable_weather_caching=settings.ENABLE_WEATHER_CACHING,
            enable_calculation_caching=settings.ENABLE_CALCULATION_CACHING,
            enable_map_caching=settings.ENABLE_MAP_CACHING,
            enable_remote_tool_caching=settings.ENABLE_REMOTE_TOOL_CACHING,
            enable_predictive_caching=settings.ENABLE_PREDICTIVE_CACHING,
            default_user_id=settings.DEFAULT_USER_ID,
        ),
    )
    cache.weather_provider = weather_provider
    cache.tile_provider = tile_provider

    if settings.ENABLE_PREDICTIVE_CACHING:
        cache.bind_predictive(
            PredictiveCache(
                cache,
                PrefetchPolicy(
                    prediction_threshold=settings.PREDICTION_THRESHOLD,
                    preload_delay=settings.PRELOAD_DELAY_SECONDS,
                    max_preload_concurrency=settings.MAX_PRELOAD_CONCURRENCY,
                    max_pattern_history=settings.MAX_PATTERN_HISTORY,
                    prefetch_timeout=settings.PREFETCH_TIMEOUT_SECONDS,
                ),
                loaders=cache.prefetch_loaders(),
                event_bus=bus,
            )
        )

    cache.subscribe_domain_events()
    logger.info(
        "EFB cache system created",
        namespaces=list(stores),
        predictive=settings.ENABLE_PREDICTIVE_CACHING,
    )
    return cache
