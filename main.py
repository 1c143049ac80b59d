# main.py
import asyncio
import random

import structlog
from rich.console import Console
from rich.table import Table

import config
from core.efb_cache import EFBCache, create_efb_cache
from core.event_bus import (
    CalculationComplete,
    MapZoomed,
    RouteCleared,
    RouteLoaded,
    SpeedChanged,
    WeatherDataReceived,
)
from core.logging_config import setup_logging
from models import ActionContext, CalculationResult, Location, Route, Waypoint, WeatherReport

logger = structlog.get_logger(__name__)
console = Console()


async def simulated_weather(location: Location) -> WeatherReport:
    await asyncio.sleep(0.05)
    return WeatherReport(
        location=location,
        current={"temperature": round(random.uniform(-10, 25), 1), "wind_speed": random.randint(0, 30)},
        source="simulated",
    )


async def simulated_tile(tile) -> dict:
    await asyncio.sleep(0.01)
    return {"format": "png", "lat": tile["lat"], "lon": tile["lon"], "zoom": tile["zoom"]}


def _render_stats(cache: EFBCache) -> None:
    table = Table(title="EFB cache namespaces")
    table.add_column("Namespace")
    table.add_column("Entries", justify="right")
    table.add_column("Hits", justify="right")
    table.add_column("Misses", justify="right")
    table.add_column("Hit rate", justify="right")
    for namespace, stats in cache.get_stats()["namespaces"].items():
        table.add_row(
            namespace,
            str(stats["cache_size"]),
            str(stats["hits"]),
            str(stats["misses"]),
            f"{stats['hit_rate'] * 100:.1f}%",
        )
    console.print(table)
    console.print(cache.get_prediction_stats())


async def run_demo_session() -> None:
    cache = create_efb_cache(
        config.settings,
        weather_provider=simulated_weather,
        tile_provider=simulated_tile,
    )
    cache.start()
    bus = cache.event_bus

    route = Route(
        id="R1",
        waypoints=[Waypoint(name="A", lat=68.0, lon=33.0), Waypoint(name="B", lat=68.1, lon=33.1)],
        distance=12.4,
    )
    try:
        for _ in range(3):
            bus.publish(RouteLoaded(route=route))
            bus.publish(MapZoomed(context=ActionContext(lat=68.0, lon=33.0, zoom=10)))
            bus.publish(SpeedChanged(speed=120.0))
            bus.publish(
                CalculationComplete(
                    calculation=CalculationResult(id="fuel", parameters={"speed": 120.0}, result={"fuel": 42.0})
                )
            )
            bus.publish(WeatherDataReceived(report=await simulated_weather(Location(lat=68.0, lon=33.0))))
            cache.get_route("R1")
            cache.get_calculation("fuel", {"speed": 120.0})

        await asyncio.sleep(config.settings.PRELOAD_DELAY_SECONDS * 2)
        bus.publish(RouteCleared())
        logger.info("Route after clear", cached=cache.get_route("R1") is not None)
        _render_stats(cache)
    finally:
        cache.destroy()


def main() -> None:
    setup_logging()

    try:
        asyncio.run(run_demo_session())
    except KeyboardInterrupt:
        logger.info("EFB cache demo shutting down gracefully due to KeyboardInterrupt...")
    except Exception as main_err:  # pragma: no cover - entry point catch
        logger.critical(
            f"EFB cache demo encountered an unhandled main exception: {main_err}",
            exc_info=True,
        )


if __name__ == "__main__":
    main()
