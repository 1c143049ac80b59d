# models/flight_models.py
"""Define the flight-planning payloads that the cache facade stores.

These mirror what the EFB front end produces: a parsed GPX route, completed
distance/time/fuel calculations, simulated weather reports and remote tool
results. They are intentionally permissive (most fields optional) because
the producers are external collaborators.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class Location(BaseModel):
    """A point on the map, in decimal degrees."""

    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)


class Waypoint(BaseModel):
    """A named route point."""

    name: str | None = None
    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)
    elevation: float = 0.0


class Route(BaseModel):
    """A loaded flight route."""

    id: str = Field(..., min_length=1)
    waypoints: list[Waypoint] = Field(default_factory=list)
    distance: float = 0.0
    duration: float = 0.0
    fuel: float = 0.0
    source: str = "unknown"
    version: str = "1.0"


class CalculationResult(BaseModel):
    """A finished distance/time/fuel computation."""

    id: str = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: Any = None


class WeatherReport(BaseModel):
    """Weather for one location, as delivered by the weather tool server."""

    location: Location
    type: str = "current"
    current: dict[str, Any] | None = None
    forecast: list[dict[str, Any]] | None = None
    metar: str | None = None
    taf: str | None = None
    alerts: list[str] | None = None
    source: str = "unknown"


class RemoteToolResult(BaseModel):
    """The result of a call to a remote tool server."""

    tool_name: str = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
