# models/prediction_models.py
"""Define the records used by the predictive prefetcher.

`ActionContext` is a closed record: the fields the EFB actually produces are
typed, anything else lands in the `extra` bag so new producers keep working.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .flight_models import Location, Waypoint

SENSITIVE_CONTEXT_KEYS: frozenset[str] = frozenset({"password", "token", "api_key", "apiKey"})
COORDINATE_PRECISION: int = 2


class ActionContext(BaseModel):
    """What the user was looking at when an action happened."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    lat: float | None = None
    lon: float | None = None
    zoom: int | None = None
    route_id: str | None = None
    speed: float | None = None
    fuel_flow: float | None = None
    distance: float | None = None
    location: Location | None = None
    waypoint: Waypoint | None = None
    waypoints: list[Waypoint] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> ActionContext:
        """Build a context from a loose mapping; unknown keys go to `extra`."""
        if not data:
            return cls()
        known: dict[str, Any] = {}
        extra: dict[str, Any] = dict(data.get("extra") or {})
        for key, value in data.items():
            if key == "extra":
                continue
            if key in cls.model_fields:
                known[key] = value
            else:
                extra[key] = value
        return cls(**known, extra=extra)

    def sanitized(self) -> ActionContext:
        """Drop secrets and round coordinates for privacy."""
        update: dict[str, Any] = {
            "extra": {k: v for k, v in self.extra.items() if k not in SENSITIVE_CONTEXT_KEYS},
        }
        if self.lat is not None:
            update["lat"] = round(self.lat, COORDINATE_PRECISION)
        if self.lon is not None:
            update["lon"] = round(self.lon, COORDINATE_PRECISION)
        if self.location is not None:
            update["location"] = Location(
                lat=round(self.location.lat, COORDINATE_PRECISION),
                lon=round(self.location.lon, COORDINATE_PRECISION),
            )
        return self.model_copy(update=update)

    def flat(self) -> dict[str, Any]:
        """Non-empty fields as plain data, with `extra` merged in."""
        data = self.model_dump(exclude={"extra"}, exclude_none=True)
        if not data.get("waypoints"):
            data.pop("waypoints", None)
        data.update(self.extra)
        return data


class UserActionRecord(BaseModel):
    """One observed user action."""

    action: str = Field(..., min_length=1)
    context: ActionContext = Field(default_factory=ActionContext)
    timestamp: datetime
    time_of_day: str
    day_of_week: int = Field(..., ge=0, le=6)


class Prediction(BaseModel):
    """Most likely next action after `current_action`."""

    current_action: str
    next_action: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    frequency: int = Field(..., ge=0)
    common_context: ActionContext = Field(default_factory=ActionContext)
