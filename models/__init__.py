# models/__init__.py
"""Export commonly used EFB cache model types.

This package exposes a stable import surface for the Pydantic models passed
between the EFB domain layer and the cache subsystem.
"""

from .flight_models import (
    CalculationResult,
    Location,
    RemoteToolResult,
    Route,
    Waypoint,
    WeatherReport,
)
from .prediction_models import (
    ActionContext,
    Prediction,
    UserActionRecord,
)

__all__ = [
    "Location",
    "Waypoint",
    "Route",
    "CalculationResult",
    "WeatherReport",
    "RemoteToolResult",
    "ActionContext",
    "UserActionRecord",
    "Prediction",
]
