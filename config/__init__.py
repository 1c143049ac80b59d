"""Expose EFB cache configuration as stable module-level constants.

This package provides a facade over the underlying Pydantic settings model
defined in [`config.settings`](config/settings.py:1). The primary API is the
[`settings`](config/settings.py:1) singleton plus a set of module-level constants
mirroring its fields.

Configuration precedence and lifecycle:
- On initial import, configuration is loaded by importing [`config.settings`](config/settings.py:1),
  which constructs the `settings` singleton.
- Values come from the process environment and may be sourced from a `.env` file.
- [`reload()`](config/__init__.py:1) re-reads `.env` with override enabled, then replaces
  this module's exported values (see [`config.loader.reload_settings()`](config/loader.py:1)).

Notes:
    Cache components never read these globals directly. The composition root
    (`core.efb_cache.create_efb_cache`) turns `settings` into policy objects and
    injects them.
"""

from typing import Any

from .settings import (
    EFBCacheSettings as EFBCacheSettings,
)
from .settings import (
    rich_formatter as rich_formatter,
)
from .settings import (
    settings as settings,
)
from .settings import (
    simple_formatter as simple_formatter,
)

CACHE_DEFAULT_TTL_SECONDS = settings.CACHE_DEFAULT_TTL_SECONDS
CACHE_MAX_SIZE = settings.CACHE_MAX_SIZE
CACHE_CLEANUP_INTERVAL_SECONDS = settings.CACHE_CLEANUP_INTERVAL_SECONDS
PREDICTION_THRESHOLD = settings.PREDICTION_THRESHOLD
PRELOAD_DELAY_SECONDS = settings.PRELOAD_DELAY_SECONDS
MAX_PRELOAD_CONCURRENCY = settings.MAX_PRELOAD_CONCURRENCY
MAX_PATTERN_HISTORY = settings.MAX_PATTERN_HISTORY
PREFETCH_TIMEOUT_SECONDS = settings.PREFETCH_TIMEOUT_SECONDS
ALERT_HIT_RATE_THRESHOLD = settings.ALERT_HIT_RATE_THRESHOLD
ALERT_RESPONSE_TIME_MS = settings.ALERT_RESPONSE_TIME_MS
ALERT_MEMORY_BYTES = settings.ALERT_MEMORY_BYTES
ALERT_ERROR_RATE = settings.ALERT_ERROR_RATE
ALERT_MIN_REQUESTS = settings.ALERT_MIN_REQUESTS
ALERT_COOLDOWN_SECONDS = settings.ALERT_COOLDOWN_SECONDS
MAX_ALERTS = settings.MAX_ALERTS
METRICS_REPORT_INTERVAL_SECONDS = settings.METRICS_REPORT_INTERVAL_SECONDS
METRICS_HISTORY_SIZE = settings.METRICS_HISTORY_SIZE
METRICS_RETENTION_HOURS = settings.METRICS_RETENTION_HOURS
ENABLE_DETAILED_METRICS = settings.ENABLE_DETAILED_METRICS
ENABLE_ROUTE_CACHING = settings.ENABLE_ROUTE_CACHING
ENABLE_WEATHER_CACHING = settings.ENABLE_WEATHER_CACHING
ENABLE_CALCULATION_CACHING = settings.ENABLE_CALCULATION_CACHING
ENABLE_MAP_CACHING = settings.ENABLE_MAP_CACHING
ENABLE_REMOTE_TOOL_CACHING = settings.ENABLE_REMOTE_TOOL_CACHING
ENABLE_PREDICTIVE_CACHING = settings.ENABLE_PREDICTIVE_CACHING
DEFAULT_USER_ID = settings.DEFAULT_USER_ID
LOG_LEVEL_STR = settings.LOG_LEVEL_STR
LOG_FILE = settings.LOG_FILE
LOG_DIR = settings.LOG_DIR
ENABLE_RICH_CONSOLE = settings.ENABLE_RICH_CONSOLE
SIMPLE_LOGGING_MODE = settings.SIMPLE_LOGGING_MODE


def get(key: str) -> Any:
    """Return the value of a configuration attribute from `settings`.

    Raises:
        AttributeError: If `key` is not a valid attribute on `settings`.
    """
    return getattr(settings, key)


def set(key: str, value: Any) -> None:
    """Set a configuration attribute on `settings` at runtime.

    This mutates the in-memory settings instance and does not persist to `.env`.
    """
    setattr(settings, key, value)


def reload() -> None:
    """Reload configuration and refresh this package's exported constants.

    This delegates to [`config.loader.reload_settings()`](config/loader.py:1), which may
    overwrite process environment variables by re-reading `.env` with override enabled.
    """
    from .loader import reload_settings

    reload_settings()
