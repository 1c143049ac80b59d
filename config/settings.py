# config/settings.py
"""
Configuration settings for the EFB cache subsystem.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import logging as stdlib_logging
import os
from collections.abc import MutableMapping
from typing import Any

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()


class EFBCacheSettings(BaseSettings):
    """Full configuration for the EFB cache subsystem."""

    # Entry store
    CACHE_DEFAULT_TTL_SECONDS: float = Field(300.0, gt=0)
    CACHE_MAX_SIZE: int = Field(1000, gt=0)
    CACHE_CLEANUP_INTERVAL_SECONDS: float = Field(60.0, gt=0)

    # Predictive prefetching
    PREDICTION_THRESHOLD: float = Field(0.7, ge=0.0, le=1.0)
    PRELOAD_DELAY_SECONDS: float = Field(1.0, ge=0.0)
    MAX_PRELOAD_CONCURRENCY: int = Field(3, gt=0)
    MAX_PATTERN_HISTORY: int = Field(1000, gt=0)
    PREFETCH_TIMEOUT_SECONDS: float = Field(10.0, gt=0)

    # Alerting thresholds
    ALERT_HIT_RATE_THRESHOLD: float = Field(0.7, ge=0.0, le=1.0)
    ALERT_RESPONSE_TIME_MS: float = Field(100.0, gt=0)
    ALERT_MEMORY_BYTES: int = Field(100 * 1024 * 1024, gt=0)
    ALERT_ERROR_RATE: float = Field(0.05, ge=0.0, le=1.0)
    ALERT_MIN_REQUESTS: int = Field(100, ge=0)
    ALERT_COOLDOWN_SECONDS: float = Field(60.0, ge=0.0)
    MAX_ALERTS: int = Field(100, gt=0)

    # Metrics reporting
    METRICS_REPORT_INTERVAL_SECONDS: float = Field(60.0, gt=0)
    METRICS_HISTORY_SIZE: int = Field(1000, gt=0)
    METRICS_RETENTION_HOURS: float = Field(24.0, gt=0)
    ENABLE_DETAILED_METRICS: bool = True

    # Domain namespaces
    ENABLE_ROUTE_CACHING: bool = True
    ENABLE_WEATHER_CACHING: bool = True
    ENABLE_CALCULATION_CACHING: bool = True
    ENABLE_MAP_CACHING: bool = True
    ENABLE_REMOTE_TOOL_CACHING: bool = True
    ENABLE_PREDICTIVE_CACHING: bool = True
    DEFAULT_USER_ID: str = "default_user"

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="LOG_LEVEL")
    LOG_FILE: str | None = None
    LOG_DIR: str = "logs"
    ENABLE_RICH_CONSOLE: bool = True
    # Minimal logging mode: console only, no rotation/Rich
    SIMPLE_LOGGING_MODE: bool = False

    @model_validator(mode="after")
    def apply_fast_profile(self) -> EFBCacheSettings:
        # FAST_PROFILE shortens every timer, handy for demos and soak runs.
        fast = os.getenv("FAST_PROFILE", "false").lower() in {"1", "true", "yes", "on"}
        if fast:
            object.__setattr__(
                self,
                "CACHE_CLEANUP_INTERVAL_SECONDS",
                min(self.CACHE_CLEANUP_INTERVAL_SECONDS, 5.0),
            )
            object.__setattr__(
                self,
                "METRICS_REPORT_INTERVAL_SECONDS",
                min(self.METRICS_REPORT_INTERVAL_SECONDS, 5.0),
            )
            object.__setattr__(
                self, "PRELOAD_DELAY_SECONDS", min(self.PRELOAD_DELAY_SECONDS, 0.1)
            )
        return self

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", extra="ignore", populate_by_name=True
    )


settings = EFBCacheSettings()


# Update module level variables for backward compatibility
for _field in EFBCacheSettings.model_fields:
    globals()[_field] = getattr(settings, _field)


# Configure structlog to integrate with standard logging and output human‑readable messages
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="%m/%d/%Y, %H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)


def filter_internal_keys(
    logger: Any, name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Remove internal structlog fields from event dict."""
    for key in [k for k in event_dict if k.startswith("_")]:
        event_dict.pop(key, None)
    return event_dict


_LEVEL_STYLES = {"CRITICAL": "red", "ERROR": "red", "WARNING": "yellow", "INFO": "green"}


def _render_line(event_dict: MutableMapping[str, Any], *, markup: bool) -> str:
    """One human-readable line: time, short logger name, level, event, context."""
    level = str(event_dict.pop("level", "INFO")).upper()
    timestamp = event_dict.pop("timestamp", "")
    logger_name = event_dict.pop("logger", "")
    event = event_dict.pop("event", "")

    parts = [str(timestamp)] if timestamp else []
    if logger_name:
        short_name = logger_name.rsplit(".", 1)[-1]
        parts.append(f"[cyan]{short_name}[/cyan]" if markup else f"[{short_name}]")

    style = _LEVEL_STYLES.get(level)
    parts.append(f"[{style}]{level}[/{style}]" if markup and style else level)
    parts.append(f"[bold]{event}[/bold]" if markup and event else str(event))

    context = []
    for key, value in event_dict.items():
        if key.startswith("_"):
            continue
        text = str(value)
        if isinstance(value, str) and len(value) > 50:
            text = f"{value[:47]}..."
        context.append(f"[dim]{key}[/dim]={text}" if markup else f"{key}={text}")
    if context:
        parts.append(f"({', '.join(context)})")
    return " ".join(parts)


def simple_log_format_rich(
    logger: Any, name: str, event_dict: MutableMapping[str, Any]
) -> str:
    """Console renderer with Rich markup."""
    return _render_line(event_dict, markup=True)


def simple_log_format_plain(
    logger: Any, name: str, event_dict: MutableMapping[str, Any]
) -> str:
    """File renderer without markup."""
    return _render_line(event_dict, markup=False)


def _processor_formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="%m/%d/%Y, %H:%M:%S"),
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        ],
        processors=[filter_internal_keys, renderer],
    )


# File output (plain text) and Rich console output (color markup)
simple_formatter = _processor_formatter(simple_log_format_plain)
rich_formatter = _processor_formatter(simple_log_format_rich)

root_logger = stdlib_logging.getLogger()
root_logger.setLevel(settings.LOG_LEVEL_STR)
