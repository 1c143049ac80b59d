# config/validator.py
"""
Configuration validation utilities for the EFB cache subsystem.

This module provides a single public function `validate_all()` that:
1. Reads the current `EFBCacheSettings` object (field types and ranges were
   already enforced by Pydantic when it was constructed).
2. Performs cross‑field sanity checks that cannot be expressed purely with
   Pydantic field validators (e.g., related durations).
3. Returns a structured health report dictionary.

The report layout:

{
    "overall_health": "healthy" | "warning" | "error",
    "issues": {
        "errors":   [{ "field": "<field>", "message": "<msg>" }, ...],
        "warnings": [{ "field": "<field>", "message": "<msg>" }, ...],
        "info":     [{ "field": "<field>", "message": "<msg>" }, ...],
    }
}
"""

from __future__ import annotations

from . import settings as settings_mod


def _add_issue(
    issues: dict[str, list[dict[str, str]]],
    severity: str,
    field: str,
    message: str,
) -> None:
    """Utility to append an issue entry to the report."""
    issues.setdefault(severity, []).append({"field": field, "message": message})


def validate_all(current_settings: settings_mod.EFBCacheSettings | None = None) -> dict:
    """
    Validate a configuration object (the loaded `settings` singleton by default).

    Returns a health‑report dict with overall status and detailed issue lists.
    """
    issues: dict[str, list[dict[str, str]]] = {"errors": [], "warnings": [], "info": []}

    if current_settings is None:
        current_settings = settings_mod.settings

    if current_settings is None:
        _add_issue(
            issues, "errors", "settings", "Configuration object not initialized."
        )
        return {
            "overall_health": "error",
            "issues": issues,
        }

    # A sweep period longer than the default TTL leaves stale entries in memory
    # for a whole extra TTL.
    if current_settings.CACHE_CLEANUP_INTERVAL_SECONDS > current_settings.CACHE_DEFAULT_TTL_SECONDS:
        _add_issue(
            issues,
            "warnings",
            "CACHE_CLEANUP_INTERVAL_SECONDS",
            (
                f"CACHE_CLEANUP_INTERVAL_SECONDS ({current_settings.CACHE_CLEANUP_INTERVAL_SECONDS}) "
                f"exceeds CACHE_DEFAULT_TTL_SECONDS ({current_settings.CACHE_DEFAULT_TTL_SECONDS})."
            ),
        )

    if current_settings.PRELOAD_DELAY_SECONDS >= current_settings.CACHE_DEFAULT_TTL_SECONDS:
        _add_issue(
            issues,
            "warnings",
            "PRELOAD_DELAY_SECONDS",
            (
                f"PRELOAD_DELAY_SECONDS ({current_settings.PRELOAD_DELAY_SECONDS}) is not shorter "
                f"than CACHE_DEFAULT_TTL_SECONDS ({current_settings.CACHE_DEFAULT_TTL_SECONDS}); "
                "prefetched data may expire before it is used."
            ),
        )

    if current_settings.PREFETCH_TIMEOUT_SECONDS > current_settings.CACHE_DEFAULT_TTL_SECONDS:
        _add_issue(
            issues,
            "warnings",
            "PREFETCH_TIMEOUT_SECONDS",
            "PREFETCH_TIMEOUT_SECONDS exceeds CACHE_DEFAULT_TTL_SECONDS.",
        )

    if current_settings.MAX_PATTERN_HISTORY < 5:
        _add_issue(
            issues,
            "errors",
            "MAX_PATTERN_HISTORY",
            (
                f"MAX_PATTERN_HISTORY must be >= 5 for the prediction model to build; "
                f"got {current_settings.MAX_PATTERN_HISTORY}."
            ),
        )

    size_fields = [
        ("CACHE_MAX_SIZE", 100_000),
        ("METRICS_HISTORY_SIZE", 100_000),
        ("MAX_ALERTS", 10_000),
    ]
    for name, max_val in size_fields:
        value = getattr(current_settings, name)
        if value > max_val:
            _add_issue(
                issues,
                "warnings",
                name,
                f"{name} is very large ({value}); consider lowering to reduce memory usage.",
            )

    if current_settings.ALERT_COOLDOWN_SECONDS == 0:
        _add_issue(
            issues,
            "info",
            "ALERT_COOLDOWN_SECONDS",
            "Alert cooldown disabled; active alerts re-fire on every check.",
        )

    overall = "healthy"
    if issues["errors"]:
        overall = "error"
    elif issues["warnings"]:
        overall = "warning"

    return {
        "overall_health": overall,
        "issues": issues,
    }
