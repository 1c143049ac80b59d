# core/cache_entry.py
"""
Cache entry and policy models for the EFB cache subsystem.

This module defines the core data structures used by the entry store to track
cached values, their freshness metadata and the store configuration.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from core.exceptions import ValidationError

DEFAULT_ENTRY_SIZE: int = 1024
"""Size assumed for values that cannot be serialized for estimation."""


def estimate_size(value: Any) -> int:
    """Approximate the in-memory footprint of a cached value in bytes.

    The estimate is the length of the JSON encoding times two (UTF-16-ish
    accounting). It is used for memory gauges only and is not exact.
    """
    try:
        return len(json.dumps(value, default=str)) * 2
    except (TypeError, ValueError):
        return DEFAULT_ENTRY_SIZE


@dataclass
class CacheEntry:
    """
    A cached value plus the metadata needed for expiry, eviction and invalidation.

    Timestamps come from the store clock (monotonic seconds). `effective_ttl`
    is derived from `base_ttl` by the adaptive TTL engine and recomputed on
    every successful read.
    """

    key: str
    value: Any
    created_at: float
    last_accessed_at: float
    base_ttl: float
    effective_ttl: float
    priority: int = 1
    access_count: int = 0
    tags: frozenset[str] = field(default_factory=frozenset)
    size: int = 0

    def is_live(self, now: float) -> bool:
        """An entry is live iff `now - created_at < effective_ttl`."""
        return (now - self.created_at) < self.effective_ttl

    def age(self, now: float) -> float:
        return max(0.0, now - self.created_at)

    def idle(self, now: float) -> float:
        return max(0.0, now - self.last_accessed_at)

    def touch(self, now: float) -> None:
        """Record a successful read."""
        self.last_accessed_at = now
        self.access_count += 1

    def describe(self, now: float) -> dict[str, Any]:
        """Return a JSON-friendly summary (used by `get_detailed_info`)."""
        return {
            "key": self.key,
            "age": self.age(now),
            "ttl": self.effective_ttl,
            "base_ttl": self.base_ttl,
            "access_count": self.access_count,
            "priority": self.priority,
            "size": self.size,
            "tags": sorted(self.tags),
            "is_valid": self.is_live(now),
        }


@dataclass
class CacheStats:
    """Running counters of one entry store."""

    hits: int = 0
    misses: int = 0
    total_requests: int = 0
    average_response_time_ms: float = 0.0
    memory_usage: int = 0

    def record_response_time(self, elapsed_ms: float) -> None:
        # Incremental mean over total_requests.
        if self.total_requests > 0:
            self.average_response_time_ms += (
                elapsed_ms - self.average_response_time_ms
            ) / self.total_requests


@dataclass
class CachePolicy:
    """
    Configuration for one entry store.

    Durations are seconds.
    """

    default_ttl: float = 300.0
    max_size: int = 1000
    cleanup_interval: float = 60.0
    enable_metrics: bool = True

    def __post_init__(self):
        """Validate policy parameters."""
        if self.max_size <= 0:
            raise ValidationError("max_size must be positive", details={"max_size": self.max_size})
        if self.default_ttl <= 0:
            raise ValidationError("default_ttl must be positive", details={"default_ttl": self.default_ttl})
        if self.cleanup_interval <= 0:
            raise ValidationError(
                "cleanup_interval must be positive",
                details={"cleanup_interval": self.cleanup_interval},
            )

    def as_dict(self) -> dict[str, Any]:
        return {
            "default_ttl": self.default_ttl,
            "max_size": self.max_size,
            "cleanup_interval": self.cleanup_interval,
            "enable_metrics": self.enable_metrics,
        }
