# core/smart_cache.py
"""
Entry store with adaptive TTL, composite-score eviction and tag registration.

Reads check liveness and recompute the effective TTL of the key, writes evict
one entry when the store is full and register the entry's dependency tags
with the shared dependency graph. Every observable operation is published on
the event bus exactly once; metrics and the prefetcher listen there.

Store operations are synchronous. The periodic cleanup sweep is an asyncio
task started with `start_cleanup_timer()` and cancelled by `destroy()`.
"""

from __future__ import annotations

import asyncio
import re
import threading
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

import structlog

from core.adaptive_ttl import AdaptiveTTLEngine
from core.cache_entry import CacheEntry, CachePolicy, CacheStats, estimate_size
from core.event_bus import (
    CacheCleanup,
    CacheCleared,
    CacheError,
    CacheEvicted,
    CacheHit,
    CacheInvalidated,
    CacheMiss,
    CacheSet,
    Event,
    EventBus,
)
from core.eviction import select_victim
from core.exceptions import StoreDestroyedError, ValidationError, create_error_context

if TYPE_CHECKING:
    from core.cache_dependencies import DependencyGraph

logger = structlog.get_logger(__name__)


def _now() -> float:
    """Time source for TTL evaluation (monotonic for correctness).

    This is a dedicated function to make TTL behavior easy to test via monkeypatch.
    """
    return time.monotonic()


class SmartCache:
    """
    In-memory key/value store with adaptive expiry.

    Args:
        name: Namespace name, used in logs and stats.
        policy: Store configuration (defaults to `CachePolicy()`).
        dependencies: Shared dependency graph. When given, every `set` registers
            the entry's tags there and removals unregister them.
        event_bus: Where hit/miss/set/... observations are published.

    Every method except `destroy()`, `stop_cleanup_timer()` and `is_destroyed`
    raises `StoreDestroyedError` once the store has been destroyed.
    """

    def __init__(
        self,
        name: str = "general",
        policy: CachePolicy | None = None,
        *,
        dependencies: DependencyGraph | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.name = name
        self.policy = policy or CachePolicy()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._access_patterns: dict[str, int] = {}
        self._ttl_engine = AdaptiveTTLEngine()
        self._counters = CacheStats()
        self._lock = threading.RLock()
        self._dependencies = dependencies
        self._event_bus = event_bus
        self._cleanup_task: asyncio.Task | None = None
        self._destroyed = False

        if dependencies is not None:
            dependencies.attach(self)

        logger.debug("Smart cache initialized", store=name, **self.policy.as_dict())

    # ------------------------------------------------------------------ guards

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def _ensure_alive(self, operation: str) -> None:
        if self._destroyed:
            raise StoreDestroyedError(
                f"Cache store '{self.name}' has been destroyed",
                details=create_error_context(store=self.name, operation=operation),
            )

    @staticmethod
    def _validate_key(key: Any) -> None:
        if not isinstance(key, str) or not key:
            raise ValidationError("Cache key must be a non-empty string", details={"key": repr(key)})

    @staticmethod
    def _validate_ttl(ttl: Any) -> None:
        if ttl is None:
            return
        if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0:
            raise ValidationError("ttl must be a positive number of seconds", details={"ttl": ttl})

    @staticmethod
    def _validate_tags(tags: Any) -> None:
        if tags is None:
            return
        if isinstance(tags, (str, bytes)) or not isinstance(tags, (list, set, frozenset, tuple)):
            raise ValidationError("tags must be a collection of tag names", details={"tags": repr(tags)})
        invalid = [tag for tag in tags if not isinstance(tag, str) or not tag]
        if invalid:
            raise ValidationError("tag names must be non-empty strings", details={"tags": repr(invalid)})

    @staticmethod
    def _validate_priority(priority: Any) -> None:
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 0:
            raise ValidationError("priority must be a non-negative integer", details={"priority": priority})

    def _publish(self, event: Event) -> None:
        if self._event_bus is not None and self.policy.enable_metrics:
            self._event_bus.publish(event)

    # ------------------------------------------------------------- internals

    def _remove_locked(self, key: str, *, forget_patterns: bool) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._counters.memory_usage = max(0, self._counters.memory_usage - entry.size)
        if forget_patterns:
            self._access_patterns.pop(key, None)
            self._ttl_engine.forget(key)
        if self._dependencies is not None:
            self._dependencies.remove_dependencies(key)
        return entry

    def _evict_one_locked(self, now: float) -> str | None:
        victim = select_victim(self._entries.values(), now)
        if victim is None:
            return None
        self._remove_locked(victim.key, forget_patterns=True)
        logger.debug("Cache entry evicted", store=self.name, key=victim.key, reason="size_limit")
        return victim.key

    # ------------------------------------------------------------ public API

    def get(self, key: str, default: Any = None) -> Any:
        """
        Return the cached value, or `default` when absent or stale.

        Stale entries are removed and reported as a miss.
        """
        self._ensure_alive("get")
        self._validate_key(key)
        start = time.perf_counter()

        with self._lock:
            self._counters.total_requests += 1
            now = _now()
            entry = self._entries.get(key)
            hit = entry is not None and entry.is_live(now)

            if hit:
                entry.touch(now)
                accesses = self._access_patterns.get(key, 0) + 1
                self._access_patterns[key] = accesses
                self._ttl_engine.update_frequency(key, accesses, self._counters.total_requests)
                entry.effective_ttl = self._ttl_engine.effective_ttl(key, entry.base_ttl, entry.access_count)
                self._counters.hits += 1
                value = entry.value
                access_count = entry.access_count
            else:
                expired = entry is not None
                if expired:
                    self._remove_locked(key, forget_patterns=False)
                self._counters.misses += 1
                value = default

            elapsed_ms = (time.perf_counter() - start) * 1000.0
            self._counters.record_response_time(elapsed_ms)

        if hit:
            logger.debug("Cache hit", store=self.name, key=key)
            self._publish(CacheHit(key=key, response_time_ms=elapsed_ms, access_count=access_count))
        else:
            logger.debug("Cache miss", store=self.name, key=key, expired=expired)
            self._publish(CacheMiss(key=key, response_time_ms=elapsed_ms, expired=expired))
        return value

    def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: float | None = None,
        tags: list[str] | set[str] | tuple[str, ...] | None = None,
        priority: int = 1,
    ) -> bool:
        """
        Store `value` under `key`.

        Args:
            ttl: Base TTL in seconds; the store default when None.
            tags: Dependency tags. When None, tags are derived from the key.
                An empty collection registers no tags.
            priority: Higher values survive eviction longer.

        Raises:
            ValidationError: On an empty key, non-positive TTL, invalid priority
                or tags that are not a collection of non-empty strings.
            StoreDestroyedError: After `destroy()`.
        """
        self._ensure_alive("set")
        self._validate_key(key)
        self._validate_ttl(ttl)
        self._validate_priority(priority)
        self._validate_tags(tags)

        base_ttl = float(ttl) if ttl is not None else self.policy.default_ttl
        evicted_key: str | None = None

        with self._lock:
            now = _now()
            replacing = key in self._entries
            if not replacing and len(self._entries) >= self.policy.max_size:
                evicted_key = self._evict_one_locked(now)
            if replacing:
                # Re-insert at the end so insertion order reflects the latest write.
                self._remove_locked(key, forget_patterns=False)

            if tags is None:
                tag_list = self._dependencies.auto_detect_dependencies(key) if self._dependencies else []
            else:
                tag_list = list(dict.fromkeys(tags))

            entry = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                last_accessed_at=now,
                base_ttl=base_ttl,
                effective_ttl=self._ttl_engine.effective_ttl(key, base_ttl, 0),
                priority=priority,
                access_count=0,
                tags=frozenset(tag_list),
                size=estimate_size(value),
            )
            self._entries[key] = entry
            self._counters.memory_usage += entry.size

            if self._dependencies is not None:
                self._dependencies.set_dependencies(key, tag_list)

        if evicted_key is not None:
            self._publish(CacheEvicted(key=evicted_key, reason="size_limit"))
        logger.debug("Cache set", store=self.name, key=key, ttl=entry.effective_ttl, tags=tag_list)
        self._publish(
            CacheSet(
                key=key,
                size=entry.size,
                ttl=entry.effective_ttl,
                priority=priority,
                tags=entry.tags,
            )
        )
        return True

    def invalidate(self, key: str, *, reason: str = "manual", tag: str | None = None) -> bool:
        """Remove `key`. Returns True iff an entry existed."""
        self._ensure_alive("invalidate")
        self._validate_key(key)
        with self._lock:
            existed = self._remove_locked(key, forget_patterns=True) is not None

        if existed:
            logger.debug("Cache entry invalidated", store=self.name, key=key, reason=reason)
            self._publish(CacheInvalidated(key=key, reason=reason, tag=tag))
        return existed

    def invalidate_pattern(self, pattern: str | re.Pattern[str], *, reason: str = "pattern") -> int:
        """Invalidate every key matching the regex `pattern` (searched, not anchored)."""
        self._ensure_alive("invalidate_pattern")
        try:
            regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        except re.error as exc:
            raise ValidationError("Invalid invalidation pattern", details={"pattern": pattern, "error": str(exc)}) from exc

        with self._lock:
            keys = [key for key in self._entries if regex.search(key)]

        removed = 0
        for key in keys:
            if self.invalidate(key, reason=reason):
                removed += 1
        return removed

    def cleanup(self) -> int:
        """Remove every stale entry. Returns the number removed."""
        self._ensure_alive("cleanup")
        with self._lock:
            now = _now()
            stale = [key for key, entry in self._entries.items() if not entry.is_live(now)]
            for key in stale:
                self._remove_locked(key, forget_patterns=True)

        if stale:
            logger.info("Cache cleanup removed stale entries", store=self.name, removed=len(stale))
            self._publish(CacheCleanup(removed_count=len(stale), keys=tuple(stale)))
        if self._dependencies is not None:
            self._dependencies.verify_consistency()
        return len(stale)

    def contains(self, key: str) -> bool:
        """True if a live entry exists. Does not count as a read."""
        self._ensure_alive("contains")
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.is_live(_now())

    __contains__ = contains

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the raw entry (live or not) without touching it."""
        self._ensure_alive("get_entry")
        with self._lock:
            return self._entries.get(key)

    def keys(self) -> list[str]:
        self._ensure_alive("keys")
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        self._ensure_alive("len")
        with self._lock:
            return len(self._entries)

    # ----------------------------------------------------------- lifecycle

    def start_cleanup_timer(self) -> asyncio.Task:
        """Start the periodic sweep. Must be called from a running event loop."""
        self._ensure_alive("start_cleanup_timer")
        self.stop_cleanup_timer()
        loop = asyncio.get_running_loop()
        self._cleanup_task = loop.create_task(self._cleanup_loop(), name=f"cache-cleanup-{self.name}")
        return self._cleanup_task

    def stop_cleanup_timer(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while not self._destroyed:
            await asyncio.sleep(self.policy.cleanup_interval)
            if self._destroyed:
                break
            try:
                self.cleanup()
            except StoreDestroyedError:
                break
            except Exception as exc:
                logger.error("Periodic cache cleanup failed", store=self.name, exc_info=True)
                self._publish(CacheError(key=None, operation="cleanup", error=exc))

    def clear(self) -> int:
        """Drop every entry and reset counters. Returns the number of entries dropped."""
        self._ensure_alive("clear")
        with self._lock:
            keys = list(self._entries)
            for key in keys:
                self._remove_locked(key, forget_patterns=True)
            self._access_patterns.clear()
            self._ttl_engine.clear()
            self._counters = CacheStats()

        self._publish(CacheCleared(size=len(keys), keys=tuple(keys)))
        logger.info("Cache cleared", store=self.name, removed=len(keys))
        return len(keys)

    def destroy(self) -> None:
        """Stop the sweep timer, drop all entries and refuse further operations."""
        if self._destroyed:
            return
        self.stop_cleanup_timer()
        self.clear()
        self._destroyed = True
        if self._dependencies is not None:
            self._dependencies.detach(self)
        logger.info("Smart cache destroyed", store=self.name)

    # --------------------------------------------------------------- stats

    def get_stats(self) -> dict[str, Any]:
        self._ensure_alive("get_stats")
        with self._lock:
            counters = self._counters
            hit_rate = counters.hits / counters.total_requests if counters.total_requests > 0 else 0.0
            miss_rate = 1.0 - hit_rate if counters.total_requests > 0 else 0.0
            return {
                "store": self.name,
                "hits": counters.hits,
                "misses": counters.misses,
                "total_requests": counters.total_requests,
                "average_response_time_ms": counters.average_response_time_ms,
                "cache_size": len(self._entries),
                "memory_usage": counters.memory_usage,
                "hit_rate": hit_rate,
                "miss_rate": miss_rate,
                "efficiency": hit_rate,
                "memory_usage_mb": round(counters.memory_usage / 1024 / 1024, 2),
            }

    def get_detailed_info(self) -> dict[str, Any]:
        self._ensure_alive("get_detailed_info")
        with self._lock:
            now = _now()
            entries = [entry.describe(now) for entry in self._entries.values()]
        entries.sort(key=lambda item: item["access_count"], reverse=True)
        return {
            "stats": self.get_stats(),
            "entries": entries,
            "config": self.policy.as_dict(),
        }
