# core/cache_dependencies.py
"""
Tag-based dependency tracking and cascading invalidation.

Every cached key can depend on a set of tags ("route", "speed", ...). The
graph keeps a forward index (key -> tags) and a reverse index (tag -> keys)
that are always inverses of each other. Invalidating a tag invalidates every
key depending on it on every attached store.

Tag invalidations are queued by priority and drained synchronously by a
single drainer. A tag invalidation requested while the queue is being drained
(e.g. from a rule action) is enqueued and processed before the outermost
`invalidate_by_tag` call returns.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from core.exceptions import DependencyInconsistencyError

if TYPE_CHECKING:
    from core.smart_cache import SmartCache

logger = structlog.get_logger(__name__)

# Substrings of a key mapped to the tags it depends on. Order matters for the
# resulting tag list; duplicates are dropped.
AUTO_DEPENDENCY_RULES: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("route",), ("route",)),
    (("waypoint",), ("waypoints",)),
    (("distance",), ("route", "waypoints")),
    (("time", "duration"), ("route", "speed")),
    (("fuel",), ("route", "speed", "fuel_flow")),
    (("weather",), ("location", "weather")),
    (("map", "tile"), ("location", "zoom")),
    (("calculation",), ("route", "speed", "fuel_flow")),
)

ROUTE_CHANGE_TAGS: tuple[str, ...] = ("route", "waypoints", "distance", "calculations")
ROUTE_CLEARED_TAGS: tuple[str, ...] = ROUTE_CHANGE_TAGS + ("map",)
SPEED_CHANGE_TAGS: tuple[str, ...] = ("speed", "time_calculations", "fuel_calculations")
FUEL_FLOW_CHANGE_TAGS: tuple[str, ...] = ("fuel_flow", "fuel_calculations", "total_fuel")


def calculate_invalidation_priority(tag: str, key_count: int) -> float:
    """Navigation-critical tags are processed first, larger batches slightly earlier."""
    priority = 1.0
    if "route" in tag or "waypoint" in tag:
        priority += 3
    if "speed" in tag or "fuel" in tag:
        priority += 2
    if "weather" in tag or "metar" in tag:
        priority += 1
    priority += min(key_count * 0.1, 2.0)
    return priority


@dataclass
class InvalidationBatch:
    tag: str
    keys: list[str]
    reason: str
    priority: float
    queued_at: float = field(default_factory=time.time)


@dataclass
class InvalidationRule:
    name: str
    condition: Callable[[dict[str, Any]], bool]
    action: Callable[[dict[str, Any]], Any]
    created_at: float = field(default_factory=time.time)


class DependencyGraph:
    """Shared tag index for all entry stores of one facade."""

    def __init__(self) -> None:
        self._forward: dict[str, set[str]] = {}
        self._reverse: dict[str, set[str]] = {}
        self._rules: dict[str, InvalidationRule] = {}
        self._stores: list[SmartCache] = []
        self._queue: list[tuple[float, int, InvalidationBatch]] = []
        self._sequence = itertools.count()
        self._is_processing = False
        self._lock = threading.RLock()
        self._processing_lock = threading.RLock()
        self.batches_processed = 0
        self.keys_invalidated = 0

    # ---------------------------------------------------------------- stores

    def attach(self, store: SmartCache) -> None:
        with self._lock:
            if store not in self._stores:
                self._stores.append(store)

    def detach(self, store: SmartCache) -> None:
        with self._lock:
            if store in self._stores:
                self._stores.remove(store)

    # --------------------------------------------------------- registration

    def set_dependencies(self, key: str, tags: list[str] | set[str] | tuple[str, ...]) -> None:
        """Replace the tags of `key`. An empty collection unregisters the key."""
        with self._lock:
            self._remove_locked(key)
            tag_set = set(tags)
            if not tag_set:
                return
            self._forward[key] = tag_set
            for tag in tag_set:
                self._reverse.setdefault(tag, set()).add(key)

    def remove_dependencies(self, key: str) -> None:
        with self._lock:
            self._remove_locked(key)

    def _remove_locked(self, key: str) -> None:
        tags = self._forward.pop(key, None)
        if not tags:
            return
        for tag in tags:
            keys = self._reverse.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._reverse[tag]

    def get_tags(self, key: str) -> set[str]:
        with self._lock:
            return set(self._forward.get(key, ()))

    def get_keys(self, tag: str) -> set[str]:
        with self._lock:
            return set(self._reverse.get(tag, ()))

    @staticmethod
    def auto_detect_dependencies(key: str) -> list[str]:
        """Derive dependency tags from substrings of the key."""
        tags: dict[str, None] = {}
        for needles, derived in AUTO_DEPENDENCY_RULES:
            if any(needle in key for needle in needles):
                for tag in derived:
                    tags.setdefault(tag, None)
        return list(tags)

    # ---------------------------------------------------------- invalidation

    def invalidate_by_tag(self, tag: str, reason: str = "dependency_change") -> int:
        """
        Invalidate every key depending on `tag`.

        Returns:
            The number of keys queued for invalidation under this tag.
        """
        with self._lock:
            keys = sorted(self._reverse.get(tag, ()))
            if not keys:
                return 0
            batch = InvalidationBatch(
                tag=tag,
                keys=keys,
                reason=reason,
                priority=calculate_invalidation_priority(tag, len(keys)),
            )
            heapq.heappush(self._queue, (-batch.priority, next(self._sequence), batch))

        self._drain_queue()
        return len(keys)

    def _drain_queue(self) -> None:
        with self._processing_lock:
            if self._is_processing:
                # Nested call from inside the drain; the running loop picks it up.
                return
            self._is_processing = True
            try:
                while True:
                    with self._lock:
                        if not self._queue:
                            break
                        _, _, batch = heapq.heappop(self._queue)
                    self._execute_batch(batch)
            finally:
                self._is_processing = False

    def _execute_batch(self, batch: InvalidationBatch) -> None:
        invalidated = 0
        for key in list(batch.keys):
            if self._invalidate_key(key, batch):
                invalidated += 1
        self.batches_processed += 1
        self.keys_invalidated += invalidated
        logger.info(
            "Invalidated cache entries for tag",
            tag=batch.tag,
            reason=batch.reason,
            count=invalidated,
            priority=batch.priority,
        )

    def _invalidate_key(self, key: str, batch: InvalidationBatch) -> bool:
        with self._lock:
            stores = list(self._stores)
        for store in stores:
            if store.invalidate(key, reason=batch.reason, tag=batch.tag):
                return True
        # No store held the key; drop the stale registration.
        self.remove_dependencies(key)
        return False

    # ----------------------------------------------------------------- rules

    def add_invalidation_rule(
        self,
        name: str,
        condition: Callable[[dict[str, Any]], bool],
        action: Callable[[dict[str, Any]], Any],
    ) -> None:
        with self._lock:
            self._rules[name] = InvalidationRule(name=name, condition=condition, action=action)
        logger.debug("Invalidation rule added", rule=name)

    def remove_invalidation_rule(self, name: str) -> bool:
        with self._lock:
            return self._rules.pop(name, None) is not None

    def check_invalidation_rules(self, context: dict[str, Any]) -> list[str]:
        """Run the action of every rule whose condition holds. Returns the triggered rule names."""
        with self._lock:
            rules = list(self._rules.values())

        triggered: list[str] = []
        for rule in rules:
            try:
                if rule.condition(context):
                    rule.action(context)
                    triggered.append(rule.name)
            except Exception:
                logger.error("Invalidation rule failed", rule=rule.name, exc_info=True)
        return triggered

    # ------------------------------------------------------- domain handlers

    def _handle_change(self, change_type: str, tags: tuple[str, ...], data: Any = None) -> int:
        total = 0
        for tag in tags:
            total += self.invalidate_by_tag(tag, reason=change_type)
        self.check_invalidation_rules({"type": change_type, "data": data, "timestamp": time.time()})
        return total

    def handle_route_change(self, route: Any = None) -> int:
        return self._handle_change("route_change", ROUTE_CHANGE_TAGS, route)

    def handle_route_cleared(self) -> int:
        return self._handle_change("route_cleared", ROUTE_CLEARED_TAGS)

    def handle_speed_change(self, speed: float) -> int:
        return self._handle_change("speed_change", SPEED_CHANGE_TAGS, speed)

    def handle_fuel_flow_change(self, fuel_flow: float) -> int:
        return self._handle_change("fuel_flow_change", FUEL_FLOW_CHANGE_TAGS, fuel_flow)

    # ----------------------------------------------------------- consistency

    def find_inconsistencies(self) -> list[str]:
        """Tags whose reverse entry disagrees with the forward index."""
        with self._lock:
            broken: set[str] = set()
            for key, tags in self._forward.items():
                for tag in tags:
                    if key not in self._reverse.get(tag, ()):
                        broken.add(tag)
            for tag, keys in self._reverse.items():
                if not keys:
                    broken.add(tag)
                for key in keys:
                    if tag not in self._forward.get(key, ()):
                        broken.add(tag)
            return sorted(broken)

    def verify_consistency(self, *, strict: bool = False) -> list[str]:
        """
        Check that the two indexes are inverses.

        Inconsistent reverse entries are rebuilt from the forward index. With
        `strict=True` an inconsistency raises instead.

        Raises:
            DependencyInconsistencyError: In strict mode, if any tag is inconsistent.
        """
        with self._lock:
            broken = self.find_inconsistencies()
            if not broken:
                return []
            if strict:
                raise DependencyInconsistencyError(
                    "Dependency indexes are inconsistent",
                    details={"tags": broken},
                )
            for tag in broken:
                keys = {key for key, tags in self._forward.items() if tag in tags}
                if keys:
                    self._reverse[tag] = keys
                else:
                    self._reverse.pop(tag, None)
        logger.warning("Rebuilt inconsistent dependency entries", tags=broken)
        return broken

    # ----------------------------------------------------------------- stats

    def get_dependency_info(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_dependencies": len(self._forward),
                "total_tags": len(self._reverse),
                "total_rules": len(self._rules),
                "queue_length": len(self._queue),
                "is_processing": self._is_processing,
                "batches_processed": self.batches_processed,
                "keys_invalidated": self.keys_invalidated,
                "tags": {tag: len(keys) for tag, keys in self._reverse.items()},
            }

    def clear(self) -> None:
        with self._lock:
            self._forward.clear()
            self._reverse.clear()
            self._queue.clear()
        logger.info("Dependency graph cleared")
