# core/predictive_cache.py
"""
Predictive prefetching from per-user action history.

Each recorded action is appended to the user's bounded history. Once the
history holds at least five actions the user's prediction model is rebuilt
from repeated action trigrams and, if the model predicts the next action with
enough confidence, a prefetch task is queued.

The queue is drained by an asyncio task: after `preload_delay` seconds it
runs up to `max_preload_concurrency` tasks concurrently, each calling the
loader registered for the predicted action and writing the result under a
`predictive:` key. Prefetching is best-effort; failures are logged and
published as `CacheError` events, never raised to the caller.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import json
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import structlog

from core.event_bus import CacheError, CacheEventKind, CacheHit, EventBus
from core.exceptions import StoreDestroyedError, ValidationError, wrap_prefetch_error
from models.prediction_models import ActionContext, Prediction, UserActionRecord

logger = structlog.get_logger(__name__)

MIN_HISTORY_FOR_MODEL: int = 5
SEQUENCE_LENGTH: int = 3
PREDICTIVE_KEY_PREFIX: str = "predictive:"
NEIGHBOUR_TILE_OFFSET: float = 0.01

PRELOAD_TTLS: dict[str, float] = {
    "route_loaded": 3600.0,
    "waypoint_selected": 1800.0,
    "map_zoomed": 300.0,
    "map_panned": 300.0,
    "speed_changed": 600.0,
    "weather_requested": 300.0,
}
DEFAULT_PRELOAD_TTL: float = 300.0

Loader = Callable[[ActionContext], Awaitable[Any]]


class CacheWriter(Protocol):
    """Where prefetched data is written (an entry store or the facade)."""

    @property
    def is_destroyed(self) -> bool: ...

    def set(self, key: str, value: Any, *, ttl: float | None = None, tags: Any = None, priority: int = 1) -> bool: ...


@dataclass
class PrefetchPolicy:
    """Tuning knobs for the prefetcher. Durations are seconds."""

    prediction_threshold: float = 0.7
    preload_delay: float = 1.0
    max_preload_concurrency: int = 3
    max_pattern_history: int = 1000
    prefetch_timeout: float = 10.0

    def __post_init__(self):
        if not 0.0 <= self.prediction_threshold <= 1.0:
            raise ValidationError(
                "prediction_threshold must be within [0, 1]",
                details={"prediction_threshold": self.prediction_threshold},
            )
        if self.preload_delay < 0:
            raise ValidationError("preload_delay must not be negative", details={"preload_delay": self.preload_delay})
        if self.max_preload_concurrency < 1:
            raise ValidationError(
                "max_preload_concurrency must be at least 1",
                details={"max_preload_concurrency": self.max_preload_concurrency},
            )
        if self.max_pattern_history < MIN_HISTORY_FOR_MODEL:
            raise ValidationError(
                "max_pattern_history is too small to build a prediction model",
                details={"max_pattern_history": self.max_pattern_history},
            )
        if self.prefetch_timeout <= 0:
            raise ValidationError(
                "prefetch_timeout must be positive",
                details={"prefetch_timeout": self.prefetch_timeout},
            )


@dataclass
class PrefetchTask:
    action: str
    context: ActionContext
    confidence: float
    scheduled_at: datetime
    user_id: str

    @property
    def cache_key(self) -> str:
        return generate_cache_key(self.action, self.context)


@dataclass
class PrefetchStats:
    predictions: int = 0
    successful_predictions: int = 0
    preloaded_items: int = 0
    cache_hits_from_preload: int = 0
    failed_prefetches: int = 0


# --- pure helpers ---------------------------------------------------------


def get_time_of_day(moment: datetime) -> str:
    hour = moment.hour
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


def day_of_week(moment: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return moment.isoweekday() % 7


def get_preload_ttl(action: str) -> float:
    return PRELOAD_TTLS.get(action, DEFAULT_PRELOAD_TTL)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def generate_cache_key(action: str, context: ActionContext) -> str:
    """`predictive:<action>:<k:v|k:v>` with context keys sorted."""
    flat = context.flat()
    parts = []
    for key in sorted(flat):
        value = flat[key]
        rendered = value if isinstance(value, str) else _canonical(value)
        parts.append(f"{key}:{rendered}")
    return f"{PREDICTIVE_KEY_PREFIX}{action}:{'|'.join(parts)}"


def sanitize_context(context: ActionContext | Mapping[str, Any] | None) -> ActionContext:
    if isinstance(context, ActionContext):
        return context.sanitized()
    return ActionContext.from_mapping(context).sanitized()


def extract_common_context(contexts: Sequence[ActionContext]) -> ActionContext:
    """Per field, keep the value shared by more than half of `contexts`."""
    if not contexts:
        return ActionContext()

    flats = [ctx.flat() for ctx in contexts]
    fields: dict[str, None] = {}
    for flat in flats:
        for key in flat:
            fields.setdefault(key, None)

    common: dict[str, Any] = {}
    for key in fields:
        values = [flat[key] for flat in flats if flat.get(key) is not None]
        if not values:
            continue
        counts = Counter(_canonical(value) for value in values)
        winner, count = counts.most_common(1)[0]
        if count > len(contexts) / 2:
            common[key] = next(value for value in values if _canonical(value) == winner)
    return ActionContext.from_mapping(common)


def build_prediction_model(
    records: Sequence[UserActionRecord],
    sequence_length: int = SEQUENCE_LENGTH,
) -> dict[str, Prediction]:
    """
    Build `{current_action: Prediction}` from an action history.

    For every trigram that occurs at least twice, the most frequent follower
    becomes the predicted next action after the trigram's last action.
    Confidence is the observed transition rate from that action to the
    predicted one. When two trigrams end in the same action the prediction
    with the higher confidence (then frequency) wins.
    """
    actions = [record.action for record in records]
    size = len(actions)
    if size < sequence_length + 1:
        return {}

    positions: dict[tuple[str, ...], list[int]] = {}
    for index in range(size - sequence_length + 1):
        positions.setdefault(tuple(actions[index : index + sequence_length]), []).append(index)

    transitions = Counter(zip(actions, actions[1:]))
    outgoing = Counter(actions[:-1])

    model: dict[str, Prediction] = {}
    for sequence, starts in positions.items():
        if len(starts) < 2:
            continue
        followers = Counter(
            actions[start + sequence_length] for start in starts if start + sequence_length < size
        )
        if not followers:
            continue
        next_action, _ = followers.most_common(1)[0]
        current = sequence[-1]
        confidence = transitions[(current, next_action)] / outgoing[current] if outgoing[current] else 0.0
        candidate = Prediction(
            current_action=current,
            next_action=next_action,
            confidence=min(1.0, confidence),
            frequency=len(starts),
            common_context=extract_common_context(
                [records[start + sequence_length - 1].context for start in starts]
            ),
        )
        existing = model.get(current)
        if existing is None or (candidate.confidence, candidate.frequency) > (
            existing.confidence,
            existing.frequency,
        ):
            model[current] = candidate
    return model


def generate_nearby_tiles(context: ActionContext) -> list[dict[str, Any]]:
    """The eight tiles around the context's position."""
    if context.lat is None or context.lon is None:
        return []
    zoom = context.zoom if context.zoom is not None else 10
    tiles = []
    for dlat in (-NEIGHBOUR_TILE_OFFSET, 0.0, NEIGHBOUR_TILE_OFFSET):
        for dlon in (-NEIGHBOUR_TILE_OFFSET, 0.0, NEIGHBOUR_TILE_OFFSET):
            if dlat == 0.0 and dlon == 0.0:
                continue
            tiles.append(
                {
                    "lat": round(context.lat + dlat, 6),
                    "lon": round(context.lon + dlon, 6),
                    "zoom": zoom,
                    "priority": 1.0 if dlat == 0.0 or dlon == 0.0 else 0.5,
                }
            )
    return tiles


# --- built-in loaders -----------------------------------------------------


async def load_route_preload(context: ActionContext) -> dict[str, Any]:
    return {
        "type": "route_preload",
        "route_id": context.route_id,
        "waypoints": [waypoint.model_dump() for waypoint in context.waypoints],
        "distance": context.distance,
        "timestamp": datetime.now().isoformat(),
    }


async def load_waypoint_preload(context: ActionContext) -> dict[str, Any]:
    return {
        "type": "waypoint_preload",
        "waypoint": context.waypoint.model_dump() if context.waypoint else None,
        "nearby_waypoints": [waypoint.model_dump() for waypoint in context.waypoints],
        "timestamp": datetime.now().isoformat(),
    }


async def load_map_preload(context: ActionContext) -> dict[str, Any] | None:
    tiles = generate_nearby_tiles(context)
    if not tiles:
        return None
    return {"type": "map_preload", "tiles": tiles, "timestamp": datetime.now().isoformat()}


async def load_calculation_preload(context: ActionContext) -> dict[str, Any]:
    return {
        "type": "calculation_preload",
        "speed": context.speed,
        "fuel_flow": context.fuel_flow,
        "calculations": ["time", "fuel"],
        "timestamp": datetime.now().isoformat(),
    }


def default_loaders() -> dict[str, Loader]:
    return {
        "route_loaded": load_route_preload,
        "waypoint_selected": load_waypoint_preload,
        "map_zoomed": load_map_preload,
        "map_panned": load_map_preload,
        "speed_changed": load_calculation_preload,
    }


# --- prefetcher -----------------------------------------------------------


class PredictiveCache:
    """
    Learns per-user action sequences and prefetches the predicted next data.

    Args:
        writer: Destination of prefetched entries.
        policy: Prefetch tuning (defaults to `PrefetchPolicy()`).
        loaders: Async loaders by predicted action, merged over the built-ins.
        event_bus: Used to publish prefetch errors and to count hits on
            prefetched keys.
        clock: Wall clock for action timestamps.
    """

    def __init__(
        self,
        writer: CacheWriter,
        policy: PrefetchPolicy | None = None,
        *,
        loaders: Mapping[str, Loader] | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.policy = policy or PrefetchPolicy()
        self._writer = writer
        self._loaders: dict[str, Loader] = default_loaders()
        if loaders:
            self._loaders.update(loaders)
        self._event_bus = event_bus
        self._clock = clock

        self._histories: dict[str, deque[UserActionRecord]] = {}
        self._models: dict[str, dict[str, Prediction]] = {}
        self._current_actions: dict[str, str] = {}
        self._queue: list[tuple[float, int, PrefetchTask]] = []
        self._pending: dict[str, PrefetchTask] = {}
        self._sequence = itertools.count()
        self._drain_task: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._stats = PrefetchStats()
        self._destroyed = False

        if event_bus is not None:
            event_bus.subscribe(CacheEventKind.HIT, self._on_cache_hit)

        logger.debug(
            "Predictive cache initialized",
            threshold=self.policy.prediction_threshold,
            loaders=sorted(self._loaders),
        )

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def _ensure_alive(self, operation: str) -> None:
        if self._destroyed:
            raise StoreDestroyedError(
                "Predictive cache has been destroyed",
                details={"operation": operation},
            )

    def register_loader(self, action: str, loader: Loader) -> None:
        self._loaders[action] = loader

    # -------------------------------------------------------------- recording

    def record_action(
        self,
        user_id: str,
        action: str,
        context: ActionContext | Mapping[str, Any] | None = None,
    ) -> UserActionRecord:
        """
        Append an action to the user's history and refresh their predictions.

        The model rebuild and prediction run before this returns; only the
        prefetch itself is asynchronous.
        """
        self._ensure_alive("record_action")
        if not user_id or not action:
            raise ValidationError(
                "user_id and action must be non-empty",
                details={"user_id": user_id, "action": action},
            )

        moment = self._clock()
        record = UserActionRecord(
            action=action,
            context=sanitize_context(context),
            timestamp=moment,
            time_of_day=get_time_of_day(moment),
            day_of_week=day_of_week(moment),
        )
        history = self._histories.get(user_id)
        if history is None:
            history = deque(maxlen=self.policy.max_pattern_history)
            self._histories[user_id] = history
        history.append(record)
        self._current_actions[user_id] = action

        self.update_prediction_model(user_id)
        self.generate_prediction(user_id)
        return record

    def get_history(self, user_id: str) -> list[UserActionRecord]:
        return list(self._histories.get(user_id, ()))

    def get_current_action(self, user_id: str) -> str | None:
        return self._current_actions.get(user_id)

    # ------------------------------------------------------------- modelling

    def update_prediction_model(self, user_id: str) -> dict[str, Prediction] | None:
        history = self._histories.get(user_id)
        if history is None or len(history) < MIN_HISTORY_FOR_MODEL:
            return None
        model = build_prediction_model(list(history))
        self._models[user_id] = model
        self._stats.predictions += 1
        logger.debug("Prediction model updated", user_id=user_id, patterns=len(model))
        return model

    def get_model(self, user_id: str) -> dict[str, Prediction]:
        return dict(self._models.get(user_id, {}))

    def predict(self, user_id: str, current_action: str | None = None) -> Prediction | None:
        """Model entry for the current action, regardless of confidence."""
        model = self._models.get(user_id)
        if not model:
            return None
        current = current_action or self._current_actions.get(user_id)
        if current is None:
            return None
        return model.get(current)

    def generate_prediction(self, user_id: str, current_action: str | None = None) -> PrefetchTask | None:
        """
        Queue a prefetch for the predicted next action if confident enough.

        `current_action` defaults to the user's most recently recorded action.
        """
        self._ensure_alive("generate_prediction")
        prediction = self.predict(user_id, current_action)
        if prediction is None or prediction.confidence < self.policy.prediction_threshold:
            return None
        self._stats.successful_predictions += 1
        return self.schedule_prefetch(prediction, user_id)

    # ------------------------------------------------------------- prefetching

    def schedule_prefetch(self, prediction: Prediction, user_id: str) -> PrefetchTask:
        """Queue a prefetch task. A task for the same key already queued is reused."""
        task = PrefetchTask(
            action=prediction.next_action,
            context=prediction.common_context,
            confidence=prediction.confidence,
            scheduled_at=self._clock(),
            user_id=user_id,
        )
        key = task.cache_key
        queued = self._pending.get(key)
        if queued is not None:
            return queued

        self._pending[key] = task
        heapq.heappush(self._queue, (-task.confidence, next(self._sequence), task))
        logger.debug(
            "Prefetch scheduled",
            user_id=user_id,
            action=task.action,
            confidence=round(task.confidence, 3),
        )
        self._ensure_drain_task()
        return task

    def _ensure_drain_task(self) -> asyncio.Task | None:
        if self._drain_task is not None and not self._drain_task.done():
            return self._drain_task
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Without a loop, tasks stay queued until drain() is awaited.
            return None
        self._drain_task = loop.create_task(self._drain_loop(), name="predictive-prefetch")
        return self._drain_task

    async def _drain_loop(self) -> None:
        while self._queue and not self._destroyed:
            await asyncio.sleep(self.policy.preload_delay)
            if self._destroyed:
                break
            batch: list[PrefetchTask] = []
            while self._queue and len(batch) < self.policy.max_preload_concurrency:
                _, _, task = heapq.heappop(self._queue)
                batch.append(task)
            await asyncio.gather(*(self._run_tracked(task) for task in batch))

    async def _run_tracked(self, task: PrefetchTask) -> bool:
        current = asyncio.current_task()
        if current is not None:
            self._in_flight.add(current)
        try:
            return await self.execute_prefetch(task)
        finally:
            if current is not None:
                self._in_flight.discard(current)

    async def execute_prefetch(self, task: PrefetchTask) -> bool:
        """Load and store the data for one task. Returns True if an entry was written."""
        key = task.cache_key
        self._pending.pop(key, None)
        loader = self._loaders.get(task.action)
        if loader is None:
            logger.debug("No prefetch loader for action", action=task.action)
            return False

        try:
            data = await asyncio.wait_for(loader(task.context), timeout=self.policy.prefetch_timeout)
            if data is None:
                return False
            if self._destroyed or self._writer.is_destroyed:
                logger.debug("Skipping prefetch write after destroy", key=key)
                return False
            self._writer.set(
                key,
                data,
                ttl=get_preload_ttl(task.action),
                priority=round(task.confidence * 2),
            )
        except Exception as exc:
            error = wrap_prefetch_error(task.action, exc, cache_key=key, user_id=task.user_id)
            self._stats.failed_prefetches += 1
            logger.error("Prefetch task failed", action=task.action, key=key, error=str(error), exc_info=True)
            if self._event_bus is not None:
                self._event_bus.publish(CacheError(key=key, operation="prefetch", error=error))
            return False

        self._stats.preloaded_items += 1
        logger.debug("Prefetched data stored", key=key, action=task.action)
        return True

    async def drain(self) -> None:
        """Run the queue to completion (mostly for callers without a long-lived loop)."""
        self._ensure_alive("drain")
        task = self._ensure_drain_task()
        if task is not None:
            await task

    def _on_cache_hit(self, event: CacheHit) -> None:
        if event.key.startswith(PREDICTIVE_KEY_PREFIX):
            self._stats.cache_hits_from_preload += 1

    # ----------------------------------------------------------------- stats

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def pending_tasks(self) -> list[PrefetchTask]:
        return [task for _, _, task in sorted(self._queue)]

    def get_stats(self) -> dict[str, Any]:
        stats = self._stats
        return {
            "predictions": stats.predictions,
            "successful_predictions": stats.successful_predictions,
            "preloaded_items": stats.preloaded_items,
            "cache_hits_from_preload": stats.cache_hits_from_preload,
            "failed_prefetches": stats.failed_prefetches,
            "success_rate": stats.successful_predictions / stats.predictions if stats.predictions else 0.0,
            "preload_efficiency": (
                stats.cache_hits_from_preload / stats.preloaded_items if stats.preloaded_items else 0.0
            ),
            "active_users": len(self._histories),
            "prediction_models": len(self._models),
            "queue_size": len(self._queue),
        }

    # ------------------------------------------------------------- lifecycle

    def clear(self) -> None:
        self._histories.clear()
        self._models.clear()
        self._current_actions.clear()
        self._queue.clear()
        self._pending.clear()
        self._stats = PrefetchStats()
        logger.info("Predictive cache cleared")

    def destroy(self) -> None:
        """Abandon queued work, cancel in-flight tasks and drop all state."""
        if self._destroyed:
            return
        self._destroyed = True
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None
        for task in list(self._in_flight):
            task.cancel()
        self._in_flight.clear()
        if self._event_bus is not None:
            self._event_bus.unsubscribe(CacheEventKind.HIT, self._on_cache_hit)
        self.clear()
        logger.info("Predictive cache destroyed")