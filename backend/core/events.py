"""
Typed in-process event bus.

Components publish frozen event dataclasses; subscribers register per event
type. Publishing is fire-and-forget: when an event loop is running, every
delivery is scheduled as its own task so a slow or failing consumer never
blocks (or breaks) the publisher. Without a running loop (scripts, worker
threads) handlers are invoked inline, still isolated from each other.

Event topics:
    INGESTION_COMPLETED, DATA_QUALITY_ISSUE, FEATURES_UPDATED, FEATURE_DRIFT_DETECTED,
    NEW_FORECAST_PUBLISHED, PREDICTION_SERVED, MODEL_PERFORMANCE_DEGRADED,
    RETRAIN_TRIGGERED, RETRAINING_SCHEDULED, RETRAINING_COMPLETED,
    FORECAST_EXPORTED, DECISION_EXPORTED, SCENARIO_SET_GENERATED,
    GUARDRAIL_VIOLATION, PRESCRIPTION_COMPLETED, SYSTEM_READY
"""

from __future__ import annotations

import asyncio
import inspect
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar

import structlog

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Event types ───────────────────────────────────────────────────────────


@dataclass(frozen=True, kw_only=True)
class Event:
    topic: ClassVar[str] = "EVENT"
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, kw_only=True)
class SystemReady(Event):
    topic: ClassVar[str] = "SYSTEM_READY"
    engine: str
    components: tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class IngestionCompleted(Event):
    topic: ClassVar[str] = "INGESTION_COMPLETED"
    batch_id: str
    accepted: int
    dropped: int


@dataclass(frozen=True, kw_only=True)
class DataQualityIssue(Event):
    topic: ClassVar[str] = "DATA_QUALITY_ISSUE"
    batch_id: str
    count: int
    threshold: float


@dataclass(frozen=True, kw_only=True)
class FeaturesUpdated(Event):
    topic: ClassVar[str] = "FEATURES_UPDATED"
    size: int


@dataclass(frozen=True, kw_only=True)
class FeatureDriftDetected(Event):
    topic: ClassVar[str] = "FEATURE_DRIFT_DETECTED"
    feature: str
    kpi: str
    status: str
    psi: float
    ks_pvalue: float | None


@dataclass(frozen=True, kw_only=True)
class NewForecastPublished(Event):
    topic: ClassVar[str] = "NEW_FORECAST_PUBLISHED"
    forecast: Any


@dataclass(frozen=True, kw_only=True)
class PredictionServed(Event):
    topic: ClassVar[str] = "PREDICTION_SERVED"
    request_id: str
    model_version: str
    latency_ms: float
    cache_hit: bool
    degraded: bool = False


@dataclass(frozen=True, kw_only=True)
class ModelPerformanceDegraded(Event):
    topic: ClassVar[str] = "MODEL_PERFORMANCE_DEGRADED"
    mape_delta: float
    threshold: float


@dataclass(frozen=True, kw_only=True)
class RetrainTriggered(Event):
    topic: ClassVar[str] = "RETRAIN_TRIGGERED"
    kpi: str
    rolling_mape: float
    threshold: float


@dataclass(frozen=True, kw_only=True)
class RetrainingScheduled(Event):
    topic: ClassVar[str] = "RETRAINING_SCHEDULED"
    reason: str
    model_version: str


@dataclass(frozen=True, kw_only=True)
class RetrainingCompleted(Event):
    topic: ClassVar[str] = "RETRAINING_COMPLETED"
    old_version: str
    new_version: str
    metrics: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class ForecastExported(Event):
    topic: ClassVar[str] = "FORECAST_EXPORTED"
    payload: dict[str, Any]


@dataclass(frozen=True, kw_only=True)
class DecisionExported(Event):
    topic: ClassVar[str] = "DECISION_EXPORTED"
    payload: dict[str, Any]


@dataclass(frozen=True, kw_only=True)
class ScenarioSetGenerated(Event):
    topic: ClassVar[str] = "SCENARIO_SET_GENERATED"
    scenario_set_id: str
    size: int
    coverage_estimate: float
    tail_augmented: bool


@dataclass(frozen=True, kw_only=True)
class GuardrailViolation(Event):
    topic: ClassVar[str] = "GUARDRAIL_VIOLATION"
    policy_id: str
    reasons: tuple[str, ...]


@dataclass(frozen=True, kw_only=True)
class PrescriptionCompleted(Event):
    topic: ClassVar[str] = "PRESCRIPTION_COMPLETED"
    request_id: str
    run_id: str
    best_policy_id: str | None
    frontier_size: int


# ── Bus ───────────────────────────────────────────────────────────────────

Handler = Callable[[Any], Any]


class EventBus:
    """Publish-and-forget pub/sub keyed by event class (subclasses match too)."""

    def __init__(self, history_size: int = 500):
        self._subscribers: dict[type[Event], list[Handler]] = {}
        self._history: deque[Event] = deque(maxlen=history_size)
        self._counts: Counter[str] = Counter()
        self._pending: set[asyncio.Task] = set()
        self._handler_failures = 0

    def subscribe(self, event_type: type[Event], handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it again."""
        handlers = self._subscribers.setdefault(event_type, [])
        handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        self._history.append(event)
        self._counts[event.topic] += 1

        handlers = [
            handler
            for event_type, registered in self._subscribers.items()
            if isinstance(event, event_type)
            for handler in list(registered)
        ]
        if not handlers:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for handler in handlers:
            if loop is None:
                self._deliver_inline(handler, event)
                continue
            task = loop.create_task(self._deliver(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, handler: Handler, event: Event) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self._record_failure(handler, event, exc)

    def _deliver_inline(self, handler: Handler, event: Event) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                asyncio.run(result)
        except Exception as exc:
            self._record_failure(handler, event, exc)

    def _record_failure(self, handler: Handler, event: Event, exc: Exception) -> None:
        self._handler_failures += 1
        logger.warning(
            "event_bus.handler_failed",
            topic=event.topic,
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )

    async def drain(self) -> None:
        """Wait until every scheduled delivery (including cascades) has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def recent(self, topic: str | None = None, limit: int | None = None) -> list[Event]:
        events = [e for e in self._history if topic is None or e.topic == topic]
        if limit is not None:
            events = events[-limit:]
        return events

    def count(self, topic: str) -> int:
        return self._counts.get(topic, 0)

    def get_metrics(self) -> dict[str, Any]:
        return {
            "published": dict(self._counts),
            "pending_deliveries": len(self._pending),
            "handler_failures": self._handler_failures,
        }
