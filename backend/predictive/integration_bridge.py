"""
Integration Bridge — outbound forecast/decision events for external consumers.

Payloads are redacted through the security wrapper, then published on the
bus as ForecastExported / DecisionExported. Publishing never waits on
consumers; metrics track publication counts and enqueue latency only,
never business content.
"""

from __future__ import annotations

import time
from collections import Counter
from datetime import datetime, timezone
from typing import Any

import structlog

from core.events import DecisionExported, EventBus, ForecastExported, NewForecastPublished
from core.security import SecurityWrapper
from predictive.models_hub import ForecastResult

logger = structlog.get_logger()


class IntegrationBridge:
    def __init__(self, bus: EventBus, security: SecurityWrapper):
        self.bus = bus
        self.security = security
        self._published: Counter[str] = Counter()
        self._failures = 0
        self._latency_total_ms = 0.0
        self._latency_max_ms = 0.0
        self.last_published_at: datetime | None = None

    def on_forecast_published(self, event: NewForecastPublished) -> None:
        self.publish_forecast(event.forecast)

    def publish_forecast(self, result: ForecastResult) -> bool:
        return self._publish("forecast", lambda: ForecastExported(payload=self.security.mask_sensitive(result.to_dict())))

    def publish_decision(self, response: Any) -> bool:
        def build() -> DecisionExported:
            payload = response.model_dump(mode="json") if hasattr(response, "model_dump") else dict(response)
            return DecisionExported(payload=self.security.mask_sensitive(payload))

        return self._publish("decision", build)

    def _publish(self, kind: str, build) -> bool:
        started = time.perf_counter()
        try:
            event = build()
            self.bus.publish(event)
        except Exception as exc:
            self._failures += 1
            logger.warning("integration_bridge.publish_failed", kind=kind, error=str(exc))
            return False

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self._published[kind] += 1
        self._latency_total_ms += elapsed_ms
        self._latency_max_ms = max(self._latency_max_ms, elapsed_ms)
        self.last_published_at = datetime.now(timezone.utc)
        logger.debug("integration_bridge.published", kind=kind, latency_ms=round(elapsed_ms, 3))
        return True

    def get_metrics(self) -> dict[str, Any]:
        total = sum(self._published.values())
        return {
            "published": {"forecast": self._published["forecast"], "decision": self._published["decision"]},
            "total_published": total,
            "failures": self._failures,
            "mean_latency_ms": round(self._latency_total_ms / total, 3) if total else 0.0,
            "max_latency_ms": round(self._latency_max_ms, 3),
            "last_published_at": self.last_published_at.isoformat() if self.last_published_at else None,
        }
