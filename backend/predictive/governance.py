"""
Model Governance — access checks and model health lifecycle.

Health transitions:
  healthy ──(mape_delta > threshold)──▶ degrading ──schedule_retraining──▶ retraining
  retraining ──complete_retraining(new_version)──▶ healthy (new version active)

Governance wraps model access with the security wrapper's role check; it does
not replace the serving orchestrator's own cache/fallback policy.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

import structlog

from core.events import (
    EventBus,
    ModelPerformanceDegraded,
    RetrainingCompleted,
    RetrainingScheduled,
)
from core.security import SecurityWrapper
from predictive.models_hub import ModelsHub

logger = structlog.get_logger()

GovernanceState = Literal["healthy", "degrading", "retraining"]


class Governance:
    def __init__(
        self,
        bus: EventBus,
        hub: ModelsHub,
        security: SecurityWrapper,
        decay_threshold: float = 0.25,
    ):
        self.bus = bus
        self.hub = hub
        self.security = security
        self.decay_threshold = decay_threshold
        self.state: GovernanceState = "healthy"
        self.last_mape_delta: float | None = None
        self.retraining_reason: str | None = None
        self.history: list[dict[str, Any]] = []

    def guarded_forecast(self, role: str | None = None) -> str:
        """Check ``role`` against the active model; returns the version it may use."""
        version = self.hub.active_version
        self.security.enforce_access(version, role)
        return version

    def update_performance(self, mape_delta: float) -> GovernanceState:
        self.last_mape_delta = float(mape_delta)
        if mape_delta > self.decay_threshold and self.state == "healthy":
            self.state = "degrading"
            self.hub.performance.health = "degrading"
            self.hub.performance.updated_at = datetime.now(timezone.utc)
            logger.warning(
                "governance.performance_degraded",
                mape_delta=round(mape_delta, 4),
                threshold=self.decay_threshold,
                model_version=self.hub.active_version,
            )
            self.bus.publish(ModelPerformanceDegraded(mape_delta=float(mape_delta), threshold=self.decay_threshold))
        return self.state

    def schedule_retraining(self, reason: str) -> bool:
        """Returns False when a retraining cycle is already in progress."""
        if self.state == "retraining":
            return False
        self.state = "retraining"
        self.retraining_reason = reason
        self._record("retraining_scheduled", reason=reason)
        logger.info("governance.retraining_scheduled", reason=reason, model_version=self.hub.active_version)
        self.bus.publish(RetrainingScheduled(reason=reason, model_version=self.hub.active_version))
        return True

    def complete_retraining(self, new_version: str, metrics: dict[str, float] | None = None) -> str:
        old_version = self.hub.promote(new_version, metrics)
        self.state = "healthy"
        self.retraining_reason = None
        self.last_mape_delta = None
        self._record("retraining_completed", old_version=old_version, new_version=new_version)
        logger.info("governance.retraining_completed", old_version=old_version, new_version=new_version)
        self.bus.publish(
            RetrainingCompleted(old_version=old_version, new_version=new_version, metrics=dict(metrics or {}))
        )
        return old_version

    def _record(self, action: str, **details: Any) -> None:
        self.history.append({"action": action, "at": datetime.now(timezone.utc).isoformat(), **details})

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "active_version": self.hub.active_version,
            "shadow_version": self.hub.shadow_version,
            "decay_threshold": self.decay_threshold,
            "last_mape_delta": self.last_mape_delta,
            "retraining_reason": self.retraining_reason,
            "history": list(self.history[-10:]),
        }
