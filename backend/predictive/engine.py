"""
Predictive Analytics & Forecasting Engine (PAFE) — top-level orchestrator.

Pipeline:
    ingest → feature store → models hub → governance → serving (cache/fallback)
           → NewForecastPublished → insight synthesis + integration bridge

Construct once at process start and pass the instance to consumers; every
sub-component shares the injected event bus.
"""

from __future__ import annotations

from typing import Any

import structlog

from core.config import Settings, get_settings
from core.errors import EngineNotInitializedError
from core.events import EventBus, NewForecastPublished, RetrainTriggered, SystemReady
from core.security import SecurityWrapper
from predictive.drift import DriftThresholds
from predictive.feature_store import FeatureDefinition, FeatureStore, raw_lineage
from predictive.governance import Governance
from predictive.ingestion import DataIngestion
from predictive.insight import AccuracyReport, InsightSynthesis
from predictive.integration_bridge import IntegrationBridge
from predictive.models_hub import ForecastResult, ModelsHub, horizon_days
from predictive.serving import ServingOrchestrator

logger = structlog.get_logger()


class PredictiveEngine:
    """Wires ingestion, features, models, governance, serving and feedback."""

    def __init__(
        self,
        bus: EventBus | None = None,
        settings: Settings | None = None,
        security: SecurityWrapper | None = None,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.bus = bus or EventBus(history_size=settings.event_history_size)
        self.security = security or SecurityWrapper(salt=settings.redaction_salt)

        self.feature_store = FeatureStore(
            self.bus,
            thresholds=DriftThresholds(
                psi_warning=settings.drift_psi_warning,
                psi_drifted=settings.drift_psi_drifted,
                ks_pvalue=settings.drift_ks_pvalue,
                min_samples=settings.drift_min_samples,
            ),
        )
        self.ingestion = DataIngestion(self.bus, self.feature_store, sources=settings.ingestion_sources)
        self.models_hub = ModelsHub(self.bus, self.feature_store, active_version=settings.forecast_model_version)
        self.governance = Governance(
            self.bus, self.models_hub, self.security, decay_threshold=settings.decay_mape_threshold
        )
        self.serving = ServingOrchestrator(
            self.bus,
            ttl_seconds=settings.serving_cache_ttl_seconds,
            latency_budget_seconds=settings.serving_latency_budget_seconds,
            latency_window=settings.serving_latency_window,
        )
        self.insight = InsightSynthesis(
            self.bus,
            decay_threshold=settings.decay_mape_threshold,
            window=settings.decay_window,
            min_samples=settings.decay_min_samples,
        )
        self.bridge = IntegrationBridge(self.bus, self.security)
        self.initialized = False
        self._log = logger.bind(engine="pafe")

    def initialize(self) -> None:
        """Idempotent; repeated calls are no-ops."""
        if self.initialized:
            return
        self.feature_store.register_feature(
            FeatureDefinition(
                name="avg_revenue",
                version="1.0.0",
                source="batch",
                transformation="mean(batch_window)",
                lineage=(raw_lineage("revenue"),),
            )
        )
        self.bus.subscribe(NewForecastPublished, self.insight.on_forecast_published)
        self.bus.subscribe(NewForecastPublished, self.bridge.on_forecast_published)
        self.bus.subscribe(RetrainTriggered, self._on_retrain_triggered)
        self.initialized = True

        components = ("ingestion", "feature_store", "models_hub", "governance", "serving", "insight", "bridge")
        self._log.info("pafe.initialized", components=list(components), model_version=self.models_hub.active_version)
        self.bus.publish(SystemReady(engine="pafe", components=components))

    def _require_initialized(self) -> None:
        if not self.initialized:
            raise EngineNotInitializedError("PredictiveEngine.initialize() must be called first")

    def _on_retrain_triggered(self, event: RetrainTriggered) -> None:
        self.governance.update_performance(event.rolling_mape)
        self.governance.schedule_retraining(
            f"rolling MAPE {event.rolling_mape:.3f} for {event.kpi} above {event.threshold:.2f}"
        )

    # ── Operations ───────────────────────────────────────────────────────

    def ingest(self, raw_records: list[dict[str, Any]]) -> dict[str, int]:
        self._require_initialized()
        self.ingestion.ingest_batch(raw_records)
        return {"accepted": self.ingestion.last_batch["accepted"], "dropped": self.ingestion.last_batch["dropped"]}

    async def generate_forecast(
        self,
        horizon: str,
        kpis: list[str],
        context: dict[str, Any] | None = None,
        role: str | None = None,
    ) -> ForecastResult:
        """Governed, cached forecast. Raises AccessDeniedError for guest roles."""
        self._require_initialized()
        horizon_days(horizon)
        if not kpis:
            raise ValueError("At least one KPI is required")
        self.governance.guarded_forecast(role)
        return await self.serving.serve_forecast(self.models_hub.generate_forecast, horizon, list(kpis), context)

    def ingest_actual(self, kpi: str, value: float) -> None:
        self.insight.ingest_actual(kpi, value)

    def compute_accuracy(self) -> AccuracyReport:
        report = self.insight.compute_accuracy()
        if report.mape is not None:
            self.models_hub.record_accuracy(report.horizon, report.mape)
        return report

    def get_status(self) -> dict[str, Any]:
        return {
            "engine": "pafe",
            "initialized": self.initialized,
            "ingestion": self.ingestion.get_status(),
            "feature_store": self.feature_store.get_status(),
            "drift": self.feature_store.drift_report(),
            "serving": self.serving.get_metrics(),
            "insight": self.insight.get_status(),
            "integration": self.bridge.get_metrics(),
            "governance": self.governance.get_status(),
            "security": self.security.get_status(),
            "models": self.models_hub.get_model_versions(),
            "model_performance": self.models_hub.get_model_performance(),
            "events": self.bus.get_metrics(),
        }
