"""
Tests for the forecast feedback loop: accuracy, decay, governance lifecycle,
and outbound exports through the integration bridge.
"""

from datetime import datetime, timezone

import pytest

from core.events import DecisionExported, ForecastExported, RetrainTriggered
from predictive.feature_store import FeatureStore
from predictive.governance import Governance
from predictive.insight import InsightSynthesis, absolute_percentage_error
from predictive.integration_bridge import IntegrationBridge
from predictive.models_hub import ForecastResult, KpiForecast, ModelsHub


def _forecast(p50=100.0, kpis=("revenue",), forecast_id="fc_feedback"):
    return ForecastResult(
        forecast_id=forecast_id,
        model_version="1.0.0",
        horizon="P7D",
        kpis=tuple(KpiForecast(name=k, p10=p50 * 0.9, p50=p50, p90=p50 * 1.1) for k in kpis),
        generated_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def governance(bus, security):
    return Governance(bus, ModelsHub(bus, FeatureStore(bus)), security, decay_threshold=0.25)


# ── Insight synthesis ────────────────────────────────────────────────────


class TestAccuracy:
    def test_mape_against_mean_of_actuals(self, bus):
        insight = InsightSynthesis(bus)
        insight.process_forecast(_forecast(p50=100.0))
        insight.ingest_actual("revenue", 90.0)
        insight.ingest_actual("revenue", 110.0)
        insight.ingest_actual("revenue", 200.0)

        report = insight.compute_accuracy()
        assert report.kpi == "revenue"
        assert report.horizon == "P7D"
        assert report.mape == pytest.approx(0.25)

    def test_no_forecast_or_no_actuals(self, bus):
        insight = InsightSynthesis(bus)
        assert insight.compute_accuracy().mape is None
        insight.process_forecast(_forecast())
        assert insight.compute_accuracy().mape is None
        assert insight.rolling_mape() is None

    def test_zero_mean_actuals_use_unit_denominator(self):
        assert absolute_percentage_error(3.0, [-1.0, 1.0]) == pytest.approx(3.0)

    def test_per_kpi_covers_secondary_kpis(self, bus):
        insight = InsightSynthesis(bus)
        insight.process_forecast(_forecast(kpis=("revenue", "orders")))
        insight.ingest_actual("orders", 50.0)
        report = insight.compute_accuracy()
        assert report.mape is None
        assert report.per_kpi == {"orders": pytest.approx(1.0)}


class TestDecayDetection:
    def test_retrain_triggered_once_per_crossing(self, bus):
        triggers = []
        bus.subscribe(RetrainTriggered, triggers.append)
        insight = InsightSynthesis(bus, decay_threshold=0.25, window=5, min_samples=3)
        insight.process_forecast(_forecast(p50=100.0))

        for _ in range(2):
            insight.ingest_actual("revenue", 200.0)
            insight.compute_accuracy()
        assert triggers == []

        for _ in range(2):
            insight.ingest_actual("revenue", 200.0)
            insight.compute_accuracy()
        assert len(triggers) == 1
        assert triggers[0].rolling_mape == pytest.approx(0.5)
        assert insight.get_status()["decay_active"] is True

    def test_repeated_reads_without_new_actuals_never_trigger(self, bus):
        triggers = []
        bus.subscribe(RetrainTriggered, triggers.append)
        insight = InsightSynthesis(bus, decay_threshold=0.25, window=5, min_samples=3)
        insight.process_forecast(_forecast(p50=100.0))
        insight.ingest_actual("revenue", 50.0)

        reports = [insight.compute_accuracy() for _ in range(5)]

        assert [r.mape for r in reports] == [pytest.approx(1.0)] * 5
        assert triggers == []
        assert insight.rolling_mape() is None

    def test_new_forecast_counts_as_new_evidence(self, bus):
        insight = InsightSynthesis(bus, decay_threshold=0.25, window=5, min_samples=2)
        insight.ingest_actual("revenue", 200.0)
        insight.process_forecast(_forecast(p50=100.0))
        insight.compute_accuracy()
        insight.compute_accuracy()
        assert insight.rolling_mape() is None

        insight.process_forecast(_forecast(p50=100.0, forecast_id="fc_feedback_2"))
        insight.compute_accuracy()
        assert insight.rolling_mape() == pytest.approx(0.5)

    def test_recovery_rearms_the_trigger(self, bus):
        insight = InsightSynthesis(bus, decay_threshold=0.25, window=3, min_samples=3)
        insight._record_mape("revenue", 0.6)
        insight._record_mape("revenue", 0.6)
        insight._record_mape("revenue", 0.6)
        for _ in range(3):
            insight._record_mape("revenue", 0.0)
        assert insight.get_status()["decay_active"] is False
        for _ in range(3):
            insight._record_mape("revenue", 0.9)
        assert insight.retrain_triggers == 2


# ── Governance ───────────────────────────────────────────────────────────


class TestGovernance:
    def test_degradation_is_reported_once(self, governance, bus):
        assert governance.update_performance(0.1) == "healthy"
        assert governance.update_performance(0.3) == "degrading"
        assert governance.update_performance(0.4) == "degrading"
        assert bus.count("MODEL_PERFORMANCE_DEGRADED") == 1
        assert governance.hub.performance.health == "degrading"

    def test_retraining_lifecycle(self, governance, bus):
        assert governance.schedule_retraining("drift") is True
        assert governance.schedule_retraining("drift again") is False
        assert governance.state == "retraining"

        old = governance.complete_retraining("1.1.0", {"MAPE_7d": 0.05})
        assert old == "1.0.0"
        assert governance.state == "healthy"
        assert governance.hub.active_version == "1.1.0"
        completed = bus.recent("RETRAINING_COMPLETED")[-1]
        assert (completed.old_version, completed.new_version) == ("1.0.0", "1.1.0")
        assert [h["action"] for h in governance.get_status()["history"]] == [
            "retraining_scheduled",
            "retraining_completed",
        ]

    def test_guarded_forecast_returns_active_version(self, governance):
        assert governance.guarded_forecast("analyst") == "1.0.0"


# ── Integration bridge ───────────────────────────────────────────────────


class TestIntegrationBridge:
    def test_forecast_export(self, bus, security):
        exported = []
        bus.subscribe(ForecastExported, exported.append)
        bridge = IntegrationBridge(bus, security)

        assert bridge.publish_forecast(_forecast()) is True
        assert exported[0].payload["forecast_id"] == "fc_feedback"
        assert exported[0].payload["kpis"][0]["name"] == "revenue"
        assert bridge.get_metrics()["published"] == {"forecast": 1, "decision": 0}

    def test_decision_payload_is_redacted(self, bus, security):
        exported = []
        bus.subscribe(DecisionExported, exported.append)
        bridge = IntegrationBridge(bus, security)

        bridge.publish_decision({"request_id": "rx_1", "context": {"email": "ops@example.com", "api_key": "k"}})

        context = exported[0].payload["context"]
        assert context["email"].startswith("anon:")
        assert context["api_key"] == "[REDACTED]"

    def test_failures_are_counted_not_raised(self, bus, security):
        bridge = IntegrationBridge(bus, security)
        assert bridge.publish_decision(object()) is False
        metrics = bridge.get_metrics()
        assert metrics["failures"] == 1
        assert metrics["total_published"] == 0
