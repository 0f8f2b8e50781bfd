"""
Insight Synthesis — realized-vs-forecast accuracy and decay detection.

Accuracy for a KPI is the absolute percentage error between the latest
forecast's median and the mean of realized actuals:

    MAPE = |p50 − mean(actuals)| / |mean(actuals)|     (denominator 1 when the mean is 0)

The tracked KPI is the first KPI of the latest forecast. A tracked-KPI MAPE
enters the rolling window only when there is new evidence since the last
recorded one (a new forecast or a new actual for the tracked KPI), so
re-reading accuracy never counts twice. Once the window mean exceeds the
decay threshold a RetrainTriggered advisory is published, once per crossing.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import structlog

from core.events import EventBus, NewForecastPublished, RetrainTriggered
from predictive.models_hub import ForecastResult

logger = structlog.get_logger()


@dataclass(frozen=True)
class AccuracyReport:
    horizon: str | None
    mape: float | None
    kpi: str | None = None
    per_kpi: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"horizon": self.horizon, "mape": self.mape, "kpi": self.kpi, "per_kpi": dict(self.per_kpi)}


def absolute_percentage_error(p50: float, actuals: list[float]) -> float:
    mean_actual = float(np.mean(actuals))
    denominator = abs(mean_actual) or 1.0
    return abs(p50 - mean_actual) / denominator


class InsightSynthesis:
    def __init__(
        self,
        bus: EventBus,
        decay_threshold: float = 0.25,
        window: int = 5,
        min_samples: int = 3,
    ):
        self.bus = bus
        self.decay_threshold = decay_threshold
        self.min_samples = min_samples
        self.last_forecast: ForecastResult | None = None
        self._actuals: dict[str, list[float]] = {}
        self._rolling: deque[float] = deque(maxlen=window)
        self._decay_active = False
        # (forecast_id, tracked kpi, actuals count) behind the last recorded MAPE
        self._last_evidence: tuple[str, str, int] | None = None
        self.forecasts_processed = 0
        self.retrain_triggers = 0

    def on_forecast_published(self, event: NewForecastPublished) -> None:
        self.process_forecast(event.forecast)

    def process_forecast(self, result: ForecastResult) -> None:
        self.last_forecast = result
        self.forecasts_processed += 1
        logger.debug("insight.forecast_processed", forecast_id=result.forecast_id, kpis=len(result.kpis))

    def ingest_actual(self, kpi: str, value: float) -> None:
        self._actuals.setdefault(kpi, []).append(float(value))

    def compute_accuracy(self) -> AccuracyReport:
        """``mape`` is None until a forecast exists and its tracked KPI has actuals."""
        forecast = self.last_forecast
        if forecast is None or not forecast.kpis:
            return AccuracyReport(horizon=None, mape=None)

        per_kpi = {
            k.name: round(absolute_percentage_error(k.p50, self._actuals[k.name]), 6)
            for k in forecast.kpis
            if self._actuals.get(k.name)
        }
        tracked = forecast.kpis[0].name
        mape = per_kpi.get(tracked)
        evidence = (forecast.forecast_id, tracked, len(self._actuals.get(tracked, ())))
        if mape is not None and evidence != self._last_evidence:
            self._last_evidence = evidence
            self._record_mape(tracked, mape)
        return AccuracyReport(horizon=forecast.horizon, mape=mape, kpi=tracked, per_kpi=per_kpi)

    def _record_mape(self, kpi: str, mape: float) -> None:
        self._rolling.append(mape)
        rolling = self.rolling_mape()
        if rolling is None:
            return
        if rolling > self.decay_threshold:
            if not self._decay_active:
                self._decay_active = True
                self.retrain_triggers += 1
                logger.warning(
                    "insight.decay_detected",
                    kpi=kpi,
                    rolling_mape=round(rolling, 4),
                    threshold=self.decay_threshold,
                )
                self.bus.publish(RetrainTriggered(kpi=kpi, rolling_mape=rolling, threshold=self.decay_threshold))
        else:
            self._decay_active = False

    def rolling_mape(self) -> float | None:
        if len(self._rolling) < self.min_samples:
            return None
        return float(np.mean(self._rolling))

    def get_status(self) -> dict[str, Any]:
        return {
            "forecasts_processed": self.forecasts_processed,
            "last_forecast_id": self.last_forecast.forecast_id if self.last_forecast else None,
            "actuals": {kpi: len(values) for kpi, values in sorted(self._actuals.items())},
            "rolling_mape": self.rolling_mape(),
            "decay_active": self._decay_active,
            "retrain_triggers": self.retrain_triggers,
        }
