"""
Forecast Models Hub — versioned KPI forecasts with uncertainty bands.

Model (per KPI):
  1. Resample observation history to daily means.
  2. p50 = exponentially weighted level (α = 0.3) of the daily series.
  3. σ  = std of one-step-ahead residuals (daily − previous level),
          floored at 5% of |level| so short/flat histories still get a band.
  4. p10/p90 = p50 ∓ z₀.₉ × σ × √horizon_days

p50 does not depend on the horizon, so bands nest: P90D ⊇ P30D ⊇ P7D.
KPIs whose history never went negative clamp p10 at 0. A KPI with no history
is centred on the default baseline with a 25% relative sigma; its p10 is
clamped at 0 too unless the baseline itself is negative.

Performance metrics start empty and are filled from measured accuracy
(``record_accuracy``, keyed ``MAPE_<days>d``) or set on promotion.

Every ForecastResult is tagged with the model version active at generation
time and announced with NewForecastPublished.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

import pandas as pd
import structlog

from core.events import EventBus, NewForecastPublished
from predictive.feature_store import FeatureStore

logger = structlog.get_logger()

Horizon = Literal["P7D", "P30D", "P90D"]
HORIZON_DAYS: dict[str, int] = {"P7D": 7, "P30D": 30, "P90D": 90}

Z_90 = 1.2816  # one-sided z for the 10th/90th percentiles
EWMA_ALPHA = 0.3
MIN_RELATIVE_SIGMA = 0.05
MIN_ABSOLUTE_SIGMA = 1e-3
DEFAULT_BASELINE = 100.0
FALLBACK_RELATIVE_SIGMA = 0.25

ModelHealth = Literal["healthy", "degrading", "critical"]


def horizon_days(horizon: str) -> int:
    try:
        return HORIZON_DAYS[horizon]
    except KeyError:
        raise ValueError(f"Unsupported horizon {horizon!r}; expected one of {sorted(HORIZON_DAYS)}") from None


@dataclass(frozen=True)
class KpiForecast:
    name: str
    p10: float
    p50: float
    p90: float

    @property
    def band_width(self) -> float:
        return self.p90 - self.p10


@dataclass(frozen=True)
class ForecastResult:
    """Immutable forecast; ``degraded`` is only ever set on served copies."""

    forecast_id: str
    model_version: str
    horizon: str
    kpis: tuple[KpiForecast, ...]
    generated_at: datetime
    scenario_context_id: str | None = None
    degraded: bool = False

    def kpi(self, name: str) -> KpiForecast | None:
        return next((k for k in self.kpis if k.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["kpis"] = [asdict(k) for k in self.kpis]
        payload["generated_at"] = self.generated_at.isoformat()
        return payload


@dataclass
class ModelPerformance:
    model_id: str
    version: str
    metrics: dict[str, float] = field(default_factory=dict)
    health: ModelHealth = "healthy"
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def estimate_band(
    history: pd.Series,
    days: int,
    alpha: float = EWMA_ALPHA,
) -> tuple[float, float, float] | None:
    """Return (p10, p50, p90) for a KPI history, or None when there is no usable data."""
    if history.empty:
        return None

    daily = history.resample("1D").mean().dropna()
    if daily.empty:
        return None

    level = daily.ewm(alpha=alpha, adjust=False).mean()
    p50 = float(level.iloc[-1])

    residuals = (daily - level.shift(1)).dropna()
    sigma = float(residuals.std(ddof=1)) if len(residuals) >= 2 else 0.0
    if not math.isfinite(sigma):
        sigma = 0.0
    sigma = max(sigma, abs(p50) * MIN_RELATIVE_SIGMA, MIN_ABSOLUTE_SIGMA)

    half_width = Z_90 * sigma * math.sqrt(days)
    p10 = p50 - half_width
    p90 = p50 + half_width
    if float(history.min()) >= 0:
        p10 = max(p10, 0.0)
    return p10, p50, p90


class ModelsHub:
    """Forecast generation + model version bookkeeping."""

    def __init__(
        self,
        bus: EventBus,
        feature_store: FeatureStore,
        active_version: str = "1.0.0",
        default_baseline: float = DEFAULT_BASELINE,
    ):
        self.bus = bus
        self.feature_store = feature_store
        self.active_version = active_version
        self.shadow_version: str | None = None
        self.default_baseline = default_baseline
        self.generated_count = 0
        self.performance = ModelPerformance(
            model_id="core-forecast",
            version=active_version,
        )

    async def generate_forecast(
        self,
        horizon: str,
        kpis: list[str],
        context: dict[str, Any] | None = None,
    ) -> ForecastResult:
        days = horizon_days(horizon)
        version = self.active_version
        forecasts = tuple(self._forecast_kpi(name, days) for name in kpis)

        result = ForecastResult(
            forecast_id=f"fc_{uuid.uuid4().hex[:12]}",
            model_version=version,
            horizon=horizon,
            kpis=forecasts,
            generated_at=datetime.now(timezone.utc),
            scenario_context_id=(context or {}).get("scenario_context_id"),
        )
        self.generated_count += 1
        logger.info(
            "models_hub.forecast_generated",
            forecast_id=result.forecast_id,
            horizon=horizon,
            kpis=list(kpis),
            model_version=version,
        )
        self.bus.publish(NewForecastPublished(forecast=result))
        return result

    def _forecast_kpi(self, name: str, days: int) -> KpiForecast:
        band = estimate_band(self.feature_store.history(name), days)
        if band is None:
            logger.warning("models_hub.no_history", kpi=name, fallback_baseline=self.default_baseline)
            p50 = self.default_baseline
            half_width = Z_90 * max(abs(p50) * FALLBACK_RELATIVE_SIGMA, MIN_ABSOLUTE_SIGMA) * math.sqrt(days / 7)
            p10 = p50 - half_width
            if p50 >= 0:
                p10 = max(p10, 0.0)
            band = (p10, p50, p50 + half_width)
        p10, p50, p90 = band
        return KpiForecast(name=name, p10=round(p10, 4), p50=round(p50, 4), p90=round(p90, 4))

    # ── Versions ─────────────────────────────────────────────────────────

    def register_shadow(self, version: str) -> None:
        self.shadow_version = version
        logger.info("models_hub.shadow_registered", version=version)

    def promote(self, version: str, metrics: dict[str, float] | None = None) -> str:
        """Make ``version`` active; returns the version it replaced."""
        old = self.active_version
        self.active_version = version
        if self.shadow_version == version:
            self.shadow_version = None
        self.performance = ModelPerformance(
            model_id=self.performance.model_id,
            version=version,
            metrics=dict(metrics or {}),
        )
        logger.info("models_hub.version_promoted", old_version=old, new_version=version)
        return old

    def record_accuracy(self, horizon: str, mape: float) -> None:
        self.performance.metrics[f"MAPE_{horizon_days(horizon)}d"] = round(mape, 6)
        self.performance.updated_at = datetime.now(timezone.utc)

    def known_versions(self) -> set[str]:
        return {v for v in (self.active_version, self.shadow_version) if v}

    def get_model_versions(self) -> dict[str, str | None]:
        return {"active": self.active_version, "shadow": self.shadow_version}

    def get_model_performance(self) -> dict[str, Any]:
        perf = asdict(self.performance)
        perf["updated_at"] = self.performance.updated_at.isoformat()
        return perf
