"""
Scenario sandbox — weighted, stratified scenario sets for robust evaluation.

Each scenario draws three factors:

    demand      multiplier on baseline demand (centred on 1.0, or on the
                forecast band ratios p10/p50 and p90/p50 when a forecast is known)
    unit_cost   multiplier on unit operating cost
    volatility  execution volatility in [0, 1)

Sampling is a Latin hypercube in the unit cube (one stratum per scenario per
factor, independently permuted) mapped through the strategy's inverse CDF:

    triangular  scipy.stats.triang over (low, mode, high)
    normal      scipy.stats.norm, truncated to the factor's admissible range
    uniform     linear over (low, high)

Factor spreads widen with √(horizon_days / 7). For sample counts ≥ 10 the
set is tail-augmented: max(1, round(0.1·n)) stress scenarios (low demand,
high cost, high volatility at the ~2nd/98th percentiles) share 10% of the
total weight; the remaining 90% is split evenly over the regular draws.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, replace

import numpy as np
import structlog
from scipy.stats import norm, triang

from predictive.models_hub import horizon_days
from prescriptive.types import ScenarioInstance, ScenarioSet

logger = structlog.get_logger()

STRATEGIES = ("triangular", "normal", "uniform")
DEFAULT_STRATEGY = "triangular"

STRESS_MIN_SAMPLES = 10
STRESS_FRACTION = 0.1
STRESS_WEIGHT = 0.1
COVERAGE_BINS = 3

_Z_90 = 1.2816
_NORMAL_TAIL_SIGMAS = 4.0


@dataclass(frozen=True)
class FactorRange:
    low: float
    mode: float
    high: float
    floor: float = 0.0

    def widened(self, factor: float) -> FactorRange:
        return replace(
            self,
            low=max(self.floor, self.mode - (self.mode - self.low) * factor),
            high=self.mode + (self.high - self.mode) * factor,
        )


BASE_FACTORS: dict[str, FactorRange] = {
    "demand": FactorRange(low=0.85, mode=1.0, high=1.15, floor=0.05),
    "unit_cost": FactorRange(low=0.92, mode=1.0, high=1.12, floor=0.05),
    "volatility": FactorRange(low=0.05, mode=0.15, high=0.35, floor=0.0),
}
FACTOR_NAMES = tuple(BASE_FACTORS)

# Direction of the adverse tail per factor: demand hurts low, cost/volatility hurt high
_ADVERSE_UPPER = {"demand": False, "unit_cost": True, "volatility": True}


def inverse_cdf(strategy: str, u: np.ndarray, bounds: FactorRange) -> np.ndarray:
    low, mode, high = bounds.low, bounds.mode, bounds.high
    width = high - low
    if strategy == "uniform":
        return low + u * width
    if strategy == "normal":
        sigma = width / (2 * _Z_90)
        lo = max(bounds.floor, mode - _NORMAL_TAIL_SIGMAS * sigma)
        hi = mode + _NORMAL_TAIL_SIGMAS * sigma
        p_lo, p_hi = norm.cdf([(lo - mode) / sigma, (hi - mode) / sigma])
        return mode + sigma * norm.ppf(p_lo + u * (p_hi - p_lo))
    c = (mode - low) / width
    return triang.ppf(u, c, loc=low, scale=width)


def latin_hypercube(n: int, d: int, rng: np.random.Generator) -> np.ndarray:
    """(n, d) points in [0, 1): exactly one point per 1/n stratum on every axis."""
    strata = np.column_stack([rng.permutation(n) for _ in range(d)])
    return (strata + rng.random((n, d))) / n


def coverage_estimate(unit_points: np.ndarray, bins: int = COVERAGE_BINS) -> float:
    """Share of the bins^d grid cells over the unit cube that hold at least one point."""
    if unit_points.size == 0:
        return 0.0
    cells = np.clip((unit_points * bins).astype(int), 0, bins - 1)
    occupied = len({tuple(row) for row in cells})
    return occupied / bins ** unit_points.shape[1]


def stress_count(samples: int) -> int:
    if samples < STRESS_MIN_SAMPLES:
        return 0
    return max(1, round(STRESS_FRACTION * samples))


class ScenarioSandbox:
    def __init__(self, seed: int | None = None, rng: np.random.Generator | None = None):
        self._rng = rng if rng is not None else np.random.default_rng(seed)
        self.generated_sets = 0

    def factor_ranges(
        self,
        horizon: str,
        demand_band: tuple[float, float, float] | None = None,
    ) -> dict[str, FactorRange]:
        widen = math.sqrt(horizon_days(horizon) / 7)
        ranges = {name: base.widened(widen) for name, base in BASE_FACTORS.items()}
        if demand_band is not None:
            low, mode, high = demand_band
            if 0 < low < mode < high:
                ranges["demand"] = FactorRange(low=low, mode=mode, high=high, floor=BASE_FACTORS["demand"].floor)
        return ranges

    def generate(
        self,
        horizon: str,
        strategy: str = DEFAULT_STRATEGY,
        sample_count: int = 50,
        demand_band: tuple[float, float, float] | None = None,
    ) -> ScenarioSet:
        if sample_count < 1:
            raise ValueError("sample_count must be >= 1")
        if strategy not in STRATEGIES:
            logger.warning("scenarios.unknown_strategy", strategy=strategy, fallback=DEFAULT_STRATEGY)
            strategy = DEFAULT_STRATEGY

        ranges = self.factor_ranges(horizon, demand_band)
        n_stress = stress_count(sample_count)
        n_regular = sample_count - n_stress

        unit = latin_hypercube(n_regular, len(FACTOR_NAMES), self._rng)
        if n_stress:
            tail_q = np.linspace(0.01, 0.03, n_stress) if n_stress > 1 else np.array([0.02])
            stress_unit = np.column_stack(
                [1.0 - tail_q if _ADVERSE_UPPER[name] else tail_q for name in FACTOR_NAMES]
            )
            unit = np.vstack([unit, stress_unit])

        values = np.column_stack(
            [inverse_cdf(strategy, unit[:, j], ranges[name]) for j, name in enumerate(FACTOR_NAMES)]
        )

        weights = np.full(sample_count, 1.0 / sample_count)
        if n_stress:
            weights[:n_regular] = (1.0 - STRESS_WEIGHT) / n_regular
            weights[n_regular:] = STRESS_WEIGHT / n_stress
        weights = weights / weights.sum()

        set_id = f"scn_{uuid.uuid4().hex[:12]}"
        scenarios = tuple(
            ScenarioInstance(
                id=f"{set_id}_{i:03d}",
                factors={name: round(float(values[i, j]), 6) for j, name in enumerate(FACTOR_NAMES)},
                weight=float(weights[i]),
                is_stress=i >= n_regular,
            )
            for i in range(sample_count)
        )
        coverage = coverage_estimate(unit)
        self.generated_sets += 1
        logger.info(
            "scenarios.generated",
            scenario_set_id=set_id,
            horizon=horizon,
            strategy=strategy,
            size=sample_count,
            stress=n_stress,
            coverage=round(coverage, 4),
        )
        return ScenarioSet(
            id=set_id,
            horizon=horizon,
            strategy=strategy,
            scenarios=scenarios,
            coverage_estimate=coverage,
            tail_augmented=n_stress > 0,
        )
