"""
Policy evaluation — metric sources, scenario-weighted scoring and risk.

Metric sources map (decision, scenario factors) to a business outcome:

    revenue_uplift    = baseline_revenue × demand × response(investment, discount)
    response          = 0.30·(1 − e^(−2.5·inv)) + 0.12·(1 − e^(−4·disc)) − 0.08·disc
    operational_cost  = 80 000 × unit_cost × (inv^1.5 + 0.5·disc) × (1 + 0.5·volatility·inv)

Per-scenario score s = Σ_obj weight × direction × transform(metric) / scale,
where scale is the baseline revenue for revenue metrics and the cost base
otherwise, so objectives are commensurate regardless of revenue magnitude.

Candidate summary over scenario weights w:
    expected      E = Σ w·s
    aggregate     E − SOFT violation energy
    robustness    1 / (1 + σ_w(s) / (|E| + ε))          ∈ (0, 1]
    tail_gap      E − CVaR₁₀%(s)                         ≥ 0
    sensitivity   |weighted Pearson r(factor, s)| per factor
Feasibility is judged on expected metrics: no HARD constraint violated.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

import numpy as np

from prescriptive.constraints import ConstraintManager
from prescriptive.objectives import apply_transform
from prescriptive.types import (
    DECISION_DIMENSIONS,
    DecisionVector,
    ObjectiveSpec,
    PolicyCandidate,
    ScenarioInstance,
)

DEFAULT_BASELINE_REVENUE = 100_000.0
COST_BASE = 80_000.0
CVAR_ALPHA = 0.10
_EPS = 1e-9

MetricFn = Callable[[Mapping[str, float], Mapping[str, float], "EvaluationContext"], float]


@dataclass(frozen=True)
class EvaluationContext:
    baseline_revenue: float = DEFAULT_BASELINE_REVENUE
    horizon: str = "P30D"


def revenue_uplift(decision: Mapping[str, float], factors: Mapping[str, float], ctx: EvaluationContext) -> float:
    inv = decision.get("investment", 0.0)
    disc = decision.get("discount", 0.0)
    response = 0.30 * (1 - math.exp(-2.5 * inv)) + 0.12 * (1 - math.exp(-4.0 * disc)) - 0.08 * disc
    return ctx.baseline_revenue * factors.get("demand", 1.0) * response


def operational_cost(decision: Mapping[str, float], factors: Mapping[str, float], ctx: EvaluationContext) -> float:
    inv = decision.get("investment", 0.0)
    disc = decision.get("discount", 0.0)
    effort = inv**1.5 + 0.5 * disc
    return COST_BASE * factors.get("unit_cost", 1.0) * effort * (1 + 0.5 * factors.get("volatility", 0.0) * inv)


METRIC_SOURCES: dict[str, MetricFn] = {
    "revenue_uplift": revenue_uplift,
    "operational_cost": operational_cost,
}


def metric_scale(source: str, ctx: EvaluationContext) -> float:
    if source.startswith("revenue"):
        return max(abs(ctx.baseline_revenue), 1.0)
    return COST_BASE


# ── Weighted statistics ────────────────────────────────────────────────────


def weighted_std(values: np.ndarray, weights: np.ndarray) -> float:
    mean = float(np.dot(weights, values))
    return math.sqrt(max(float(np.dot(weights, (values - mean) ** 2)), 0.0))


def weighted_cvar(values: np.ndarray, weights: np.ndarray, alpha: float = CVAR_ALPHA) -> float:
    """Weighted mean of the worst ``alpha`` share of outcomes (lower is worse)."""
    order = np.argsort(values, kind="stable")
    remaining = alpha
    total = 0.0
    for idx in order:
        take = min(weights[idx], remaining)
        total += take * values[idx]
        remaining -= take
        if remaining <= _EPS:
            break
    return total / (alpha - max(remaining, 0.0))


def weighted_abs_correlation(x: np.ndarray, y: np.ndarray, weights: np.ndarray) -> float:
    mx = float(np.dot(weights, x))
    my = float(np.dot(weights, y))
    cov = float(np.dot(weights, (x - mx) * (y - my)))
    var_x = float(np.dot(weights, (x - mx) ** 2))
    var_y = float(np.dot(weights, (y - my) ** 2))
    if var_x <= _EPS or var_y <= _EPS:
        return 0.0
    return min(abs(cov) / math.sqrt(var_x * var_y), 1.0)


# ── Evaluator ──────────────────────────────────────────────────────────────


@dataclass
class PolicyEvaluator:
    """Scores candidates for one run; stateless apart from its configuration."""

    objectives: list[ObjectiveSpec]
    constraints: ConstraintManager
    context: EvaluationContext = field(default_factory=EvaluationContext)
    metric_sources: dict[str, MetricFn] = field(default_factory=lambda: dict(METRIC_SOURCES))
    dimensions: tuple[str, ...] = DECISION_DIMENSIONS
    # objective id -> metric source, for constraints on objectives not taking part in this run
    constraint_aliases: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        sources = {o.metric_source for o in self.objectives} | set(self.constraint_aliases.values())
        missing = sorted(sources - set(self.metric_sources))
        if missing:
            raise ValueError(f"Unknown metric sources: {missing}")

    def evaluate_scenario(self, decision: DecisionVector, scenario: ScenarioInstance) -> dict[str, float]:
        named = decision.named(self.dimensions)
        return {name: fn(named, scenario.factors, self.context) for name, fn in self.metric_sources.items()}

    def score(self, metrics: Mapping[str, float]) -> float:
        return sum(
            obj.weight
            * obj.direction
            * apply_transform(obj.transform, metrics[obj.metric_source])
            / metric_scale(obj.metric_source, self.context)
            for obj in self.objectives
        )

    def summarize(
        self,
        policy_id: str,
        index: int,
        decision: DecisionVector,
        scenarios: tuple[ScenarioInstance, ...],
        per_scenario: list[dict[str, float]],
        iteration: int = 0,
    ) -> PolicyCandidate:
        weights = np.array([s.weight for s in scenarios], dtype=float)
        weights = weights / weights.sum()
        scores = np.array([self.score(m) for m in per_scenario], dtype=float)

        expected_metrics = {
            name: float(np.dot(weights, [m[name] for m in per_scenario])) for name in self.metric_sources
        }
        score_vector = {obj.id: expected_metrics[obj.metric_source] for obj in self.objectives}

        aliased = {alias: expected_metrics[source] for alias, source in self.constraint_aliases.items()}
        values: dict[str, float] = {**expected_metrics, **aliased, **score_vector, **decision.named(self.dimensions)}
        evaluation = self.constraints.evaluate(values)

        expected = float(np.dot(weights, scores))
        robustness = 1.0 / (1.0 + weighted_std(scores, weights) / (abs(expected) + _EPS))
        tail_gap = max(expected - weighted_cvar(scores, weights), 0.0)

        factor_names = sorted({name for s in scenarios for name in s.factors})
        sensitivity = {
            name: round(
                weighted_abs_correlation(
                    np.array([s.factors.get(name, 0.0) for s in scenarios], dtype=float), scores, weights
                ),
                6,
            )
            for name in factor_names
        }

        return PolicyCandidate(
            policy_id=policy_id,
            decision=decision,
            score_vector=score_vector,
            aggregate_score=expected - evaluation.violation_energy,
            feasibility=evaluation.feasible,
            index=index,
            robustness=robustness,
            sensitivity_map=sensitivity,
            constraint_slack=dict(evaluation.slack),
            hard_violations=tuple(evaluation.hard_violations),
            violation_energy=evaluation.violation_energy,
            expected_score=expected,
            tail_gap=tail_gap,
            iteration=iteration,
        )
