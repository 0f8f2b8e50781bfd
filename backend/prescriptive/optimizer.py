"""
Optimization Core — bounded stochastic search over the decision space.

Search schedule (all dimensions in [0, 1]):
  iteration 0       Latin-hypercube batch of ``batch_size`` candidates
  iteration k ≥ 1   half exploration (uniform draws), half Gaussian
                    perturbation of the incumbent, step = initial_step × decay^k

Every candidate is evaluated on every scenario. The (candidate × scenario)
pairs of a batch fan out over a thread pool; ``executor.map`` returns results
in submission order, so aggregation never depends on completion order.

Best = highest aggregate score among feasible candidates (guardrail FAIL
excluded), ties → higher robustness → earliest generated.
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol

import numpy as np
import structlog

from prescriptive.scenarios import latin_hypercube
from prescriptive.types import DECISION_DIMENSIONS, DecisionVector, PolicyCandidate, ScenarioInstance, ScenarioSet

logger = structlog.get_logger()


class CandidateEvaluator(Protocol):
    def evaluate_scenario(self, decision: DecisionVector, scenario: ScenarioInstance) -> dict[str, float]: ...

    def summarize(
        self,
        policy_id: str,
        index: int,
        decision: DecisionVector,
        scenarios: tuple[ScenarioInstance, ...],
        per_scenario: list[dict[str, float]],
        iteration: int = 0,
    ) -> PolicyCandidate: ...


@dataclass
class OptimizationResult:
    best: PolicyCandidate | None
    candidates: list[PolicyCandidate]
    iterations: int
    evaluations: int


def rank_key(candidate: PolicyCandidate) -> tuple[float, float, int]:
    robustness = candidate.robustness if candidate.robustness is not None else 0.0
    return candidate.aggregate_score, robustness, -candidate.index


def select_best(candidates: list[PolicyCandidate]) -> PolicyCandidate | None:
    eligible = [c for c in candidates if c.selectable and np.isfinite(c.aggregate_score)]
    if not eligible:
        return None
    return max(eligible, key=rank_key)


class OptimizationCore:
    def __init__(
        self,
        max_iterations: int = 30,
        batch_size: int = 4,
        max_workers: int = 0,
        dimensions: tuple[str, ...] = DECISION_DIMENSIONS,
        seed: int | None = None,
        rng: np.random.Generator | None = None,
        initial_step: float = 0.25,
        step_decay: float = 0.85,
    ):
        if max_iterations < 1 or batch_size < 1:
            raise ValueError("max_iterations and batch_size must be >= 1")
        self.max_iterations = max_iterations
        self.batch_size = batch_size
        self.max_workers = max_workers or (os.cpu_count() or 1)
        self.dimensions = dimensions
        self.initial_step = initial_step
        self.step_decay = step_decay
        self._rng = rng if rng is not None else np.random.default_rng(seed)

    def run(
        self, scenario_set: ScenarioSet, evaluator: CandidateEvaluator, meta: dict[str, Any] | None = None
    ) -> OptimizationResult:
        """``meta`` is attached to every proposed decision (e.g. targeting keys for the guardrails)."""
        scenarios = scenario_set.scenarios
        if not scenarios:
            raise ValueError("scenario set is empty")

        candidates: list[PolicyCandidate] = []
        evaluations = 0
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="podse-eval") as pool:
            for iteration in range(self.max_iterations):
                batch = self._propose(iteration, candidates, meta or {})
                pairs = [(decision, scenario) for decision in batch for scenario in scenarios]
                results = list(pool.map(lambda pair: evaluator.evaluate_scenario(*pair), pairs))
                evaluations += len(results)

                for offset, decision in enumerate(batch):
                    index = len(candidates)
                    chunk = results[offset * len(scenarios) : (offset + 1) * len(scenarios)]
                    candidates.append(
                        evaluator.summarize(f"pol_{index:04d}", index, decision, scenarios, chunk, iteration)
                    )

        best = select_best(candidates)
        logger.info(
            "optimizer.run_completed",
            iterations=self.max_iterations,
            candidates=len(candidates),
            evaluations=evaluations,
            feasible=sum(1 for c in candidates if c.feasibility),
            best_policy_id=best.policy_id if best else None,
        )
        return OptimizationResult(
            best=best,
            candidates=candidates,
            iterations=self.max_iterations,
            evaluations=evaluations,
        )

    def _propose(
        self, iteration: int, history: list[PolicyCandidate], meta: dict[str, Any]
    ) -> list[DecisionVector]:
        d = len(self.dimensions)
        if iteration == 0 or not history:
            points = latin_hypercube(self.batch_size, d, self._rng)
        else:
            incumbent = max(history, key=lambda c: (c.feasibility, *rank_key(c)))
            centre = np.asarray(incumbent.decision.dimensions, dtype=float)
            step = self.initial_step * self.step_decay**iteration
            n_local = (self.batch_size + 1) // 2
            local = centre + self._rng.normal(0.0, step, size=(n_local, d))
            explore = self._rng.random((self.batch_size - n_local, d))
            points = np.vstack([local, explore])
        points = np.clip(points, 0.0, 1.0)
        return [
            DecisionVector(dimensions=tuple(round(float(v), 6) for v in row), meta=dict(meta)) for row in points
        ]
