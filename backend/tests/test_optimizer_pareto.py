"""
Tests for the optimization core and the Pareto frontier builder.
"""

import math

import numpy as np
import pytest

from prescriptive.constraints import ConstraintManager, ConstraintSpec
from prescriptive.evaluation import PolicyEvaluator
from prescriptive.optimizer import OptimizationCore, rank_key, select_best
from prescriptive.pareto import (
    ParetoFrontierBuilder,
    diversity,
    dominates,
    hypervolume,
    non_dominated_mask,
    normalise,
)
from prescriptive.scenarios import ScenarioSandbox
from prescriptive.types import DecisionVector, ObjectiveSpec, PolicyCandidate

OBJECTIVES = [
    ObjectiveSpec(id="value", type="maximize", weight=0.6, metric_source="revenue_uplift"),
    ObjectiveSpec(id="cost", type="minimize", weight=0.4, metric_source="operational_cost"),
]


def _candidate(index, value=0.0, cost=0.0, aggregate=0.0, robustness=0.5, feasible=True, dims=(0.5, 0.5)):
    return PolicyCandidate(
        policy_id=f"pol_{index:04d}",
        decision=DecisionVector(dimensions=dims),
        score_vector={"value": value, "cost": cost},
        aggregate_score=aggregate,
        feasibility=feasible,
        index=index,
        robustness=robustness,
    )


def _evaluator(constraints=None):
    return PolicyEvaluator(objectives=OBJECTIVES, constraints=constraints or ConstraintManager())


# ── Optimization core ────────────────────────────────────────────────────


class TestOptimizationCore:
    def test_runs_every_candidate_on_every_scenario(self):
        scenario_set = ScenarioSandbox(seed=1).generate("P30D", sample_count=12)
        result = OptimizationCore(max_iterations=3, batch_size=4, max_workers=2, seed=5).run(
            scenario_set, _evaluator()
        )

        assert result.iterations == 3
        assert len(result.candidates) == 12
        assert result.evaluations == 12 * 12
        assert [c.policy_id for c in result.candidates[:2]] == ["pol_0000", "pol_0001"]
        assert all(0.0 <= v <= 1.0 for c in result.candidates for v in c.decision.dimensions)
        assert result.best is not None

    def test_same_seed_same_result(self):
        """Thread fan-out never changes the outcome for a fixed seed."""
        runs = []
        for workers in (1, 4):
            scenario_set = ScenarioSandbox(seed=3).generate("P30D", sample_count=20)
            result = OptimizationCore(max_iterations=5, batch_size=4, max_workers=workers, seed=8).run(
                scenario_set, _evaluator()
            )
            runs.append([(c.decision.dimensions, c.aggregate_score) for c in result.candidates])
        assert runs[0] == runs[1]

    def test_hard_constraint_filters_best(self):
        constraints = ConstraintManager([ConstraintSpec(id="lean", type="HARD", expression="cost <= 20000")])
        scenario_set = ScenarioSandbox(seed=1).generate("P7D", sample_count=10)
        result = OptimizationCore(max_iterations=6, batch_size=4, max_workers=2, seed=2).run(
            scenario_set, _evaluator(constraints)
        )
        if result.best is not None:
            assert result.best.feasibility
            assert result.best.score_vector["cost"] <= 20000

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            OptimizationCore(max_iterations=0)


class TestSelectBest:
    def test_highest_aggregate_wins(self):
        candidates = [_candidate(0, aggregate=0.1), _candidate(1, aggregate=0.3), _candidate(2, aggregate=0.2)]
        assert select_best(candidates).policy_id == "pol_0001"

    def test_ties_break_on_robustness_then_age(self):
        candidates = [
            _candidate(0, aggregate=0.3, robustness=0.5),
            _candidate(1, aggregate=0.3, robustness=0.9),
            _candidate(2, aggregate=0.3, robustness=0.9),
        ]
        assert select_best(candidates).policy_id == "pol_0001"
        assert rank_key(candidates[1]) > rank_key(candidates[2])

    def test_infeasible_and_failed_guardrails_are_excluded(self):
        infeasible = _candidate(0, aggregate=9.0, feasible=False)
        failed = _candidate(1, aggregate=8.0)
        failed.record_guardrail("FAIL", ("blocked",))
        ok = _candidate(2, aggregate=0.1)
        assert select_best([infeasible, failed, ok]) is ok
        assert select_best([infeasible, failed]) is None

    def test_non_finite_scores_are_excluded(self):
        assert select_best([_candidate(0, aggregate=math.nan)]) is None


# ── Pareto ───────────────────────────────────────────────────────────────


class TestDominance:
    def test_dominates(self):
        assert dominates(np.array([2.0, 2.0]), np.array([1.0, 2.0]))
        assert not dominates(np.array([2.0, 2.0]), np.array([2.0, 2.0]))
        assert not dominates(np.array([3.0, 0.0]), np.array([0.0, 3.0]))

    def test_non_dominated_mask(self):
        points = np.array([[10.0, -5.0], [8.0, -3.0], [7.0, -6.0]])
        assert non_dominated_mask(points).tolist() == [True, True, False]


class TestHypervolume:
    def test_single_point_box(self):
        assert hypervolume(np.array([[0.5, 0.4]])) == pytest.approx(0.2)

    def test_union_of_boxes(self):
        assert hypervolume(np.array([[1.0, 1 / 3], [1 / 3, 1.0]])) == pytest.approx(5 / 9)

    def test_three_dimensions(self):
        assert hypervolume(np.array([[1.0, 1.0, 1.0]])) == pytest.approx(1.0)
        assert hypervolume(np.array([[1.0, 0.5, 0.5], [0.5, 1.0, 1.0]])) == pytest.approx(0.625)

    def test_normalise_degenerate_column(self):
        points = np.array([[1.0, 5.0], [3.0, 5.0]])
        assert normalise(points, points).tolist() == [[0.0, 1.0], [1.0, 1.0]]


class TestParetoFrontierBuilder:
    def test_frontier_excludes_dominated_and_infeasible(self):
        a = _candidate(0, value=10, cost=5, dims=(0.9, 0.1))
        b = _candidate(1, value=8, cost=3, dims=(0.2, 0.3))
        c = _candidate(2, value=7, cost=6)
        d = _candidate(3, value=100, cost=0, feasible=False)

        frontier = ParetoFrontierBuilder(OBJECTIVES).build([a, b, c, d])

        assert [p.policy_id for p in frontier.policies] == ["pol_0000", "pol_0001"]
        assert frontier.size == 2
        assert frontier.hypervolume == pytest.approx(5 / 9)
        assert 0.0 < frontier.diversity <= 1.0

    def test_single_eligible_candidate(self):
        frontier = ParetoFrontierBuilder(OBJECTIVES).build([_candidate(0, value=1, cost=1)])
        assert frontier.size == 1
        assert frontier.hypervolume == pytest.approx(1.0)
        assert frontier.diversity == pytest.approx(0.5 * (1 - math.exp(-0.1)))

    def test_no_eligible_candidates(self):
        frontier = ParetoFrontierBuilder(OBJECTIVES).build([_candidate(0, feasible=False)])
        assert (frontier.size, frontier.hypervolume, frontier.diversity) == (0, 0.0, 0.0)

    def test_requires_objectives(self):
        with pytest.raises(ValueError):
            ParetoFrontierBuilder([])


def test_diversity_grows_with_spread():
    clustered = [_candidate(i, dims=(0.5, 0.5 + 0.01 * i)) for i in range(4)]
    spread = [_candidate(i, dims=(i / 3, 1 - i / 3)) for i in range(4)]
    assert diversity(spread) > diversity(clustered)
    assert 0.0 <= diversity(clustered) <= 1.0
