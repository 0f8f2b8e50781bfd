import math

import pytest

from prescriptive.explanation import ExplanationEngine
from prescriptive.guardrails import GuardrailRule, GuardrailsEngine
from prescriptive.types import DecisionVector, PolicyCandidate


def _policy(dims=(0.5, 0.2), meta=None, aggregate=0.1, **extra):
    return PolicyCandidate(
        policy_id="pol_0007",
        decision=DecisionVector(dimensions=dims, meta=meta or {}),
        score_vector={"value": 1000.0, "cost": 500.0},
        aggregate_score=aggregate,
        feasibility=True,
        index=7,
        robustness=0.8,
        **extra,
    )


class TestGuardrails:
    def test_ordinary_policy_passes(self):
        engine = GuardrailsEngine()
        policy = _policy()
        result = engine.evaluate(policy)
        assert result.status == "PASS"
        assert policy.guardrail_status == "PASS"
        assert policy.selectable

    def test_deep_discount_without_investment_fails(self):
        policy = _policy(dims=(0.05, 0.9))
        result = GuardrailsEngine().evaluate(policy)
        assert result.status == "FAIL"
        assert result.reasons[0].startswith("disallowed_region")
        assert not policy.selectable

    @pytest.mark.parametrize(
        "meta",
        [{"segment_by": "Gender"}, {"target_attributes": ["region", "age"]}, {"segments": {"religion": 1}}],
    )
    def test_protected_attribute_targeting_fails(self, meta):
        result = GuardrailsEngine().evaluate(_policy(meta=meta))
        assert result.status == "FAIL"
        assert "protected_attribute_proxy" in result.reasons[0]

    def test_neutral_segmentation_passes(self):
        assert GuardrailsEngine().evaluate(_policy(meta={"segment_by": "region"})).status == "PASS"

    def test_non_finite_outcome_fails(self):
        result = GuardrailsEngine().evaluate(_policy(aggregate=math.nan))
        assert result.reasons == ("non_finite_outcome: score or decision contains NaN/inf",)

    def test_verdict_is_recorded_once(self):
        engine = GuardrailsEngine()
        policy = _policy()
        engine.evaluate(policy)
        with pytest.raises(RuntimeError, match="already set"):
            engine.evaluate(policy)

    def test_custom_rules_and_status(self):
        rule = GuardrailRule("max_investment", "Cap investment", lambda p: "too much" if p.decision.dimensions[0] > 0.4 else None)
        engine = GuardrailsEngine(rules=[rule])
        engine.evaluate(_policy(dims=(0.5, 0.0)))
        engine.evaluate(_policy(dims=(0.1, 0.0)))
        assert engine.get_status() == {"rules": ["max_investment"], "evaluated": 2, "failed": 1}


class TestExplanation:
    def test_no_policy(self):
        bundle = ExplanationEngine().build(None, scenario_count=30, candidates_evaluated=48)
        assert bundle.is_no_policy
        assert "48 candidates evaluated" in bundle.rationale
        assert bundle.top_binding_constraints == []
        assert bundle.risk_profile == {"robustness": None, "tail_gap": None}

    def test_binding_constraints_and_hotspots(self):
        policy = _policy(
            constraint_slack={"budget_cap": 0.05, "floor": 0.4, "lean": -0.01},
            sensitivity_map={"demand": 0.9, "unit_cost": 0.2, "volatility": 0.9},
            tail_gap=0.03,
            expected_score=0.1234,
        )
        bundle = ExplanationEngine(top_k=2).build(policy, scenario_count=50)

        assert not bundle.is_no_policy
        assert bundle.top_binding_constraints == ["lean", "budget_cap"]
        assert bundle.sensitivity_hotspots == ["demand", "volatility"]
        assert bundle.risk_profile == {"robustness": 0.8, "tail_gap": 0.03}
        assert "pol_0007" in bundle.rationale
        assert "investment=0.500" in bundle.rationale
        assert "50 scenarios" in bundle.rationale
