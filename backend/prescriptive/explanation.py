"""Explanation engine — rationale bundle for the selected policy."""

from __future__ import annotations

from prescriptive.types import DECISION_DIMENSIONS, ExplanationBundle, PolicyCandidate

# Constraints within this relative slack of their bound count as binding
BINDING_SLACK = 0.10


class ExplanationEngine:
    def __init__(self, top_k: int = 3):
        self.top_k = top_k

    def build(
        self,
        policy: PolicyCandidate | None,
        scenario_count: int = 0,
        candidates_evaluated: int = 0,
    ) -> ExplanationBundle:
        if policy is None:
            return ExplanationBundle(
                rationale=(
                    "NO_POLICY: no candidate satisfied every HARD constraint and guardrail "
                    f"({candidates_evaluated} candidates evaluated)"
                ),
                top_binding_constraints=[],
                sensitivity_hotspots=[],
                risk_profile={"robustness": None, "tail_gap": None},
            )

        binding = sorted(
            (slack, cid) for cid, slack in policy.constraint_slack.items() if slack <= BINDING_SLACK
        )
        hotspots = sorted(policy.sensitivity_map.items(), key=lambda kv: (-kv[1], kv[0]))
        decision = ", ".join(f"{name}={value:.3f}" for name, value in policy.decision.named(DECISION_DIMENSIONS).items())

        rationale = (
            f"Policy {policy.policy_id} ({decision}) selected with expected score "
            f"{policy.expected_score:.4f} across {scenario_count} scenarios; "
            f"robustness {policy.robustness or 0.0:.3f}"
        )
        return ExplanationBundle(
            rationale=rationale,
            top_binding_constraints=[cid for _, cid in binding[: self.top_k]],
            sensitivity_hotspots=[name for name, _ in hotspots[: self.top_k]],
            risk_profile={"robustness": policy.robustness, "tail_gap": policy.tail_gap},
        )
