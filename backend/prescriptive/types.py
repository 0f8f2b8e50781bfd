"""
Domain types shared by the decision engine stages.

Objectives, constraints and scenarios are immutable once built. A
PolicyCandidate is created by the optimization core and mutated exactly
once afterwards, when the guardrails stage records its verdict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ObjectiveType = Literal["maximize", "minimize"]
ConstraintType = Literal["HARD", "SOFT"]
PenaltyFn = Literal["linear", "quadratic", "step"]
GuardrailStatus = Literal["PENDING", "PASS", "FAIL"]

# Searchable decision dimensions, all in [0, 1]
DECISION_DIMENSIONS: tuple[str, ...] = ("investment", "discount")


@dataclass(frozen=True)
class ObjectiveSpec:
    id: str
    type: ObjectiveType
    weight: float
    metric_source: str
    transform: str | None = None

    @property
    def direction(self) -> float:
        return 1.0 if self.type == "maximize" else -1.0


@dataclass(frozen=True)
class ScenarioInstance:
    id: str
    factors: dict[str, float]
    weight: float
    is_stress: bool = False


@dataclass(frozen=True)
class ScenarioSet:
    id: str
    horizon: str
    strategy: str
    scenarios: tuple[ScenarioInstance, ...]
    coverage_estimate: float
    tail_augmented: bool

    def __len__(self) -> int:
        return len(self.scenarios)

    @property
    def stress_count(self) -> int:
        return sum(1 for s in self.scenarios if s.is_stress)


@dataclass(frozen=True)
class DecisionVector:
    dimensions: tuple[float, ...]
    meta: dict[str, Any] = field(default_factory=dict)

    def named(self, names: tuple[str, ...] = DECISION_DIMENSIONS) -> dict[str, float]:
        return dict(zip(names, self.dimensions))


@dataclass
class PolicyCandidate:
    policy_id: str
    decision: DecisionVector
    score_vector: dict[str, float]
    aggregate_score: float
    feasibility: bool
    index: int
    robustness: float | None = None
    guardrail_status: GuardrailStatus = "PENDING"
    guardrail_reasons: tuple[str, ...] = ()
    sensitivity_map: dict[str, float] = field(default_factory=dict)
    constraint_slack: dict[str, float] = field(default_factory=dict)
    hard_violations: tuple[str, ...] = ()
    violation_energy: float = 0.0
    expected_score: float = 0.0
    tail_gap: float = 0.0
    iteration: int = 0

    def record_guardrail(self, status: GuardrailStatus, reasons: tuple[str, ...] = ()) -> None:
        """Set once by the guardrails stage; a second verdict is a programming error."""
        if self.guardrail_status != "PENDING":
            raise RuntimeError(f"Guardrail status for {self.policy_id} already set to {self.guardrail_status}")
        self.guardrail_status = status
        self.guardrail_reasons = tuple(reasons)

    @property
    def selectable(self) -> bool:
        return self.feasibility and self.guardrail_status != "FAIL"

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "decision": {"dimensions": list(self.decision.dimensions), "meta": dict(self.decision.meta)},
            "score_vector": dict(self.score_vector),
            "aggregate_score": self.aggregate_score,
            "feasibility": self.feasibility,
            "robustness": self.robustness,
            "guardrail_status": self.guardrail_status,
            "guardrail_reasons": list(self.guardrail_reasons),
            "sensitivity_map": dict(self.sensitivity_map),
            "constraint_slack": dict(self.constraint_slack),
            "tail_gap": self.tail_gap,
        }


@dataclass(frozen=True)
class ParetoFrontierMeta:
    policies: tuple[PolicyCandidate, ...]
    hypervolume: float
    diversity: float

    @property
    def size(self) -> int:
        return len(self.policies)


@dataclass(frozen=True)
class ExplanationBundle:
    rationale: str
    top_binding_constraints: list[str]
    sensitivity_hotspots: list[str]
    risk_profile: dict[str, float | None]

    @property
    def is_no_policy(self) -> bool:
        return self.rationale.startswith("NO_POLICY")
