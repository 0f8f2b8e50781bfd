"""
Prescription request/response boundary models.

Fields are snake_case; camelCase keys from external callers
(``requestId``, ``weightOverride``, ``constraintsOverride`` ...) are accepted too.
"""

import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class _Boundary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── Request ────────────────────────────────────────────────────────────────


class ObjectiveOverride(_Boundary):
    id: str = Field(..., min_length=1)
    weight_override: float | None = Field(None, ge=0, le=1)


class ConstraintOverride(_Boundary):
    """Bound override for a registered constraint, or an ad-hoc constraint for one run."""

    id: str = Field(..., min_length=1)
    bound_override: float | None = None
    expression: str | None = None
    type: Literal["HARD", "SOFT"] | None = None
    penalty_fn: Literal["linear", "quadratic", "step"] | None = None
    priority: float | None = Field(None, gt=0)

    @model_validator(mode="after")
    def _has_effect(self) -> "ConstraintOverride":
        if self.bound_override is None and self.expression is None:
            raise ValueError("constraint override needs bound_override or expression")
        return self


class ScenarioConfig(_Boundary):
    samples: int | None = Field(None, ge=1, le=5000)
    strategy: str | None = None


class PrescriptiveRequest(_Boundary):
    request_id: str = Field(default_factory=lambda: f"rx_{uuid.uuid4().hex[:12]}")
    horizon: Literal["P7D", "P30D", "P90D"] = "P30D"
    objectives: list[ObjectiveOverride] = Field(default_factory=list)
    constraints_override: list[ConstraintOverride] = Field(default_factory=list)
    scenario_config: ScenarioConfig | None = None
    context: dict[str, Any] = Field(default_factory=dict)


# ─── Response ───────────────────────────────────────────────────────────────


class ParetoSummary(BaseModel):
    size: int
    hypervolume: float
    diversity: float


class AuditRef(BaseModel):
    run_id: str
    snapshot_hash: str


class ExplanationPayload(BaseModel):
    rationale: str
    top_binding_constraints: list[str]
    sensitivity_hotspots: list[str]
    risk_profile: dict[str, float | None]


class PrescriptiveResponse(BaseModel):
    request_id: str
    best_policy: dict[str, Any] | None
    pareto_front_meta: ParetoSummary
    explanations: ExplanationPayload
    audit_ref: AuditRef
    events_emitted: list[str]
    metrics: dict[str, Any]
