"""
Guardrails engine — compliance and ethics checks applied after optimization.

Rules are independent of objective scoring. Each rule returns a reason
string when the policy violates it, otherwise None. A single reason is
enough for FAIL; a FAIL policy is never eligible as best policy or for the
Pareto frontier.

Built-in rules:
    disallowed_region          deep discount with almost no investment
                               (discount > 0.85 and investment < 0.1)
    protected_attribute_proxy  decision metadata that targets or segments by
                               a protected attribute
    non_finite_outcome         NaN/inf in scores or decision dimensions
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from prescriptive.types import DECISION_DIMENSIONS, GuardrailStatus, PolicyCandidate

logger = structlog.get_logger()

PROTECTED_ATTRIBUTES = frozenset(
    {"age", "gender", "sex", "race", "ethnicity", "religion", "nationality", "disability", "marital_status"}
)
TARGETING_META_KEYS = ("target_attributes", "segment_by", "segments")

DISCOUNT_CEILING = 0.85
INVESTMENT_FLOOR = 0.1


@dataclass(frozen=True)
class GuardrailRule:
    id: str
    description: str
    check: Callable[[PolicyCandidate], str | None]


@dataclass(frozen=True)
class GuardrailResult:
    status: GuardrailStatus
    reasons: tuple[str, ...]


def disallowed_region(policy: PolicyCandidate) -> str | None:
    named = policy.decision.named(DECISION_DIMENSIONS)
    discount = named.get("discount", 0.0)
    investment = named.get("investment", 0.0)
    if discount > DISCOUNT_CEILING and investment < INVESTMENT_FLOOR:
        return (
            f"disallowed_region: discount {discount:.2f} > {DISCOUNT_CEILING} "
            f"with investment {investment:.2f} < {INVESTMENT_FLOOR}"
        )
    return None


def protected_attribute_proxy(policy: PolicyCandidate) -> str | None:
    meta = policy.decision.meta or {}
    targeted: set[str] = set()
    for key in TARGETING_META_KEYS:
        value = meta.get(key)
        if isinstance(value, str):
            value = [value]
        if isinstance(value, (list, tuple, set, dict)):
            targeted.update(str(v).strip().lower() for v in value)
    hits = sorted(targeted & PROTECTED_ATTRIBUTES)
    if hits:
        return f"protected_attribute_proxy: decision targets protected attributes {hits}"
    return None


def non_finite_outcome(policy: PolicyCandidate) -> str | None:
    values = [policy.aggregate_score, *policy.score_vector.values(), *policy.decision.dimensions]
    if not all(math.isfinite(v) for v in values):
        return "non_finite_outcome: score or decision contains NaN/inf"
    return None


DEFAULT_RULES: tuple[GuardrailRule, ...] = (
    GuardrailRule("disallowed_region", "Deep discount without supporting investment", disallowed_region),
    GuardrailRule("protected_attribute_proxy", "Targeting by protected attributes", protected_attribute_proxy),
    GuardrailRule("non_finite_outcome", "Non-finite scores or decisions", non_finite_outcome),
)


class GuardrailsEngine:
    def __init__(self, rules: tuple[GuardrailRule, ...] | list[GuardrailRule] | None = None):
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES
        self.evaluated = 0
        self.failed = 0

    def evaluate(self, policy: PolicyCandidate) -> GuardrailResult:
        """Judge ``policy`` and record the verdict on it (once per candidate)."""
        reasons = tuple(reason for rule in self.rules if (reason := rule.check(policy)) is not None)
        status: GuardrailStatus = "FAIL" if reasons else "PASS"
        policy.record_guardrail(status, reasons)

        self.evaluated += 1
        if reasons:
            self.failed += 1
            logger.info("guardrails.policy_rejected", policy_id=policy.policy_id, reasons=list(reasons))
        return GuardrailResult(status=status, reasons=reasons)

    def get_status(self) -> dict:
        return {
            "rules": [rule.id for rule in self.rules],
            "evaluated": self.evaluated,
            "failed": self.failed,
        }
