"""
Constraint manager — HARD filters and SOFT penalties over expected outcomes.

Expressions are ``<name> <op> <number>`` with op ∈ {<=, <, >=, >, ==}:

    cost <= 100000
    investment < 0.9
    revenue_uplift >= 5000

``<name>`` resolves against the values handed to ``evaluate``: objective ids,
metric sources and decision dimensions. Expressions are parsed once, when the
spec is built, so a malformed one fails fast, never mid-optimization. A
manager built with ``known_names`` also rejects names outside that set at
registration. A HARD constraint that still cannot be resolved at evaluation
time counts as violated.

SOFT penalty = priority × f(relative violation), where relative violation is
the violation amount divided by max(|bound|, 1) and f is

    linear     r
    quadratic  r²
    step       1 when violated
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

from core.errors import ConstraintExpressionError
from prescriptive.types import ConstraintType, PenaltyFn

logger = structlog.get_logger()

_EXPRESSION = re.compile(
    r"^\s*(?P<name>[A-Za-z_][A-Za-z0-9_.]*)\s*(?P<op><=|>=|==|<|>)\s*"
    r"(?P<bound>[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)\s*$"
)
_EQ_TOLERANCE = 1e-9

PENALTY_FUNCTIONS = {
    "linear": lambda r: r,
    "quadratic": lambda r: r * r,
    "step": lambda r: 1.0,
}


@dataclass(frozen=True)
class ParsedExpression:
    name: str
    op: str
    bound: float


def parse_expression(expression: str) -> ParsedExpression:
    match = _EXPRESSION.match(expression or "")
    if match is None:
        raise ConstraintExpressionError(
            f"{ConstraintExpressionError.code}: {expression!r} is not '<name> <op> <number>'"
        )
    return ParsedExpression(match["name"], match["op"], float(match["bound"]))


@dataclass(frozen=True)
class ConstraintSpec:
    id: str
    type: ConstraintType
    expression: str
    penalty_fn: PenaltyFn = "linear"
    priority: float = 1.0
    bound_override: float | None = None
    _parsed: ParsedExpression = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_parsed", parse_expression(self.expression))

    @property
    def parsed(self) -> ParsedExpression:
        return self._parsed

    @property
    def bound(self) -> float:
        return self.bound_override if self.bound_override is not None else self.parsed.bound


@dataclass
class ConstraintEvaluation:
    violations: list[str] = field(default_factory=list)
    violation_energy: float = 0.0
    hard_violations: list[str] = field(default_factory=list)
    relaxed: list[str] = field(default_factory=list)
    slack: dict[str, float] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)

    @property
    def feasible(self) -> bool:
        return not self.hard_violations


def _margin(op: str, value: float, bound: float) -> float:
    """Signed distance to the bound; >= 0 satisfies (strict ops need > 0)."""
    if op in ("<=", "<"):
        return bound - value
    if op in (">=", ">"):
        return value - bound
    return -abs(value - bound)


def _violated(op: str, margin: float) -> bool:
    if op in ("<", ">"):
        return margin <= 0
    if op == "==":
        return margin < -_EQ_TOLERANCE
    return margin < 0


class ConstraintManager:
    def __init__(
        self,
        constraints: list[ConstraintSpec] | None = None,
        known_names: Iterable[str] | None = None,
    ):
        self._constraints: dict[str, ConstraintSpec] = {}
        self._known_names = frozenset(known_names) if known_names is not None else None
        self._lock = threading.Lock()
        for spec in constraints or []:
            self.register(spec)

    def register(self, spec: ConstraintSpec) -> ConstraintSpec:
        """Idempotent by id; raises ConstraintExpressionError for names outside ``known_names``."""
        if spec.type not in ("HARD", "SOFT"):
            raise ValueError(f"Unknown constraint type {spec.type!r}")
        if spec.penalty_fn not in PENALTY_FUNCTIONS:
            raise ValueError(f"Unknown penalty function {spec.penalty_fn!r}")
        if self._known_names is not None and spec.parsed.name not in self._known_names:
            raise ConstraintExpressionError(
                f"{ConstraintExpressionError.code}: constraint {spec.id!r} references unknown "
                f"name {spec.parsed.name!r}; expected one of {sorted(self._known_names)}"
            )
        with self._lock:
            existing = self._constraints.get(spec.id)
            if existing is not None:
                return existing
            self._constraints[spec.id] = spec
        logger.info("constraints.registered", constraint=spec.id, type=spec.type, expression=spec.expression)
        return spec

    def get(self, constraint_id: str) -> ConstraintSpec | None:
        return self._constraints.get(constraint_id)

    def list_constraints(self) -> list[ConstraintSpec]:
        return list(self._constraints.values())

    def __len__(self) -> int:
        return len(self._constraints)

    def with_overrides(
        self, overrides: list[Any] | None, known_names: Iterable[str] | None = None
    ) -> ConstraintManager:
        """
        Copy for a single run. Each override (a ConstraintOverride or a dict)
        either re-bounds a registered constraint or adds an ad-hoc one; ad-hoc
        constraints default to HARD. ``known_names`` (or this manager's own)
        is checked against every constraint in the copy.
        """
        constraints = dict(self._constraints)
        for raw in overrides or []:
            item = raw.model_dump() if hasattr(raw, "model_dump") else dict(raw)
            current = constraints.get(item["id"])
            changes = {
                key: item[key]
                for key in ("bound_override", "expression", "type", "penalty_fn", "priority")
                if item.get(key) is not None
            }
            if current is None:
                if "expression" not in changes:
                    raise ValueError(f"Constraint {item['id']!r} is not registered and has no expression")
                changes.setdefault("type", "HARD")
                spec = ConstraintSpec(id=item["id"], **changes)
            else:
                spec = replace(current, **changes)
            constraints[spec.id] = spec
        if known_names is None:
            known_names = self._known_names
        return ConstraintManager(list(constraints.values()), known_names=known_names)

    def evaluate(self, values: Mapping[str, float]) -> ConstraintEvaluation:
        result = ConstraintEvaluation()
        for spec in self._constraints.values():
            parsed = spec.parsed
            if parsed.name not in values:
                result.unresolved.append(spec.id)
                if spec.type == "HARD":
                    result.violations.append(spec.id)
                    result.hard_violations.append(spec.id)
                continue

            bound = spec.bound
            scale = max(abs(bound), 1.0)
            margin = _margin(parsed.op, float(values[parsed.name]), bound)
            result.slack[spec.id] = margin / scale

            if not _violated(parsed.op, margin):
                continue
            result.violations.append(spec.id)
            if spec.type == "HARD":
                result.hard_violations.append(spec.id)
            else:
                relative = max(-margin, 0.0) / scale
                result.violation_energy += spec.priority * PENALTY_FUNCTIONS[spec.penalty_fn](relative)
                result.relaxed.append(spec.id)
        return result
