"""
Objective registry — declarative business goals for the decision engine.

Registration is idempotent by id and keeps registration order, so weight
snapshots (and their audit hash) are reproducible.
"""

from __future__ import annotations

import hashlib
import json
import math
import threading
from dataclasses import replace

import structlog

from prescriptive.types import ObjectiveSpec

logger = structlog.get_logger()

TRANSFORMS = {
    "identity": lambda x: x,
    "log1p": lambda x: math.copysign(math.log1p(abs(x)), x),
    "sqrt": lambda x: math.copysign(math.sqrt(abs(x)), x),
}


def apply_transform(name: str | None, value: float) -> float:
    return TRANSFORMS[name or "identity"](value)


def _validate_weight(weight: float) -> float:
    weight = float(weight)
    if not 0.0 <= weight <= 1.0:
        raise ValueError(f"Objective weight must be in [0, 1], got {weight}")
    return weight


class ObjectiveRegistry:
    def __init__(self):
        self._objectives: dict[str, ObjectiveSpec] = {}
        self._lock = threading.Lock()

    def register(self, spec: ObjectiveSpec) -> ObjectiveSpec:
        """Registering an id twice is a no-op; the first spec wins."""
        if spec.type not in ("maximize", "minimize"):
            raise ValueError(f"Unknown objective type {spec.type!r}")
        if (spec.transform or "identity") not in TRANSFORMS:
            raise ValueError(f"Unknown objective transform {spec.transform!r}")
        spec = replace(spec, weight=_validate_weight(spec.weight))
        with self._lock:
            existing = self._objectives.get(spec.id)
            if existing is not None:
                return existing
            self._objectives[spec.id] = spec
        logger.info("objectives.registered", objective=spec.id, type=spec.type, weight=spec.weight)
        return spec

    def set_weight(self, objective_id: str, weight: float) -> ObjectiveSpec:
        weight = _validate_weight(weight)
        with self._lock:
            current = self._objectives[objective_id]
            updated = replace(current, weight=weight)
            self._objectives[objective_id] = updated
        logger.info("objectives.weight_changed", objective=objective_id, old=current.weight, new=weight)
        return updated

    def get(self, objective_id: str) -> ObjectiveSpec | None:
        return self._objectives.get(objective_id)

    def list_objectives(self) -> list[ObjectiveSpec]:
        return list(self._objectives.values())

    def __contains__(self, objective_id: str) -> bool:
        return objective_id in self._objectives

    def __len__(self) -> int:
        return len(self._objectives)

    def snapshot_weights(self) -> list[tuple[str, float]]:
        return [(spec.id, spec.weight) for spec in self._objectives.values()]

    def effective(self, overrides: dict[str, float | None] | None = None) -> list[ObjectiveSpec]:
        """
        Objectives for one run. With overrides, only the named objectives take
        part, each with its override weight (or its registered weight if None).
        """
        if not overrides:
            return self.list_objectives()
        unknown = sorted(set(overrides) - set(self._objectives))
        if unknown:
            raise ValueError(f"Unknown objectives: {unknown}")
        return [
            replace(spec, weight=_validate_weight(overrides[spec.id]))
            if overrides[spec.id] is not None
            else spec
            for spec in self._objectives.values()
            if spec.id in overrides
        ]

    def hash_snapshot(self, objectives: list[ObjectiveSpec] | None = None) -> str:
        """Audit fingerprint of (id, type, weight) in registration order."""
        specs = self.list_objectives() if objectives is None else objectives
        payload = json.dumps(
            [[spec.id, spec.type, round(spec.weight, 12)] for spec in specs],
            separators=(",", ":"),
        )
        return "OBJ_" + hashlib.sha256(payload.encode()).hexdigest()[:16]
