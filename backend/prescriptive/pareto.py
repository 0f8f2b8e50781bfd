"""
Pareto frontier builder.

Objective values are first turned into "goodness" (direction × value, so
larger is always better). A dominates B when A ≥ B on every objective and
A > B on at least one. Only feasible candidates without a guardrail FAIL
are eligible; the frontier is the non-dominated subset of those.

Summary scalars:
    hypervolume  exact (slicing) volume dominated by the frontier in the
                 min–max normalised goodness cube, reference point = origin
    diversity    0.5·(1 − e^(−n/10)) + 0.5·min(1, mean pairwise decision distance / √d)
"""

from __future__ import annotations

import math
from itertools import combinations

import numpy as np
import structlog

from prescriptive.types import ObjectiveSpec, ParetoFrontierMeta, PolicyCandidate

logger = structlog.get_logger()


def dominates(a: np.ndarray, b: np.ndarray) -> bool:
    return bool(np.all(a >= b) and np.any(a > b))


def goodness(candidates: list[PolicyCandidate], objectives: list[ObjectiveSpec]) -> np.ndarray:
    return np.array(
        [[obj.direction * c.score_vector[obj.id] for obj in objectives] for c in candidates],
        dtype=float,
    ).reshape(len(candidates), len(objectives))


def non_dominated_mask(points: np.ndarray) -> np.ndarray:
    n = len(points)
    mask = np.ones(n, dtype=bool)
    for i in range(n):
        for j in range(n):
            if i != j and dominates(points[j], points[i]):
                mask[i] = False
                break
    return mask


def hypervolume(points: np.ndarray) -> float:
    """Volume dominated by ``points`` (maximisation, all coordinates ≥ 0) w.r.t. the origin."""
    if len(points) == 0:
        return 0.0
    if points.shape[1] == 1:
        return float(points[:, 0].max())
    ordered = points[np.argsort(-points[:, -1], kind="stable")]
    volume = 0.0
    for i in range(len(ordered)):
        next_level = ordered[i + 1, -1] if i + 1 < len(ordered) else 0.0
        height = ordered[i, -1] - next_level
        if height > 0:
            volume += height * hypervolume(ordered[: i + 1, :-1])
    return float(volume)


def normalise(points: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Min–max scale ``points`` per column using the ranges of ``reference``."""
    lo = reference.min(axis=0)
    span = reference.max(axis=0) - lo
    scaled = np.ones_like(points)
    varying = span > 0
    scaled[:, varying] = (points[:, varying] - lo[varying]) / span[varying]
    return np.clip(scaled, 0.0, 1.0)


def diversity(candidates: list[PolicyCandidate]) -> float:
    n = len(candidates)
    if n == 0:
        return 0.0
    size_term = 1.0 - math.exp(-n / 10.0)
    if n == 1:
        return 0.5 * size_term
    vectors = np.array([c.decision.dimensions for c in candidates], dtype=float)
    distances = [float(np.linalg.norm(a - b)) for a, b in combinations(vectors, 2)]
    spread_term = min(1.0, float(np.mean(distances)) / math.sqrt(vectors.shape[1]))
    return 0.5 * size_term + 0.5 * spread_term


class ParetoFrontierBuilder:
    def __init__(self, objectives: list[ObjectiveSpec]):
        if not objectives:
            raise ValueError("at least one objective is required")
        self.objectives = objectives

    def build(self, candidates: list[PolicyCandidate]) -> ParetoFrontierMeta:
        eligible = [c for c in candidates if c.selectable and np.isfinite(c.aggregate_score)]
        if not eligible:
            return ParetoFrontierMeta(policies=(), hypervolume=0.0, diversity=0.0)

        points = goodness(eligible, self.objectives)
        mask = non_dominated_mask(points)
        frontier = [c for c, keep in zip(eligible, mask) if keep]
        hv = hypervolume(normalise(points[mask], points))
        div = diversity(frontier)

        logger.info(
            "pareto.frontier_built",
            eligible=len(eligible),
            size=len(frontier),
            hypervolume=round(hv, 6),
            diversity=round(div, 6),
        )
        return ParetoFrontierMeta(policies=tuple(frontier), hypervolume=hv, diversity=div)
