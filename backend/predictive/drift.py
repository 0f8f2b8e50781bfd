"""
Feature drift statistics — PSI and Kolmogorov–Smirnov.

PSI bins the current batch on the baseline's quantile edges:

    PSI = Σ (cur% − base%) × ln(cur% / base%)

Rule of thumb used for status:
    PSI < 0.10            → stable
    0.10 ≤ PSI < 0.25     → warning
    PSI ≥ 0.25 or KS p < 0.01 → drifted
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import numpy as np
from scipy.stats import ks_2samp

DriftStatus = Literal["stable", "warning", "drifted"]

# Floor for empty bins so the log term stays finite
_PCT_FLOOR = 1e-4


@dataclass(frozen=True)
class DriftThresholds:
    psi_warning: float = 0.10
    psi_drifted: float = 0.25
    ks_pvalue: float = 0.01
    min_samples: int = 20


@dataclass(frozen=True)
class DriftAssessment:
    psi: float
    ks_statistic: float
    ks_pvalue: float
    status: DriftStatus
    baseline_size: int
    current_size: int


def population_stability_index(baseline, current, bins: int = 10) -> float:
    base = np.asarray(baseline, dtype=float)
    cur = np.asarray(current, dtype=float)
    if base.size == 0 or cur.size == 0:
        return 0.0

    interior = np.unique(np.quantile(base, np.linspace(0.0, 1.0, bins + 1)[1:-1]))
    n_bins = interior.size + 1
    base_counts = np.bincount(np.searchsorted(interior, base, side="right"), minlength=n_bins)
    cur_counts = np.bincount(np.searchsorted(interior, cur, side="right"), minlength=n_bins)

    base_pct = np.clip(base_counts / base_counts.sum(), _PCT_FLOOR, None)
    cur_pct = np.clip(cur_counts / cur_counts.sum(), _PCT_FLOOR, None)
    return float(np.sum((cur_pct - base_pct) * np.log(cur_pct / base_pct)))


def classify_drift(psi: float, ks_pvalue: float, thresholds: DriftThresholds) -> DriftStatus:
    if psi >= thresholds.psi_drifted or ks_pvalue < thresholds.ks_pvalue:
        return "drifted"
    if psi >= thresholds.psi_warning:
        return "warning"
    return "stable"


def assess_drift(baseline, current, thresholds: DriftThresholds | None = None) -> DriftAssessment:
    """Compare two samples; callers enforce ``min_samples`` before calling."""
    thresholds = thresholds or DriftThresholds()
    base = np.asarray(baseline, dtype=float)
    cur = np.asarray(current, dtype=float)

    psi = population_stability_index(base, cur)
    ks = ks_2samp(base, cur)
    ks_statistic = float(ks.statistic)
    ks_pvalue = float(ks.pvalue)

    return DriftAssessment(
        psi=round(psi, 6),
        ks_statistic=round(ks_statistic, 6),
        ks_pvalue=ks_pvalue,
        status=classify_drift(psi, ks_pvalue, thresholds),
        baseline_size=int(base.size),
        current_size=int(cur.size),
    )
