"""
Feature Store — named, versioned KPI features with lineage and drift status.

Each ingestion cycle rebuilds a transient feature vector from the accepted
canonical records:

    avg_<kpi>    mean over the batch window
    std_<kpi>    sample std over the batch window (0 for single observations)
    count_<kpi>  observations in the batch
    last_<kpi>   most recent observation in the batch

The store also keeps a bounded per-KPI observation history (consumed by the
models hub) and a per-KPI baseline sample for drift detection. Drift is
advisory: it updates ``drift_status`` on every feature whose lineage points
at the KPI and publishes FeatureDriftDetected, but never blocks the build.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal

import numpy as np
import pandas as pd
import structlog

from core.events import EventBus, FeatureDriftDetected, FeaturesUpdated
from predictive.drift import DriftAssessment, DriftStatus, DriftThresholds, assess_drift

if TYPE_CHECKING:
    from predictive.ingestion import CanonicalRecord

logger = structlog.get_logger()

DataType = Literal["number", "string", "categorical"]
FeatureSource = Literal["batch", "realtime", "hybrid"]

FeatureVector = dict[str, float]

DEFAULT_HISTORY_LIMIT = 10_000


def raw_lineage(kpi: str) -> str:
    return f"{kpi}_raw"


@dataclass(frozen=True)
class FeatureDefinition:
    """Registered once, referenced by (name, version) downstream."""

    name: str
    version: str
    data_type: DataType = "number"
    source: FeatureSource = "batch"
    transformation: str = ""
    lineage: tuple[str, ...] = ()
    drift_status: DriftStatus = "stable"


@dataclass
class _KpiState:
    history: deque = field(default_factory=lambda: deque(maxlen=DEFAULT_HISTORY_LIMIT))
    baseline: np.ndarray | None = None
    last_assessment: DriftAssessment | None = None


class FeatureStore:
    """In-memory feature registry + batch feature builder."""

    def __init__(
        self,
        bus: EventBus,
        thresholds: DriftThresholds | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self.bus = bus
        self.thresholds = thresholds or DriftThresholds()
        self.history_limit = history_limit
        self._registry: dict[str, FeatureDefinition] = {}
        self._superseded: dict[str, list[FeatureDefinition]] = {}
        self._kpis: dict[str, _KpiState] = {}
        self._latest_vector: FeatureVector = {}
        self.last_built_at: datetime | None = None

    # ── Registry ─────────────────────────────────────────────────────────

    def register_feature(self, definition: FeatureDefinition) -> FeatureDefinition:
        """
        Idempotent by name. Same version → existing definition is kept.
        Different version → the new definition supersedes the old one whole.
        """
        definition = replace(definition, lineage=tuple(definition.lineage))
        current = self._registry.get(definition.name)
        if current is not None and current.version == definition.version:
            return current
        if current is not None:
            self._superseded.setdefault(definition.name, []).append(current)
            logger.info(
                "feature_store.feature_superseded",
                feature=definition.name,
                old_version=current.version,
                new_version=definition.version,
            )
        self._registry[definition.name] = definition
        return definition

    def get_feature(self, name: str) -> FeatureDefinition | None:
        return self._registry.get(name)

    def list_features(self) -> list[FeatureDefinition]:
        return list(self._registry.values())

    def superseded_versions(self, name: str) -> list[str]:
        return [d.version for d in self._superseded.get(name, [])]

    # ── Batch build ──────────────────────────────────────────────────────

    def build_batch_features(self, records: list[CanonicalRecord]) -> FeatureVector:
        if not records:
            return dict(self._latest_vector)

        frame = pd.DataFrame(
            [(r.timestamp, r.kpi, r.value) for r in records],
            columns=["timestamp", "kpi", "value"],
        ).sort_values("timestamp", kind="stable")

        stats = frame.groupby("kpi", sort=True)["value"].agg(["mean", "std", "count", "last"])

        vector: FeatureVector = {}
        for kpi, row in stats.iterrows():
            vector[f"avg_{kpi}"] = float(row["mean"])
            vector[f"std_{kpi}"] = 0.0 if pd.isna(row["std"]) else float(row["std"])
            vector[f"count_{kpi}"] = float(row["count"])
            vector[f"last_{kpi}"] = float(row["last"])

            if f"avg_{kpi}" not in self._registry:
                self.register_feature(
                    FeatureDefinition(
                        name=f"avg_{kpi}",
                        version="1.0.0",
                        transformation="mean(batch_window)",
                        lineage=(raw_lineage(str(kpi)),),
                    )
                )

        for kpi, group in frame.groupby("kpi", sort=True):
            state = self._kpis.setdefault(str(kpi), _KpiState(history=deque(maxlen=self.history_limit)))
            state.history.extend(zip(group["timestamp"], group["value"].astype(float)))
            self._check_drift(str(kpi), state, group["value"].to_numpy(dtype=float))

        self._latest_vector = vector
        self.last_built_at = datetime.now(timezone.utc)
        self.bus.publish(FeaturesUpdated(size=len(vector)))
        logger.info("feature_store.features_built", kpis=len(stats), size=len(vector))
        return dict(vector)

    def get_latest_feature_vector(self) -> FeatureVector:
        return dict(self._latest_vector)

    def history(self, kpi: str) -> pd.Series:
        """Observation history for a KPI as a time-indexed Series (oldest first)."""
        state = self._kpis.get(kpi)
        if state is None or not state.history:
            return pd.Series(dtype=float)
        timestamps, values = zip(*state.history)
        series = pd.Series(values, index=pd.to_datetime(list(timestamps), utc=True), dtype=float)
        return series.sort_index(kind="stable")

    def known_kpis(self) -> list[str]:
        return sorted(self._kpis)

    # ── Drift ────────────────────────────────────────────────────────────

    def set_baseline(self, kpi: str, values) -> None:
        state = self._kpis.setdefault(kpi, _KpiState(history=deque(maxlen=self.history_limit)))
        state.baseline = np.asarray(values, dtype=float)
        state.last_assessment = None
        self._set_drift_status(kpi, "stable")

    def _check_drift(self, kpi: str, state: _KpiState, values: np.ndarray) -> None:
        if values.size < self.thresholds.min_samples:
            return
        if state.baseline is None:
            state.baseline = values.copy()
            logger.info("feature_store.baseline_set", kpi=kpi, samples=int(values.size))
            return

        assessment = assess_drift(state.baseline, values, self.thresholds)
        state.last_assessment = assessment
        changed = self._set_drift_status(kpi, assessment.status)

        if assessment.status != "stable" and changed:
            logger.warning(
                "feature_store.drift_detected",
                kpi=kpi,
                status=assessment.status,
                psi=assessment.psi,
                ks_pvalue=round(assessment.ks_pvalue, 6),
            )
            for feature in self._features_for(kpi):
                self.bus.publish(
                    FeatureDriftDetected(
                        feature=feature.name,
                        kpi=kpi,
                        status=assessment.status,
                        psi=assessment.psi,
                        ks_pvalue=assessment.ks_pvalue,
                    )
                )

    def _features_for(self, kpi: str) -> list[FeatureDefinition]:
        lineage = raw_lineage(kpi)
        return [d for d in self._registry.values() if lineage in d.lineage]

    def _set_drift_status(self, kpi: str, status: DriftStatus) -> bool:
        """Returns True when any feature's status actually changed."""
        changed = False
        for feature in self._features_for(kpi):
            if feature.drift_status != status:
                self._registry[feature.name] = replace(feature, drift_status=status)
                changed = True
        return changed

    def drift_report(self) -> dict[str, dict[str, Any]]:
        report = {}
        for kpi, state in sorted(self._kpis.items()):
            a = state.last_assessment
            report[kpi] = {
                "baseline_samples": 0 if state.baseline is None else int(state.baseline.size),
                "psi": a.psi if a else None,
                "ks_pvalue": a.ks_pvalue if a else None,
                "status": a.status if a else "stable",
            }
        return report

    def get_status(self) -> dict[str, Any]:
        return {
            "features": len(self._registry),
            "kpis": self.known_kpis(),
            "latest_vector_size": len(self._latest_vector),
            "last_built_at": self.last_built_at.isoformat() if self.last_built_at else None,
            "drifted": sorted(d.name for d in self._registry.values() if d.drift_status == "drifted"),
        }
