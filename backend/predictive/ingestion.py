"""
Data Ingestion & Canonicalization — raw KPI observations → canonical records.

Data feeds push heterogeneous observation dicts. Each is expected to carry a
timestamp, a KPI identifier and a numeric value, but field names vary by
source, so a small alias table maps them onto the canonical schema:

    timestamp  ← timestamp | ts | time | date
    kpi        ← kpi | metric | kpi_name
    value      ← value | amount | val
    source_id  ← source_id | source
    quality    ← quality_score | quality

Ingestion is best-effort: malformed records (missing/non-numeric value,
missing KPI, unparseable timestamp, negative quality) are dropped and
counted, never raised. Accepted records are validated against
CanonicalRecordSchema and handed to the feature store.
"""

from __future__ import annotations

import math
import numbers
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import pandas as pd
import structlog
from pandera.pandas import Check, Column, DataFrameSchema

from core.events import DataQualityIssue, EventBus, IngestionCompleted

if TYPE_CHECKING:
    from predictive.feature_store import FeatureStore

logger = structlog.get_logger()

FIELD_ALIASES = {
    "timestamp": ("timestamp", "ts", "time", "date"),
    "kpi": ("kpi", "metric", "kpi_name"),
    "value": ("value", "amount", "val"),
    "source_id": ("source_id", "source"),
    "quality_score": ("quality_score", "quality"),
}

# Fields counted for the completeness-based quality score
COMPLETENESS_FIELDS = ("timestamp", "kpi", "value", "source_id")
LOW_QUALITY_THRESHOLD = 0.9
DEFAULT_SOURCE = "unknown_source"

# Epoch numbers above this are milliseconds, not seconds (≈ year 5138 in seconds)
_EPOCH_MS_CUTOFF = 1e11


@dataclass(frozen=True)
class CanonicalRecord:
    """One canonical KPI observation. Immutable once canonicalized."""

    timestamp: datetime
    kpi: str
    value: float
    source_id: str
    quality_score: float
    dimensions: dict[str, Any] = field(default_factory=dict)
    freshness_lag_seconds: float = 0.0


CanonicalRecordSchema = DataFrameSchema(
    columns={
        "timestamp": Column(nullable=False),
        "kpi": Column(
            checks=[Check(lambda s: s.astype(str).str.len() > 0, error="kpi must be non-empty")],
            nullable=False,
        ),
        "value": Column(
            float,
            checks=[Check(lambda s: s.map(math.isfinite), error="value must be finite")],
            nullable=False,
            coerce=True,
        ),
        "source_id": Column(nullable=False),
        "quality_score": Column(
            float,
            checks=[Check.in_range(0.0, 1.0, error="quality_score must be in [0, 1]")],
            nullable=False,
            coerce=True,
        ),
    },
    strict=False,
    name="CanonicalRecord",
)


def _pick(raw: dict[str, Any], canonical: str) -> Any:
    for alias in FIELD_ALIASES[canonical]:
        if alias in raw and raw[alias] is not None:
            return raw[alias]
    return None


def _to_float(raw: Any) -> float | None:
    """Numbers and numeric strings only; bools, containers and NaN/inf are rejected."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, numbers.Real):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            return None
    else:
        return None
    return value if math.isfinite(value) else None


def parse_timestamp(value: Any) -> datetime | None:
    """datetime, ISO-8601 string, epoch seconds or epoch milliseconds → aware UTC."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, numbers.Real):
        if not math.isfinite(value):
            return None
        seconds = value / 1000.0 if abs(value) > _EPOCH_MS_CUTOFF else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        ts = pd.to_datetime(value, errors="coerce", utc=True)
    except (TypeError, ValueError):
        return None
    if not isinstance(ts, pd.Timestamp):  # NaT and index results included
        return None
    return ts.to_pydatetime()


class DataIngestion:
    """Normalize raw observation batches into canonical records."""

    def __init__(
        self,
        bus: EventBus,
        feature_store: FeatureStore | None = None,
        sources: list[str] | None = None,
    ):
        self.bus = bus
        self.feature_store = feature_store
        self.sources = list(sources or ["internal:kpi", "internal:ops"])
        self.last_ingestion_at: datetime | None = None
        self.total_accepted = 0
        self.total_dropped = 0
        self.last_batch: dict[str, Any] = {"accepted": 0, "dropped": 0}

    def ingest_batch(self, raw_records: list[dict[str, Any]]) -> list[CanonicalRecord]:
        """
        Canonicalize a batch, drop malformed rows, trigger feature rebuild.

        Returns the accepted canonical records. Accepted/dropped counts are
        exposed through ``last_batch``, ``get_status()`` and an
        IngestionCompleted event.
        """
        now = datetime.now(timezone.utc)
        batch_id = f"batch_{uuid.uuid4().hex[:12]}"
        self.last_ingestion_at = now

        frame = self._to_frame(raw_records or [], now)
        received = len(raw_records or [])

        if frame.empty:
            records: list[CanonicalRecord] = []
        else:
            frame = CanonicalRecordSchema.validate(frame)
            records = [
                CanonicalRecord(
                    timestamp=row.timestamp.to_pydatetime(),
                    kpi=row.kpi,
                    value=float(row.value),
                    source_id=row.source_id,
                    quality_score=float(row.quality_score),
                    dimensions=row.dimensions,
                    freshness_lag_seconds=max(0.0, (now - row.timestamp.to_pydatetime()).total_seconds()),
                )
                for row in frame.itertuples(index=False)
            ]

        accepted = len(records)
        dropped = received - accepted
        self.total_accepted += accepted
        self.total_dropped += dropped
        self.last_batch = {"batch_id": batch_id, "accepted": accepted, "dropped": dropped}

        low_quality = sum(1 for r in records if r.quality_score < LOW_QUALITY_THRESHOLD)
        if low_quality:
            logger.warning("ingestion.low_quality_records", batch_id=batch_id, count=low_quality)
            self.bus.publish(
                DataQualityIssue(batch_id=batch_id, count=low_quality, threshold=LOW_QUALITY_THRESHOLD)
            )

        logger.info("ingestion.batch_completed", batch_id=batch_id, accepted=accepted, dropped=dropped)
        self.bus.publish(IngestionCompleted(batch_id=batch_id, accepted=accepted, dropped=dropped))

        if self.feature_store is not None and records:
            self.feature_store.build_batch_features(records)

        return records

    def _to_frame(self, raw_records: list[dict[str, Any]], now: datetime) -> pd.DataFrame:
        rows = []
        for raw in raw_records:
            if not isinstance(raw, dict):
                continue
            row = self._canonicalize(raw, now)
            if row is not None:
                rows.append(row)
        columns = ["timestamp", "kpi", "value", "source_id", "quality_score", "dimensions"]
        if not rows:
            return pd.DataFrame(columns=columns)
        frame = pd.DataFrame(rows, columns=columns)
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
        return frame

    @staticmethod
    def _canonicalize(raw: dict[str, Any], now: datetime) -> dict[str, Any] | None:
        kpi = _pick(raw, "kpi")
        if kpi is None or not str(kpi).strip():
            return None

        value = _to_float(_pick(raw, "value"))
        if value is None:
            return None

        raw_ts = _pick(raw, "timestamp")
        if raw_ts is None:
            timestamp = now
        else:
            timestamp = parse_timestamp(raw_ts)
            if timestamp is None:
                return None

        raw_quality = _pick(raw, "quality_score")
        if raw_quality is not None:
            quality = _to_float(raw_quality)
            if quality is None or quality < 0:
                return None
            quality = min(quality, 1.0)
        else:
            present = sum(1 for f in COMPLETENESS_FIELDS if _pick(raw, f) is not None)
            quality = present / len(COMPLETENESS_FIELDS)

        source = _pick(raw, "source_id")
        dimensions = raw.get("dimensions")
        return {
            "timestamp": timestamp,
            "kpi": str(kpi).strip(),
            "value": float(value),
            "source_id": str(source) if source is not None else DEFAULT_SOURCE,
            "quality_score": quality,
            "dimensions": dict(dimensions) if isinstance(dimensions, dict) else {},
        }

    def get_status(self) -> dict[str, Any]:
        return {
            "sources": list(self.sources),
            "last_ingestion_at": self.last_ingestion_at.isoformat() if self.last_ingestion_at else None,
            "total_accepted": self.total_accepted,
            "total_dropped": self.total_dropped,
            "last_batch": dict(self.last_batch),
        }
