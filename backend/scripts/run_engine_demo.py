#!/usr/bin/env python3
"""Run one ingest → forecast → prescribe cycle through both engines.

Examples:
  python backend/scripts/run_engine_demo.py
  python backend/scripts/run_engine_demo.py --days 14 --horizon P30D --samples 80 --pretty
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any

import numpy as np
import structlog

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from prescriptive.engine import build_engines


def _synthetic_records(days: int, per_day: int, seed: int) -> list[dict[str, Any]]:
    rng = np.random.default_rng(seed)
    start = datetime.now(timezone.utc) - timedelta(days=days)
    records = []
    for day in range(days):
        for slot in range(per_day):
            ts = start + timedelta(days=day, hours=24 * slot / per_day)
            records.append(
                {
                    "timestamp": ts.isoformat(),
                    "kpi": "revenue",
                    "value": round(float(rng.normal(1000.0 + 5.0 * day, 60.0)), 2),
                    "source_id": "demo:pos",
                }
            )
    return records


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    engines = build_engines(get_settings())
    ingest = engines.predictive.ingest(_synthetic_records(args.days, args.per_day, args.seed))
    forecast = await engines.predictive.generate_forecast(args.horizon, ["revenue"])
    await engines.bus.drain()

    response = await engines.prescriptive.prescribe(
        {
            "horizon": args.horizon,
            "scenario_config": {"samples": args.samples, "strategy": args.strategy},
        }
    )
    await engines.bus.drain()

    return {
        "status": "success",
        "ingest": ingest,
        "forecast": forecast.to_dict(),
        "prescription": {
            "best_policy_id": response.best_policy["policy_id"] if response.best_policy else None,
            "pareto_front_meta": response.pareto_front_meta.model_dump(),
            "rationale": response.explanations.rationale,
            "audit_ref": response.audit_ref.model_dump(),
            "events_emitted": response.events_emitted,
        },
        "events": engines.bus.get_metrics()["published"],
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a forecasting + prescription demo cycle")
    parser.add_argument("--days", type=int, default=7)
    parser.add_argument("--per-day", type=int, default=15)
    parser.add_argument("--horizon", choices=["P7D", "P30D", "P90D"], default="P7D")
    parser.add_argument("--samples", type=int, default=50)
    parser.add_argument("--strategy", default="triangular")
    parser.add_argument("--seed", type=int, default=7)
    parser.add_argument("--verbose", action="store_true", help="Emit info-level engine logs on stderr")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    args = parser.parse_args()

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO if args.verbose else logging.WARNING),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )

    try:
        summary = asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001
        summary = {"status": "failed", "error": str(exc)}

    if args.pretty:
        print(json.dumps(summary, indent=2, sort_keys=True, default=str))
    else:
        print(json.dumps(summary, default=str))
    return 0 if summary["status"] == "success" else 1


if __name__ == "__main__":
    raise SystemExit(main())
