import json
import os
import subprocess
import sys
from pathlib import Path

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "run_engine_demo.py"


def _run(*args: str) -> subprocess.CompletedProcess:
    env = {**os.environ, "APP_ENV": "test", "OPTIMIZER_MAX_ITERATIONS": "4", "DEBUG": "false"}
    return subprocess.run(
        [sys.executable, str(SCRIPT), *args],
        capture_output=True,
        text=True,
        env=env,
        timeout=120,
    )


def test_demo_cycle_reports_success():
    proc = _run("--days", "7", "--per-day", "15", "--samples", "20")
    assert proc.returncode == 0, proc.stderr

    summary = json.loads(proc.stdout.strip().splitlines()[-1])
    assert summary["status"] == "success"
    assert summary["ingest"] == {"accepted": 105, "dropped": 0}
    assert summary["forecast"]["kpis"][0]["name"] == "revenue"
    assert summary["prescription"]["best_policy_id"] is not None
    assert summary["prescription"]["audit_ref"]["snapshot_hash"].startswith("OBJ_")
    assert summary["events"]["PRESCRIPTION_COMPLETED"] == 1


def test_invalid_horizon_is_rejected_by_argparse():
    proc = _run("--horizon", "P1D")
    assert proc.returncode == 2
