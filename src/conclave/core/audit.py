"""
Run snapshots for audit and post-mortem.
"""

import json
from pathlib import Path
from typing import Any

from ..observability.logging import get_logger
from ..observability.probe import get_run_metrics
from .output_store import OutputStore
from .run import Run
from .threads import ThreadLedger

logger = get_logger(__name__)


def create_run_snapshot(
    run: Run,
    output_store: OutputStore | None = None,
    ledger: ThreadLedger | None = None,
) -> dict[str, Any]:
    """
    Build a JSON-ready snapshot of a run.

    Args:
        run: Run record
        output_store: Outputs to include (globals, phase outputs, final output)
        ledger: Threads to include

    Returns:
        Snapshot dictionary with run state, outputs, threads and probe timings
    """
    timings: dict[str, Any] = {}
    for op, samples in get_run_metrics(run.id).items():
        durations = [s["duration_ms"] for s in samples]
        timings[op] = {
            "count": len(samples),
            "total_ms": sum(durations),
            "max_ms": max(durations),
            "failures": sum(1 for s in samples if not s["success"]),
        }

    snapshot = {
        "run": run.to_dict(),
        "outputs": output_store.snapshot() if output_store is not None else None,
        "threads": ledger.snapshot() if ledger is not None else None,
        "timings_ms": timings,
        "metadata": {
            "total_operations": sum(t["count"] for t in timings.values()),
            "failed_operations": sum(t["failures"] for t in timings.values()),
            "duration_s": run.duration_s(),
        },
    }
    return snapshot


def save_run_snapshot(
    run: Run,
    output_store: OutputStore | None = None,
    ledger: ThreadLedger | None = None,
    artifacts_dir: Path | str = "artifacts",
) -> Path:
    """Write `run_<id>.json` under `artifacts_dir` and return its path."""
    artifacts_path = Path(artifacts_dir)
    artifacts_path.mkdir(parents=True, exist_ok=True)

    snapshot_file = artifacts_path / f"run_{run.id}.json"
    snapshot = create_run_snapshot(run, output_store, ledger)
    try:
        snapshot_file.write_text(json.dumps(snapshot, indent=2, default=str))
    except OSError as e:
        logger.error(f"Failed to save run snapshot: {e}", run_id=run.id)
        raise
    logger.info(f"Saved run snapshot: {snapshot_file}", run_id=run.id)
    return snapshot_file
