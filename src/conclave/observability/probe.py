"""
Performance probes keyed by run ID.

Every probe logs its duration and, when a run ID is known, stores the timing so
run snapshots can report where the time went.
"""

import contextlib
import time
from typing import Any

from .logging import get_logger, get_run_id
from .tracing import get_tracing_manager

log = get_logger("conclave.probe")

# Timings per run ID, op -> list of samples
_METRICS_STORE: dict[str, dict[str, list[dict[str, Any]]]] = {}


@contextlib.contextmanager
def probe(op: str, run_id: str | None = None, **labels):
    """
    Time an operation inside a span.

    Args:
        op: Operation name (e.g. "phase.execute")
        run_id: Run to attribute the timing to (defaults to the context run ID)
        **labels: Additional labels stored with the sample
    """
    run_id = run_id or get_run_id()
    start_time = time.perf_counter()
    ok = True
    error_type = None

    with get_tracing_manager().span(op, labels):
        try:
            yield
        except BaseException as e:
            ok = False
            error_type = type(e).__name__
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log.debug(
                f"op={op} ok={str(ok).lower()}",
                op=op,
                ms=duration_ms,
                **({"error": error_type} if error_type else {}),
                **labels,
            )
            if run_id:
                _METRICS_STORE.setdefault(run_id, {}).setdefault(op, []).append(
                    {
                        "duration_ms": duration_ms,
                        "success": ok,
                        "error_type": error_type,
                        "labels": labels,
                        "timestamp": time.time(),
                    }
                )


def get_run_metrics(run_id: str) -> dict[str, list[dict[str, Any]]]:
    """Get all probe samples recorded for a run."""
    return _METRICS_STORE.get(run_id, {})
