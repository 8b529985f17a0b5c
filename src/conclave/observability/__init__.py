"""
Observability for the Conclave run engine.

Components:
- Structured logging: single-line key=value records carrying the active run ID
- Tracing: OpenTelemetry spans for runs, phases, actions and participant calls
- Metrics: OpenTelemetry instruments plus in-process aggregates
- Probes: per-run operation timings used by run snapshots

Usage:
    >>> from conclave.observability import get_logger, probe
    >>>
    >>> logger = get_logger(__name__)
    >>> with probe("phase.execute", phase_id="draft"):
    ...     logger.info("Phase started", phase_id="draft")

Configuration:
    - CONCLAVE_OBSERVABILITY__LOG_LEVEL=INFO
    - CONCLAVE_OBSERVABILITY__ENABLE_TRACING=true
    - CONCLAVE_OBSERVABILITY__OTLP_ENDPOINT=http://collector:4317
"""

from .logging import get_logger, get_run_id, set_run_id, setup_logging
from .metrics import get_metrics_collector, timer
from .probe import get_run_metrics, probe
from .tracing import get_tracing_manager, setup_tracing, trace_span

__all__ = [
    "get_logger",
    "get_run_id",
    "set_run_id",
    "setup_logging",
    "get_metrics_collector",
    "timer",
    "probe",
    "get_run_metrics",
    "get_tracing_manager",
    "setup_tracing",
    "trace_span",
]
