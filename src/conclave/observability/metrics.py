"""
Engine metrics over OpenTelemetry with in-process aggregates.

The OTel instruments feed whatever exporter the host configures; the aggregates
back the `/metrics` endpoint and the tests without needing an exporter.
"""

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any

from opentelemetry.metrics import Counter, Histogram, Meter, NoOpMeter

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection for runs, phases, actions and participants."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}

        self._runs_by_status: dict[str, int] = defaultdict(int)
        self._phase_durations: dict[str, list[float]] = defaultdict(list)
        self._action_calls: dict[str, int] = defaultdict(int)
        self._action_failures: dict[str, int] = defaultdict(int)
        self._action_retries: dict[str, int] = defaultdict(int)
        self._participant_calls: dict[str, int] = defaultdict(int)
        self._participant_failures: dict[str, int] = defaultdict(int)
        self._participant_timeouts: dict[str, int] = defaultdict(int)
        self._participant_durations: dict[str, list[float]] = defaultdict(list)

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        self._counters["runs_total"] = self.meter.create_counter(
            "conclave_runs_total", description="Finished pipeline runs by status", unit="1"
        )
        self._histograms["run_duration"] = self.meter.create_histogram(
            "conclave_run_duration_seconds", description="Pipeline run duration", unit="s"
        )
        self._histograms["phase_duration"] = self.meter.create_histogram(
            "conclave_phase_duration_seconds", description="Phase duration", unit="s"
        )
        self._counters["action_calls_total"] = self.meter.create_counter(
            "conclave_action_calls_total", description="Action executions", unit="1"
        )
        self._counters["action_retries_total"] = self.meter.create_counter(
            "conclave_action_retries_total", description="Action retry attempts", unit="1"
        )
        self._counters["participant_calls_total"] = self.meter.create_counter(
            "conclave_participant_calls_total", description="Participant invocations", unit="1"
        )
        self._histograms["participant_duration"] = self.meter.create_histogram(
            "conclave_participant_duration_seconds",
            description="Participant invocation duration",
            unit="s",
        )

    def counter(self, name: str, description: str = "", unit: str = "1") -> Counter:
        """Get or create a counter metric."""
        if name not in self._counters:
            self._counters[name] = self.meter.create_counter(
                f"conclave_{name}", description=description, unit=unit
            )
        return self._counters[name]

    def histogram(self, name: str, description: str = "", unit: str = "1") -> Histogram:
        """Get or create a histogram metric."""
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(
                f"conclave_{name}", description=description, unit=unit
            )
        return self._histograms[name]

    def record_run(self, pipeline_id: str, status: str, duration: float) -> None:
        attributes = {"pipeline_id": pipeline_id, "status": status}
        self._counters["runs_total"].add(1, attributes)
        self._histograms["run_duration"].record(duration, attributes)
        self._runs_by_status[status] += 1

    def record_phase(self, phase_id: str, duration: float) -> None:
        self._histograms["phase_duration"].record(duration, {"phase_id": phase_id})
        self._phase_durations[phase_id].append(duration)

    def record_action(self, action_id: str, success: bool, attempts: int) -> None:
        attributes = {"action_id": action_id, "success": str(success).lower()}
        self._counters["action_calls_total"].add(1, attributes)
        self._action_calls[action_id] += 1
        if not success:
            self._action_failures[action_id] += 1
        if attempts > 1:
            self._counters["action_retries_total"].add(attempts - 1, {"action_id": action_id})
            self._action_retries[action_id] += attempts - 1

    def record_participant_call(
        self, participant_id: str, duration: float, success: bool, timed_out: bool = False
    ) -> None:
        attributes = {"participant_id": participant_id, "success": str(success).lower()}
        self._counters["participant_calls_total"].add(1, attributes)
        self._histograms["participant_duration"].record(duration, attributes)

        self._participant_calls[participant_id] += 1
        if not success:
            self._participant_failures[participant_id] += 1
        if timed_out:
            self._participant_timeouts[participant_id] += 1
        self._participant_durations[participant_id].append(duration)

    def get_engine_metrics(self) -> dict[str, Any]:
        """Aggregated engine metrics for reporting."""
        participants = {}
        for participant_id, calls in self._participant_calls.items():
            durations = self._participant_durations[participant_id]
            participants[participant_id] = {
                "calls": calls,
                "failures": self._participant_failures[participant_id],
                "timeouts": self._participant_timeouts[participant_id],
                "avg_duration": sum(durations) / len(durations) if durations else 0.0,
            }

        actions = {
            action_id: {
                "calls": calls,
                "failures": self._action_failures[action_id],
                "retries": self._action_retries[action_id],
            }
            for action_id, calls in self._action_calls.items()
        }

        return {
            "runs": dict(self._runs_by_status),
            "actions": actions,
            "participants": participants,
        }


# Global metrics collector instance
_metrics_collector: MetricsCollector | None = None


def setup_metrics(meter: Meter) -> MetricsCollector:
    """Setup global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector, backed by a no-op meter if none was set up."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(NoOpMeter("conclave"))
    return _metrics_collector


@contextmanager
def timer(metric_name: str, attributes: dict[str, str] | None = None):
    """Context manager recording elapsed seconds into a histogram."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        get_metrics_collector().histogram(
            f"{metric_name}_duration", "Operation duration", "s"
        ).record(duration, attributes or {})
