"""
Tests for structured logging, probes, tracing and metrics.
"""

import asyncio
import logging

import pytest
from conftest import reset_all_global_state
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from conclave.observability import logging as obs_logging
from conclave.observability.logging import StructuredFormatter, get_logger, set_run_id
from conclave.observability.metrics import get_metrics_collector, timer
from conclave.observability.probe import get_run_metrics, probe
from conclave.observability.tracing import get_tracing_manager, setup_tracing, trace_span


def make_record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("conclave.core.supervisor", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredLogging:
    """Test the key=value formatter and logger wrapper."""

    def test_format_includes_run_and_fields(self):
        set_run_id("run-42")
        try:
            line = StructuredFormatter().format(make_record("Run started", phase_id="draft", ms=12.34))
        finally:
            set_run_id(None)

        assert "level=INFO" in line
        assert "run=run-42" in line
        assert "mod=supervisor" in line
        assert "ms=12.3" in line
        assert 'msg="Run started"' in line
        assert "phase_id=draft" in line

    def test_reserved_keys_are_dropped(self, caplog):
        logger = get_logger("conclave.test")
        with caplog.at_level(logging.INFO, logger="conclave.test"):
            logger.info("reserved", name="clash", phase_id="p1")

        record = caplog.records[-1]
        assert record.name == "conclave.test"
        assert record.phase_id == "p1"

    def test_logger_cache(self):
        assert get_logger("conclave.a") is get_logger("conclave.a")
        assert "conclave.a" in obs_logging._loggers


class TestProbe:
    """Test per-run timing samples."""

    def test_records_success_and_failure(self):
        with probe("phase.execute", run_id="r1", phase_id="draft"):
            pass
        with pytest.raises(ValueError):
            with probe("phase.execute", run_id="r1", phase_id="review"):
                raise ValueError("boom")

        samples = get_run_metrics("r1")["phase.execute"]
        assert [s["success"] for s in samples] == [True, False]
        assert samples[1]["error_type"] == "ValueError"
        assert samples[0]["labels"] == {"phase_id": "draft"}

    def test_uses_context_run_id(self):
        set_run_id("ctx-run")
        try:
            with probe("action.execute"):
                pass
        finally:
            set_run_id(None)

        assert "action.execute" in get_run_metrics("ctx-run")

    def test_without_run_id_nothing_stored(self):
        with probe("orphan"):
            pass
        assert get_run_metrics("orphan") == {}

    def test_reset_clears_samples(self):
        with probe("phase.execute", run_id="r2"):
            pass
        assert get_run_metrics("r2")

        reset_all_global_state()

        assert get_run_metrics("r2") == {}


class TestTracing:
    """Test span creation through the tracing manager."""

    def test_noop_by_default(self):
        manager = get_tracing_manager()
        assert not manager.initialized
        with manager.span("noop") as span:
            assert not span.is_recording()

    @pytest.mark.asyncio
    async def test_trace_span_records_async_calls(self):
        manager = setup_tracing(service_name="conclave-test")
        exporter = InMemorySpanExporter()
        manager.tracer_provider.add_span_processor(SimpleSpanProcessor(exporter))

        @trace_span("agent.invoke", {"component": "test"})
        async def invoke():
            await asyncio.sleep(0)
            return "done"

        @trace_span()
        def fail():
            raise RuntimeError("broken")

        assert await invoke() == "done"
        with pytest.raises(RuntimeError):
            fail()
        manager.shutdown()

        spans = {s.name: s for s in exporter.get_finished_spans()}
        assert spans["agent.invoke"].attributes["component"] == "test"
        failed = next(s for name, s in spans.items() if name.endswith("fail"))
        assert not failed.status.is_ok


class TestMetrics:
    """Test in-process aggregates."""

    def test_engine_metrics(self):
        metrics = get_metrics_collector()
        metrics.record_run("review", "completed", 1.5)
        metrics.record_action("draft", True, 3)
        metrics.record_action("draft", False, 1)
        metrics.record_participant_call("analyst", 0.2, True)
        metrics.record_participant_call("analyst", 0.4, False, timed_out=True)

        data = metrics.get_engine_metrics()

        assert data["runs"] == {"completed": 1}
        assert data["actions"]["draft"] == {"calls": 2, "failures": 1, "retries": 2}
        assert data["participants"]["analyst"]["calls"] == 2
        assert data["participants"]["analyst"]["timeouts"] == 1
        assert data["participants"]["analyst"]["avg_duration"] == pytest.approx(0.3)

    def test_timer(self):
        with timer("snapshot_write", {"kind": "run"}):
            pass
        assert "snapshot_write_duration" in get_metrics_collector()._histograms
