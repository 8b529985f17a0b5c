"""
Global pytest configuration and fixtures for test isolation.

Resets process-wide state (settings cache, container, metrics, tracing, probe
store) between tests and provides a scripted agent invoker and an in-memory
directory with a small organization.
"""

import asyncio
from typing import Any

import pytest

from conclave.agents.base import InMemoryDirectory, Position, PositionTier, Team
from conclave.config.settings import EngineConfig
from conclave.core.definitions import Pipeline
from conclave.core.supervisor import RunSupervisor


def reset_all_global_state():
    """Reset all global state between tests."""
    from conclave.api.server import _reset_globals_for_tests
    from conclave.config.container import get_container
    from conclave.config.settings import get_settings
    from conclave.observability import metrics, tracing
    from conclave.observability.probe import _METRICS_STORE

    _reset_globals_for_tests()
    get_settings.cache_clear()
    get_container.cache_clear()
    metrics._metrics_collector = None
    tracing._tracing_manager = None
    _METRICS_STORE.clear()


@pytest.fixture(autouse=True)
def test_isolation():
    """Per-test isolation to ensure clean state for each test."""
    reset_all_global_state()
    yield
    reset_all_global_state()


class FakeInvoker:
    """
    Scripted AgentInvoker.

    Args:
        responses: participant id -> value, list of values (consumed in order,
            the last one repeats) or callable(prompt) -> value
        default: value for participants without a script
        delays: participant id -> seconds to sleep before answering
        errors: participant id -> exception raised on every call
        fail_times: participant id -> number of leading calls that raise
    """

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        default: Any = "ok",
        delays: dict[str, float] | None = None,
        errors: dict[str, Exception] | None = None,
        fail_times: dict[str, int] | None = None,
    ):
        self.responses = {
            k: list(v) if isinstance(v, list) else v for k, v in (responses or {}).items()
        }
        self.default = default
        self.delays = delays or {}
        self.errors = errors or {}
        self.fail_times = dict(fail_times or {})
        self.calls: list[tuple[str, str]] = []
        self.started: list[str] = []
        self.cancelled: list[str] = []

    def calls_for(self, participant_id: str) -> list[str]:
        return [prompt for pid, prompt in self.calls if pid == participant_id]

    async def invoke(self, participant, prompt: str, api_config: dict[str, Any]) -> Any:
        self.started.append(participant.id)
        delay = self.delays.get(participant.id, 0)
        if delay:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.cancelled.append(participant.id)
                raise
        self.calls.append((participant.id, prompt))

        if participant.id in self.errors:
            raise self.errors[participant.id]
        if self.fail_times.get(participant.id, 0) > 0:
            self.fail_times[participant.id] -= 1
            raise RuntimeError(f"{participant.id} unavailable")

        script = self.responses.get(participant.id, self.default)
        if callable(script):
            return script(prompt)
        if isinstance(script, list):
            return script.pop(0) if len(script) > 1 else script[0]
        return script


@pytest.fixture
def fake_invoker():
    return FakeInvoker()


@pytest.fixture
def directory():
    """Organization with one team of three positions and a standalone reviewer."""
    return InMemoryDirectory(
        positions=[
            Position(
                id="analyst",
                name="Analyst",
                team_id="core",
                tier=PositionTier.LEADER,
                expertise=["finance", "budget"],
            ),
            Position(
                id="engineer",
                name="Engineer",
                team_id="core",
                expertise=["python", "api"],
            ),
            Position(
                id="designer",
                name="Designer",
                team_id="core",
                expertise=["ui", "layout"],
            ),
            Position(id="reviewer", name="Reviewer", tier=PositionTier.EXECUTIVE),
        ],
        teams=[Team(id="core", name="Core", leader_ids=["analyst"], member_ids=["engineer", "designer"])],
    )


@pytest.fixture
def engine_config():
    return EngineConfig(pause_poll_interval_s=0.01)


@pytest.fixture
def make_supervisor(directory, engine_config):
    """Factory building a supervisor over the test directory."""

    def _make(invoker, **kwargs) -> RunSupervisor:
        kwargs.setdefault("engine", engine_config)
        return RunSupervisor(directory=directory, invoker=invoker, **kwargs)

    return _make


def single_action_pipeline(action: dict[str, Any], **phase: Any) -> Pipeline:
    """One phase holding one action."""
    return Pipeline.model_validate(
        {"id": "solo", "name": "Solo", "phases": [{"id": "p1", "actions": [action], **phase}]}
    )


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll `predicate` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not met in time")
        await asyncio.sleep(interval)
