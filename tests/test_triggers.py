"""
Tests for trigger graph construction and pipeline validation.
"""

import pytest

from conclave.core.definitions import Pipeline
from conclave.core.errors import InvalidPipeline, MissingDesignatedAction
from conclave.core.state_machine import ActionLifecycle
from conclave.core.triggers import Dependency, TriggerGraph, validate_pipeline


def phase_with(*actions, **extra):
    return Pipeline.model_validate(
        {"id": "p", "phases": [{"id": "ph", "actions": list(actions), **extra}]}
    ).phases[0]


def trigger(kind, target=None, state=None):
    spec = {"type": kind}
    if target:
        spec["targetActionId"] = target
    if state:
        spec["targetState"] = state
    return {"execution": {"trigger": spec}}


class TestTriggerGraph:
    """Test dependency derivation and ordering."""

    def test_sequential_chain(self):
        graph = TriggerGraph(phase_with({"id": "a"}, {"id": "b"}, {"id": "c"}))

        assert graph.dependencies["a"] is None
        assert graph.dependencies["b"] == Dependency("a", ActionLifecycle.RESPOND)
        assert graph.dependencies["c"] == Dependency("b", ActionLifecycle.RESPOND)

    def test_immediate_actions_have_no_dependency(self):
        graph = TriggerGraph(
            phase_with(
                {"id": "a", **trigger("immediate")},
                {"id": "b", **trigger("immediate")},
                {"id": "c", **trigger("await", "a")},
            )
        )
        assert graph.dependencies["a"] is None
        assert graph.dependencies["b"] is None
        assert graph.dependencies["c"] == Dependency("a", ActionLifecycle.RESPOND)

    def test_on_trigger_uses_target_state(self):
        graph = TriggerGraph(
            phase_with({"id": "a"}, {"id": "b", **trigger("on", "a", "start")})
        )
        assert graph.dependencies["b"] == Dependency("a", ActionLifecycle.START)

    def test_await_always_means_respond(self):
        graph = TriggerGraph(
            phase_with({"id": "a"}, {"id": "b", **trigger("await", "a", "start")})
        )
        assert graph.dependencies["b"].state is ActionLifecycle.RESPOND

    def test_missing_target_rejected(self):
        with pytest.raises(InvalidPipeline, match="undefined action 'ghost'"):
            TriggerGraph(phase_with({"id": "a", **trigger("await", "ghost")}))

    def test_missing_target_id_rejected(self):
        with pytest.raises(InvalidPipeline):
            TriggerGraph(phase_with({"id": "a", **trigger("on")}))

    def test_self_trigger_rejected(self):
        with pytest.raises(InvalidPipeline, match="itself"):
            TriggerGraph(phase_with({"id": "a", **trigger("await", "a")}))

    def test_cycle_rejected(self):
        with pytest.raises(InvalidPipeline, match="Circular"):
            TriggerGraph(
                phase_with(
                    {"id": "a", **trigger("await", "b")},
                    {"id": "b", **trigger("on", "a", "start")},
                )
            )

    def test_duplicate_action_ids_rejected(self):
        with pytest.raises(InvalidPipeline, match="Duplicate action"):
            TriggerGraph(phase_with({"id": "a"}, {"id": "a"}))


class TestValidatePipeline:
    """Test run-level structural checks."""

    def test_zero_phases_rejected(self):
        with pytest.raises(InvalidPipeline, match="no phases"):
            validate_pipeline(Pipeline(id="empty"))

    def test_duplicate_phase_ids_rejected(self):
        pipeline = Pipeline.model_validate({"id": "p", "phases": [{"id": "x"}, {"id": "x"}]})
        with pytest.raises(InvalidPipeline, match="Duplicate phase"):
            validate_pipeline(pipeline)

    def test_returns_graph_per_phase(self):
        pipeline = Pipeline.model_validate(
            {"id": "p", "phases": [{"id": "x", "actions": [{"id": "a"}]}, {"id": "y"}]}
        )
        graphs = validate_pipeline(pipeline)
        assert set(graphs) == {"x", "y"}
        assert graphs["y"].dependencies == {}

    def test_designated_action_must_exist(self):
        pipeline = Pipeline.model_validate(
            {
                "id": "p",
                "phases": [
                    {
                        "id": "x",
                        "output": {"consolidation": "designated", "consolidationActionId": "zzz"},
                        "actions": [{"id": "a"}],
                    }
                ],
            }
        )
        with pytest.raises(MissingDesignatedAction):
            validate_pipeline(pipeline)
