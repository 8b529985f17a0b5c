"""
Tests for participant resolution and prompt rendering.
"""

import pytest

from conclave.agents.base import Position
from conclave.core.definitions import ActionDefinition, ParticipantMode, ParticipantSpec
from conclave.core.errors import NoParticipantsResolved
from conclave.core.participants import ParticipantResolver, infer_mode
from conclave.core.prompts import format_context, render_template


def action(**participants):
    return ActionDefinition.model_validate({"id": "act", "participants": participants})


class TestInferMode:
    """Test mode inference for specs that omit `mode`."""

    def test_inference(self):
        assert infer_mode(ParticipantSpec(position_id="a")) is ParticipantMode.SINGLE
        assert infer_mode(ParticipantSpec(position_ids=["a", "b"])) is ParticipantMode.MULTIPLE
        assert infer_mode(ParticipantSpec(team_ids=["t"])) is ParticipantMode.TEAM
        assert infer_mode(ParticipantSpec(position_ids=["a"], team_ids=["t"])) is None
        assert infer_mode(ParticipantSpec(mode=ParticipantMode.DYNAMIC)) is ParticipantMode.DYNAMIC


class TestParticipantResolver:
    """Test resolution against the test directory."""

    def test_single(self, directory):
        resolved = ParticipantResolver(directory).resolve(action(positionId="engineer"))
        assert [p.id for p in resolved] == ["engineer"]
        assert resolved[0].agent_id == "engineer"

    def test_multiple_keeps_declared_order(self, directory):
        resolved = ParticipantResolver(directory).resolve(
            action(positionIds=["designer", "analyst"])
        )
        assert [p.id for p in resolved] == ["designer", "analyst"]

    def test_unknown_positions_are_skipped(self, directory):
        resolved = ParticipantResolver(directory).resolve(
            action(positionIds=["ghost", "analyst"])
        )
        assert [p.id for p in resolved] == ["analyst"]

    def test_team_leaders_then_members(self, directory):
        resolved = ParticipantResolver(directory).resolve(action(teamIds=["core"]))
        assert [p.id for p in resolved] == ["analyst", "engineer", "designer"]

    def test_team_members_only(self, directory):
        resolved = ParticipantResolver(directory).resolve(
            action(teamIds=["core"], teamOptions={"includeLeaders": False})
        )
        assert [p.id for p in resolved] == ["engineer", "designer"]

    def test_union_deduplicates_by_agent(self, directory):
        resolved = ParticipantResolver(directory).resolve(
            action(positionIds=["engineer", "reviewer"], teamIds=["core"])
        )
        assert [p.id for p in resolved] == ["engineer", "reviewer", "analyst", "designer"]

    def test_shared_agent_resolves_once(self, directory):
        directory.add_position(Position(id="engineer-2", name="Engineer 2", agent_id="engineer"))
        resolved = ParticipantResolver(directory).resolve(
            action(positionIds=["engineer", "engineer-2"])
        )
        assert [p.id for p in resolved] == ["engineer"]

    def test_team_scope_filters_other_teams(self, directory):
        directory.add_position(Position(id="outsider", name="Outsider", team_id="other"))
        resolved = ParticipantResolver(directory).resolve(
            action(positionIds=["outsider", "analyst", "reviewer"]), team_scope=["core"]
        )
        assert [p.id for p in resolved] == ["analyst", "reviewer"]

    def test_dynamic_matches_expertise(self, directory):
        resolved = ParticipantResolver(directory).resolve(
            action(mode="dynamic", dynamic={"maxSMEs": 2}),
            keyword_sources={"input": "Review the Python API and the UI"},
        )
        assert [p.id for p in resolved] == ["engineer", "designer"]

    def test_dynamic_respects_max_smes(self, directory):
        resolved = ParticipantResolver(directory).resolve(
            action(mode="dynamic", dynamic={"maxSMEs": 1}),
            keyword_sources={"input": "budget for the python ui"},
        )
        assert [p.id for p in resolved] == ["analyst"]

    def test_dynamic_fallback(self, directory):
        resolved = ParticipantResolver(directory).resolve(
            action(mode="dynamic", dynamic={"fallbackPosition": "reviewer"}),
            keyword_sources={"input": "nothing relevant"},
        )
        assert [p.id for p in resolved] == ["reviewer"]

    def test_dynamic_context_source(self, directory):
        resolved = ParticipantResolver(directory).resolve(
            action(mode="dynamic", dynamic={"keywordSource": "context"}),
            keyword_sources={"input": "python", "context": "quarterly budget"},
        )
        assert [p.id for p in resolved] == ["analyst"]

    def test_empty_resolution_is_an_error(self, directory):
        with pytest.raises(NoParticipantsResolved):
            ParticipantResolver(directory).resolve(action(positionIds=["ghost"]))
        with pytest.raises(NoParticipantsResolved):
            ParticipantResolver(directory).resolve(action())


class TestPrompts:
    """Test template rendering."""

    def test_tokens_and_dotted_lookup(self):
        rendered = render_template(
            "{{participant.name}} on {{ phase.name }}: {{input}} ({{globals.topic}})",
            participant={"name": "Analyst"},
            phase={"name": "Draft"},
            input="hello",
            globals={"topic": "budget"},
        )
        assert rendered == "Analyst on Draft: hello (budget)"

    def test_unknown_tokens_render_empty(self):
        assert render_template("a{{missing}}b{{globals.none}}c", globals={}) == "abc"

    def test_empty_template_defaults_to_input(self):
        assert render_template("", input="just this") == "just this"

    def test_structured_values_are_serialized(self):
        assert render_template("{{input}}", input={"a": 1}) == '{"a": 1}'

    def test_format_context(self):
        text = format_context({"static": {"mission": "ship"}, "phase": "notes"})
        assert text == "## static\nmission: ship\n\n## phase\nnotes"
        assert format_context({}) == ""
