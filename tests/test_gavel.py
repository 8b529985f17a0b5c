"""
Tests for the gavel checkpoint resolution rules.
"""

import asyncio

import pytest

from conclave.core.definitions import PhaseDefinition
from conclave.core.errors import FieldNotEditable, GavelNotPending, SkipNotAllowed
from conclave.core.gavel import GavelCheckpoint
from conclave.core.run import GavelAudit


def make_phase(**gavel) -> PhaseDefinition:
    return PhaseDefinition.model_validate(
        {"id": "review", "name": "Review", "gavel": {"enabled": True, **gavel}}
    )


class TestGavelCheckpoint:
    """Test accept, edit and skip."""

    @pytest.mark.asyncio
    async def test_accept_returns_value(self):
        audit = GavelAudit()
        checkpoint = GavelCheckpoint(make_phase(), {"draft": "v1"}, audit)

        assert audit.requested
        assert checkpoint.pending
        checkpoint.accept()

        assert await checkpoint.wait() == {"draft": "v1"}
        assert audit.decision == "accept"
        assert not checkpoint.pending

    @pytest.mark.asyncio
    async def test_request_payload(self):
        checkpoint = GavelCheckpoint(make_phase(prompt="Approve?"), "text", GavelAudit())
        assert checkpoint.request.to_dict() == {
            "phase_id": "review",
            "phase_name": "Review",
            "prompt": "Approve?",
            "value": "text",
            "can_skip": True,
            "editable_fields": ["output"],
        }

    @pytest.mark.asyncio
    async def test_edit_output_replaces_value(self):
        audit = GavelAudit()
        checkpoint = GavelCheckpoint(make_phase(), "draft", audit)

        checkpoint.edit({"output": "final"})

        assert await checkpoint.wait() == "final"
        assert audit.decision == "edit"
        assert audit.edited_fields == ["output"]

    @pytest.mark.asyncio
    async def test_edit_patches_mapping_fields(self):
        phase = make_phase(editableFields=["summary"])
        checkpoint = GavelCheckpoint(phase, {"summary": "old", "score": 3}, GavelAudit())

        checkpoint.edit({"summary": "new"})

        assert await checkpoint.wait() == {"summary": "new", "score": 3}

    @pytest.mark.asyncio
    async def test_edit_outside_editable_fields_keeps_checkpoint_pending(self):
        phase = make_phase(editableFields=["summary"])
        checkpoint = GavelCheckpoint(phase, {"summary": "old", "score": 3}, GavelAudit())

        with pytest.raises(FieldNotEditable):
            checkpoint.edit({"score": 10})

        assert checkpoint.pending
        checkpoint.edit({"summary": "fixed"})
        assert (await checkpoint.wait())["summary"] == "fixed"

    @pytest.mark.asyncio
    async def test_field_edit_on_non_mapping_rejected(self):
        phase = make_phase(editableFields=["output", "summary"])
        checkpoint = GavelCheckpoint(phase, "plain text", GavelAudit())

        with pytest.raises(FieldNotEditable):
            checkpoint.edit({"summary": "x"})
        assert checkpoint.pending

    @pytest.mark.asyncio
    async def test_skip_when_allowed(self):
        audit = GavelAudit()
        checkpoint = GavelCheckpoint(make_phase(), "draft", audit)

        checkpoint.skip()

        assert await checkpoint.wait() == "draft"
        assert audit.skipped
        assert audit.decision == "skip"

    @pytest.mark.asyncio
    async def test_skip_not_allowed_stays_suspended(self):
        checkpoint = GavelCheckpoint(make_phase(canSkip=False), "draft", GavelAudit())
        waiter = asyncio.ensure_future(checkpoint.wait())

        with pytest.raises(SkipNotAllowed):
            checkpoint.skip()
        await asyncio.sleep(0)

        assert checkpoint.pending
        assert not waiter.done()
        checkpoint.accept()
        assert await waiter == "draft"

    @pytest.mark.asyncio
    async def test_second_resolution_rejected(self):
        checkpoint = GavelCheckpoint(make_phase(), "draft", GavelAudit())
        checkpoint.accept()

        with pytest.raises(GavelNotPending):
            checkpoint.accept()
        with pytest.raises(GavelNotPending):
            checkpoint.edit({"output": "late"})

    @pytest.mark.asyncio
    async def test_cancel_unblocks_waiter(self):
        checkpoint = GavelCheckpoint(make_phase(), "draft", GavelAudit())
        waiter = asyncio.ensure_future(checkpoint.wait())
        await asyncio.sleep(0)

        checkpoint.cancel()

        with pytest.raises(asyncio.CancelledError):
            await waiter
