"""
Gavel checkpoint: human review of a phase's consolidated output.

A checkpoint is a future the phase controller awaits. Resolution calls are
plain methods, so pause/abort stay callable while a review is pending.
"""

import asyncio
import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..observability.logging import get_logger
from .definitions import PhaseDefinition
from .errors import FieldNotEditable, GavelNotPending, SkipNotAllowed
from .run import GavelAudit

logger = get_logger(__name__)


class GavelDecision(str, Enum):
    ACCEPT = "accept"
    EDIT = "edit"
    SKIP = "skip"


@dataclass
class GavelRequest:
    """What the reviewer sees."""

    phase_id: str
    phase_name: str
    prompt: str
    value: Any
    can_skip: bool
    editable_fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "phase_name": self.phase_name,
            "prompt": self.prompt,
            "value": self.value,
            "can_skip": self.can_skip,
            "editable_fields": list(self.editable_fields),
        }


class GavelCheckpoint:
    def __init__(self, phase: PhaseDefinition, value: Any, audit: GavelAudit):
        self.phase = phase
        self.audit = audit
        self.request = GavelRequest(
            phase_id=phase.id,
            phase_name=phase.name or phase.id,
            prompt=phase.gavel.prompt,
            value=value,
            can_skip=phase.gavel.can_skip,
            editable_fields=list(phase.gavel.editable_fields),
        )
        self._future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        audit.requested = True

    @property
    def pending(self) -> bool:
        return not self._future.done()

    def _ensure_pending(self) -> None:
        if not self.pending:
            raise GavelNotPending(
                f"Gavel for phase '{self.phase.id}' is already resolved", phase_id=self.phase.id
            )

    def _resolve(self, decision: GavelDecision, value: Any) -> None:
        self.audit.decision = decision.value
        self._future.set_result(value)
        logger.info("Gavel resolved", phase_id=self.phase.id, decision=decision.value)

    def accept(self) -> None:
        self._ensure_pending()
        self._resolve(GavelDecision.ACCEPT, self.request.value)

    def edit(self, values: dict[str, Any]) -> None:
        """
        Apply reviewer edits. `output` replaces the whole value; any other key
        patches a mapping output. Keys outside `editableFields` are rejected and
        the checkpoint stays pending.
        """
        self._ensure_pending()
        allowed = self.request.editable_fields
        rejected = [k for k in values if allowed and k not in allowed]
        if rejected:
            raise FieldNotEditable(
                f"Fields not editable: {', '.join(rejected)}",
                phase_id=self.phase.id,
                fields=rejected,
                editable_fields=allowed,
            )

        value = copy.deepcopy(self.request.value)
        patches = {k: v for k, v in values.items() if k != "output"}
        if "output" in values:
            value = values["output"]
        if patches:
            if value is None:
                value = {}
            if not isinstance(value, dict):
                raise FieldNotEditable(
                    "Only mapping outputs accept field-level edits",
                    phase_id=self.phase.id,
                    fields=list(patches),
                )
            value = {**value, **patches}

        self.audit.edited_fields = list(values)
        self._resolve(GavelDecision.EDIT, value)

    def skip(self) -> None:
        self._ensure_pending()
        if not self.request.can_skip:
            raise SkipNotAllowed(
                f"Phase '{self.phase.id}' does not allow skipping review", phase_id=self.phase.id
            )
        self.audit.skipped = True
        self._resolve(GavelDecision.SKIP, self.request.value)

    async def wait(self) -> Any:
        return await asyncio.shield(self._future)

    def cancel(self) -> None:
        if self.pending:
            self._future.cancel()
