"""
Engine error kinds.

Participant-level errors are recoverable and retried by the action executor.
RunFailed is terminal. Run-control and gavel errors are raised to the caller and
leave the run untouched.
"""

from typing import Any


class EngineError(Exception):
    """Base class for all engine errors; `code` is stable across releases."""

    code = "engine_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class InvalidPipeline(EngineError):
    code = "invalid_pipeline"


class AlreadyRunning(EngineError):
    code = "already_running"


class InvalidTransition(EngineError):
    code = "invalid_transition"


class GavelNotPending(InvalidTransition):
    code = "gavel_not_pending"


class SkipNotAllowed(InvalidTransition):
    code = "skip_not_allowed"


class NoParticipantsResolved(EngineError):
    code = "no_participants_resolved"


class MissingDesignatedAction(EngineError):
    code = "missing_designated_action"


class FieldNotEditable(EngineError):
    code = "field_not_editable"


class ParticipantError(EngineError):
    """A single participant call failed; subject to the action's retry policy."""

    code = "participant_error"

    def __init__(self, message: str, participant_id: str | None = None, **details: Any):
        super().__init__(message, participant_id=participant_id, **details)
        self.participant_id = participant_id


class ParticipantTimeout(ParticipantError):
    code = "participant_timeout"


class ParticipantInvocationFailed(ParticipantError):
    code = "participant_invocation_failed"


class RunFailed(EngineError):
    """Terminal run failure wrapping the first unrecovered error."""

    code = "run_failed"

    def __init__(self, cause: BaseException, phase_id: str | None = None, action_id: str | None = None):
        super().__init__(str(cause), phase_id=phase_id, action_id=action_id)
        self.cause = cause
        self.phase_id = phase_id
        self.action_id = action_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if isinstance(self.cause, EngineError):
            data["cause"] = self.cause.to_dict()
        else:
            data["cause"] = {"code": type(self.cause).__name__, "message": str(self.cause)}
        return data
