"""
Run engine: pipeline definitions, run supervision, phases, actions and orchestration.

- RunSupervisor owns the single active run and exposes commands, queries and events
- PhaseController walks a phase's trigger graph, consolidates and holds the gavel
- ActionExecutor resolves participants and runs an orchestration strategy
- ThreadLedger and OutputStore hold everything a run produces
"""

from .definitions import (
    ActionDefinition,
    ConsolidationPolicy,
    ExecutionMode,
    InputSource,
    OrchestrationMode,
    OutputTarget,
    ParticipantMode,
    PhaseDefinition,
    Pipeline,
    TriggerType,
)
from .errors import (
    AlreadyRunning,
    EngineError,
    FieldNotEditable,
    GavelNotPending,
    InvalidPipeline,
    InvalidTransition,
    MissingDesignatedAction,
    NoParticipantsResolved,
    ParticipantError,
    ParticipantInvocationFailed,
    ParticipantTimeout,
    RunFailed,
    SkipNotAllowed,
)
from .events import Event, EventBus, EventType
from .gavel import GavelCheckpoint, GavelDecision, GavelRequest
from .output_store import OutputStore
from .run import Run
from .state_machine import ActionLifecycle, PhaseLifecycle, RunStatus
from .supervisor import RunSupervisor
from .threads import ThreadLedger, ThreadType

__all__ = [
    "ActionDefinition",
    "ActionLifecycle",
    "AlreadyRunning",
    "ConsolidationPolicy",
    "EngineError",
    "Event",
    "EventBus",
    "EventType",
    "ExecutionMode",
    "FieldNotEditable",
    "GavelCheckpoint",
    "GavelDecision",
    "GavelNotPending",
    "GavelRequest",
    "InputSource",
    "InvalidPipeline",
    "InvalidTransition",
    "MissingDesignatedAction",
    "NoParticipantsResolved",
    "OrchestrationMode",
    "OutputStore",
    "OutputTarget",
    "ParticipantError",
    "ParticipantInvocationFailed",
    "ParticipantMode",
    "ParticipantTimeout",
    "PhaseDefinition",
    "PhaseLifecycle",
    "Pipeline",
    "Run",
    "RunFailed",
    "RunStatus",
    "RunSupervisor",
    "SkipNotAllowed",
    "ThreadLedger",
    "ThreadType",
    "TriggerType",
]
