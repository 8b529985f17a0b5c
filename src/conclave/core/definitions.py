"""
Pipeline definition models.

Pipelines are authored by the builder subsystem in camelCase JSON; these models
accept that shape (and snake_case) and fill in the builder's defaults. The engine
treats a validated Pipeline as immutable for the duration of a run.
"""

from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .state_machine import ActionLifecycle


class OrchestrationMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    ROUND_ROBIN = "round_robin"
    CONSENSUS = "consensus"


class ConsolidationPolicy(str, Enum):
    LAST_ACTION = "last_action"
    DESIGNATED = "designated"
    MERGE = "merge"
    SYNTHESIZE = "synthesize"
    USER_GAVEL = "user_gavel"


class TriggerType(str, Enum):
    SEQUENTIAL = "sequential"
    AWAIT = "await"
    ON = "on"
    IMMEDIATE = "immediate"


class ExecutionMode(str, Enum):
    SYNC = "sync"
    ASYNC = "async"


class ParticipantMode(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"
    TEAM = "team"
    DYNAMIC = "dynamic"


class InputSource(str, Enum):
    PHASE_INPUT = "phaseInput"
    PREVIOUS_ACTION = "previousAction"
    GLOBAL = "global"
    CUSTOM = "custom"
    RUN_INPUT = "runInput"


class OutputTarget(str, Enum):
    PHASE_OUTPUT = "phaseOutput"
    GLOBAL = "global"
    NEXT_ACTION = "nextAction"


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True
    )


class TriggerSpec(_Model):
    type: TriggerType = TriggerType.SEQUENTIAL
    target_action_id: str | None = None
    target_state: ActionLifecycle = ActionLifecycle.COMPLETE


class ExecutionSpec(_Model):
    mode: ExecutionMode = ExecutionMode.SYNC
    trigger: TriggerSpec = Field(default_factory=TriggerSpec)
    timeout_ms: int | None = Field(
        None, gt=0, validation_alias=AliasChoices("timeoutMs", "timeout_ms", "timeout")
    )
    retry_count: int = Field(0, ge=0)


class TeamOptions(_Model):
    include_leaders: bool = True
    include_members: bool = True


class DynamicSelection(_Model):
    keyword_source: str = "input"
    max_smes: int = Field(3, gt=0, validation_alias=AliasChoices("maxSMEs", "maxSmes", "max_smes"))
    fallback_position: str | None = None
    candidate_position_ids: list[str] = Field(default_factory=list)


class ParticipantSpec(_Model):
    mode: ParticipantMode | None = None
    position_id: str | None = None
    position_ids: list[str] = Field(default_factory=list)
    team_ids: list[str] = Field(default_factory=list)
    team_options: TeamOptions = Field(default_factory=TeamOptions)
    dynamic: DynamicSelection = Field(
        default_factory=DynamicSelection,
        validation_alias=AliasChoices("dynamic", "dynamicConfig", "dynamic_config"),
    )
    orchestration: OrchestrationMode = OrchestrationMode.SEQUENTIAL
    max_rounds: int | None = Field(None, gt=0)
    consensus_threshold: float | None = Field(None, ge=0.0, le=100.0)


class InputSpec(_Model):
    source: InputSource = InputSource.PHASE_INPUT
    source_key: str | None = None
    transform: str | None = None


class OutputSpec(_Model):
    target: OutputTarget = OutputTarget.PHASE_OUTPUT
    target_key: str | None = None
    append: bool = False


class RagSpec(_Model):
    enabled: bool = False
    rag_pipeline_id: str | None = Field(
        None, validation_alias=AliasChoices("ragPipelineId", "pipelineId", "rag_pipeline_id")
    )
    query_template: str | None = None
    result_target: str = "context"


class ActionDefinition(_Model):
    id: str
    name: str = ""
    description: str = ""
    execution: ExecutionSpec = Field(default_factory=ExecutionSpec)
    participants: ParticipantSpec = Field(default_factory=ParticipantSpec)
    input: InputSpec = Field(default_factory=InputSpec)
    output: OutputSpec = Field(default_factory=OutputSpec)
    rag: RagSpec = Field(default_factory=RagSpec)
    prompt_template: str = ""

    @property
    def label(self) -> str:
        return self.name or self.id


class ContextSpec(_Model):
    include_static: bool = Field(True, validation_alias=AliasChoices("static", "includeStatic"))
    include_global: bool = Field(True, validation_alias=AliasChoices("global", "includeGlobal"))
    phase_blocks: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("phase", "phaseBlocks")
    )
    stores: list[str] = Field(default_factory=list)


class PhaseThreadConfig(_Model):
    enabled: bool = True


class ThreadSpec(_Model):
    phase_thread: PhaseThreadConfig = Field(default_factory=PhaseThreadConfig)


class PhaseOutputSpec(_Model):
    consolidation: ConsolidationPolicy = ConsolidationPolicy.LAST_ACTION
    consolidation_action_id: str | None = None


class GavelSpec(_Model):
    enabled: bool = False
    can_skip: bool = True
    editable_fields: list[str] = Field(default_factory=lambda: ["output"])
    prompt: str = "Review phase output:"


class PhaseDefinition(_Model):
    id: str
    name: str = ""
    icon: str = ""
    description: str = ""
    teams: list[str] = Field(default_factory=list)
    context: ContextSpec = Field(default_factory=ContextSpec)
    threads: ThreadSpec = Field(default_factory=ThreadSpec)
    output: PhaseOutputSpec = Field(default_factory=PhaseOutputSpec)
    gavel: GavelSpec = Field(default_factory=GavelSpec)
    actions: list[ActionDefinition] = Field(default_factory=list)

    def get_action(self, action_id: str) -> ActionDefinition | None:
        for action in self.actions:
            if action.id == action_id:
                return action
        return None


class Pipeline(_Model):
    id: str
    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    static_context: dict[str, bool] = Field(default_factory=dict)
    globals: dict[str, Any] = Field(default_factory=dict)
    phases: list[PhaseDefinition] = Field(default_factory=list)

    def get_phase(self, phase_id: str) -> PhaseDefinition | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None
