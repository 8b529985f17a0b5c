"""
Collaborator interfaces the engine consumes, with in-memory defaults.

The engine never owns agents, positions, teams or pipelines. It reads them
through a Directory, invokes agents through an AgentInvoker, and delegates
context assembly, retrieval and synthesis to the protocols defined here.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..observability.logging import get_logger

if TYPE_CHECKING:
    from ..core.definitions import PhaseDefinition, Pipeline

logger = get_logger(__name__)


class PositionTier(str, Enum):
    EXECUTIVE = "executive"
    LEADER = "leader"
    MEMBER = "member"


@dataclass
class Position:
    """A seat an agent fills: name, team, tier and expertise keywords."""

    id: str
    name: str
    agent_id: str | None = None
    team_id: str | None = None
    tier: PositionTier = PositionTier.MEMBER
    expertise: list[str] = field(default_factory=list)
    system_prompt: str = ""
    api_config: dict[str, Any] = field(default_factory=dict)


@dataclass
class Team:
    id: str
    name: str
    leader_ids: list[str] = field(default_factory=list)
    member_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Participant:
    """A resolved, invocable position."""

    position: Position

    @property
    def id(self) -> str:
        return self.position.id

    @property
    def name(self) -> str:
        return self.position.name

    @property
    def agent_id(self) -> str:
        return self.position.agent_id or self.position.id


@dataclass
class AgentResponse:
    """One participant contribution to an orchestrated call."""

    participant_id: str
    participant_name: str
    value: Any = None
    ok: bool = True
    error: str | None = None
    error_code: str | None = None
    duration_s: float = 0.0
    round: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "participant_name": self.participant_name,
            "value": self.value,
            "ok": self.ok,
            "error": self.error,
            "error_code": self.error_code,
            "duration_s": self.duration_s,
            "round": self.round,
        }


@runtime_checkable
class AgentInvoker(Protocol):
    """Opaque agent invocation; cancellation arrives as task cancellation."""

    async def invoke(
        self, participant: Participant, prompt: str, api_config: dict[str, Any]
    ) -> Any: ...


class Directory(Protocol):
    """Read-only lookups owned by the builder subsystem."""

    def get_position(self, position_id: str) -> Position | None: ...

    def get_team(self, team_id: str) -> Team | None: ...

    def get_all_positions(self) -> list[Position]: ...

    def get_pipeline(self, pipeline_id: str) -> "Pipeline | None": ...

    def get_all_pipelines(self) -> list["Pipeline"]: ...


class ContextAssembler(Protocol):
    async def assemble_context(
        self, phase: "PhaseDefinition", run_state: dict[str, Any]
    ) -> dict[str, Any]: ...


class Retriever(Protocol):
    async def retrieve(self, rag_pipeline_id: str | None, query: str) -> Any: ...


class Synthesizer(Protocol):
    async def synthesize(self, phase: "PhaseDefinition", outputs: dict[str, Any]) -> Any: ...


class InMemoryDirectory:
    """Directory backed by plain dicts; what tests and the API server use by default."""

    def __init__(
        self,
        positions: list[Position] | None = None,
        teams: list[Team] | None = None,
        pipelines: list["Pipeline"] | None = None,
    ):
        self._positions: dict[str, Position] = {p.id: p for p in positions or []}
        self._teams: dict[str, Team] = {t.id: t for t in teams or []}
        self._pipelines: dict[str, Pipeline] = {p.id: p for p in pipelines or []}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InMemoryDirectory":
        """Build from `{"positions": [...], "teams": [...], "pipelines": [...]}`."""
        from ..core.definitions import Pipeline

        positions = []
        for raw in data.get("positions", []):
            positions.append(
                Position(
                    id=raw["id"],
                    name=raw.get("name", raw["id"]),
                    agent_id=raw.get("agentId", raw.get("agent_id")),
                    team_id=raw.get("teamId", raw.get("team_id")),
                    tier=PositionTier(raw.get("tier", PositionTier.MEMBER.value)),
                    expertise=list(raw.get("expertise", raw.get("keywords", []))),
                    system_prompt=raw.get("systemPrompt", raw.get("system_prompt", "")),
                    api_config=dict(raw.get("apiConfig", raw.get("api_config", {}))),
                )
            )
        teams = [
            Team(
                id=raw["id"],
                name=raw.get("name", raw["id"]),
                leader_ids=list(raw.get("leaderIds", raw.get("leader_ids", []))),
                member_ids=list(raw.get("memberIds", raw.get("member_ids", []))),
            )
            for raw in data.get("teams", [])
        ]
        pipelines = [Pipeline.model_validate(raw) for raw in data.get("pipelines", [])]
        return cls(positions, teams, pipelines)

    @classmethod
    def from_file(cls, path: Path | str) -> "InMemoryDirectory":
        directory = cls.from_dict(json.loads(Path(path).read_text()))
        logger.info(
            "Directory loaded",
            path=str(path),
            positions=len(directory._positions),
            pipelines=len(directory._pipelines),
        )
        return directory

    def add_position(self, position: Position) -> None:
        self._positions[position.id] = position

    def add_pipeline(self, pipeline: "Pipeline") -> None:
        self._pipelines[pipeline.id] = pipeline

    def get_position(self, position_id: str) -> Position | None:
        return self._positions.get(position_id)

    def get_team(self, team_id: str) -> Team | None:
        return self._teams.get(team_id)

    def get_all_positions(self) -> list[Position]:
        return list(self._positions.values())

    def get_pipeline(self, pipeline_id: str) -> "Pipeline | None":
        return self._pipelines.get(pipeline_id)

    def get_all_pipelines(self) -> list["Pipeline"]:
        return list(self._pipelines.values())


class LayeredContextAssembler:
    """
    Builds a phase context bundle from static, global and phase-level layers.

    Each layer is included only when the phase's context spec asks for it;
    named stores are looked up in `stores` and missing ones are skipped.
    """

    def __init__(
        self,
        static_context: dict[str, Any] | None = None,
        phase_blocks: dict[str, Any] | None = None,
        stores: dict[str, Any] | None = None,
    ):
        self.static_context = static_context or {}
        self.phase_blocks = phase_blocks or {}
        self.stores = stores or {}

    async def assemble_context(
        self, phase: "PhaseDefinition", run_state: dict[str, Any]
    ) -> dict[str, Any]:
        spec = phase.context
        bundle: dict[str, Any] = {}
        if spec.include_static and self.static_context:
            flags = run_state.get("static_context_flags") or {}
            bundle["static"] = {k: v for k, v in self.static_context.items() if flags.get(k, True)}
        if spec.include_global and run_state.get("globals"):
            bundle["global"] = dict(run_state["globals"])
        blocks = {name: self.phase_blocks[name] for name in spec.phase_blocks if name in self.phase_blocks}
        if blocks:
            bundle["phase"] = blocks
        stores = {name: self.stores[name] for name in spec.stores if name in self.stores}
        if stores:
            bundle["stores"] = stores
        return bundle
