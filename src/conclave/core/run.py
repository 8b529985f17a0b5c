"""
Run record: status, phase cursor, lifecycle maps and timestamps.

The record is plain data so it can be serialized for reporting and rebuilt
after a restart; in-flight work itself is not resumable.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .state_machine import (
    ActionLifecycle,
    LifecycleTracker,
    PhaseLifecycle,
    RunStateMachine,
    RunStatus,
    action_lifecycle,
    phase_lifecycle,
)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def _parse(ts: str | None) -> datetime | None:
    return datetime.fromisoformat(ts) if ts else None


@dataclass
class GavelAudit:
    requested: bool = False
    decision: str | None = None
    skipped: bool = False
    edited_fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requested": self.requested,
            "decision": self.decision,
            "skipped": self.skipped,
            "edited_fields": list(self.edited_fields),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GavelAudit":
        return cls(
            requested=data.get("requested", False),
            decision=data.get("decision"),
            skipped=data.get("skipped", False),
            edited_fields=list(data.get("edited_fields", [])),
        )


@dataclass
class PhaseState:
    phase_id: str
    lifecycle: LifecycleTracker = field(default_factory=phase_lifecycle)
    actions: dict[str, LifecycleTracker] = field(default_factory=dict)
    gavel: GavelAudit = field(default_factory=GavelAudit)

    def action(self, action_id: str) -> LifecycleTracker:
        if action_id not in self.actions:
            self.actions[action_id] = action_lifecycle()
        return self.actions[action_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            **self.lifecycle.to_dict(),
            "actions": {aid: tracker.to_dict() for aid, tracker in self.actions.items()},
            "gavel": self.gavel.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseState":
        return cls(
            phase_id=data["phase_id"],
            lifecycle=LifecycleTracker.from_dict(tuple(PhaseLifecycle), data),
            actions={
                aid: LifecycleTracker.from_dict(tuple(ActionLifecycle), tracker)
                for aid, tracker in data.get("actions", {}).items()
            },
            gavel=GavelAudit.from_dict(data.get("gavel", {})),
        )


@dataclass
class Run:
    pipeline_id: str
    pipeline_name: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    input: Any = None
    state: RunStateMachine = field(default_factory=RunStateMachine)
    current_phase_index: int = 0
    current_phase_id: str | None = None
    phases: dict[str, PhaseState] = field(default_factory=dict)
    error: dict[str, Any] | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def status(self) -> RunStatus:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def phase(self, phase_id: str) -> PhaseState:
        if phase_id not in self.phases:
            self.phases[phase_id] = PhaseState(phase_id)
        return self.phases[phase_id]

    def advance_cursor(self, index: int, phase_id: str) -> None:
        if index < self.current_phase_index:
            raise ValueError(
                f"Phase cursor cannot move backwards ({self.current_phase_index} -> {index})"
            )
        self.current_phase_index = index
        self.current_phase_id = phase_id

    def mark_started(self) -> None:
        self.started_at = datetime.now(UTC)

    def mark_ended(self) -> None:
        self.ended_at = datetime.now(UTC)

    def duration_s(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.ended_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "pipeline_name": self.pipeline_name,
            "status": self.status.value,
            "status_history": [{"status": s, "timestamp": ts} for s, ts in self.state.history],
            "current_phase_index": self.current_phase_index,
            "current_phase_id": self.current_phase_id,
            "phases": {pid: state.to_dict() for pid, state in self.phases.items()},
            "error": self.error,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Run":
        state = RunStateMachine(initial=RunStatus(data["status"]))
        if data.get("status_history"):
            state.history = [(h["status"], h["timestamp"]) for h in data["status_history"]]
        return cls(
            id=data["id"],
            pipeline_id=data["pipeline_id"],
            pipeline_name=data.get("pipeline_name", ""),
            state=state,
            current_phase_index=data.get("current_phase_index", 0),
            current_phase_id=data.get("current_phase_id"),
            phases={pid: PhaseState.from_dict(p) for pid, p in data.get("phases", {}).items()},
            error=data.get("error"),
            started_at=_parse(data.get("started_at")),
            ended_at=_parse(data.get("ended_at")),
        )
