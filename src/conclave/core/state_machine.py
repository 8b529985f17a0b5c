"""
State machines for run status and phase/action lifecycles.

Run status follows an explicit transition table; anything not listed is rejected
with InvalidTransition. Phase and action lifecycles are ordered stage sequences
that only ever move forward, so "has reached X" is a simple index comparison.
"""

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..observability.logging import get_logger
from .errors import InvalidTransition

logger = get_logger(__name__)


class RunStatus(str, Enum):
    """Run status values."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.ABORTED})


class PhaseLifecycle(str, Enum):
    """Phase lifecycle stages in order."""

    START = "start"
    BEFORE_ACTIONS = "before_actions"
    IN_PROGRESS = "in_progress"
    AFTER_ACTIONS = "after_actions"
    END = "end"
    RESPOND = "respond"


class ActionLifecycle(str, Enum):
    """Action lifecycle stages in order."""

    CALLED = "called"
    START = "start"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    RESPOND = "respond"


@dataclass(frozen=True)
class Transition:
    """Allowed run status transition, named by the event that causes it."""

    from_state: RunStatus
    to_state: RunStatus
    event: str


RUN_TRANSITIONS: tuple[Transition, ...] = (
    Transition(RunStatus.PENDING, RunStatus.RUNNING, "start"),
    Transition(RunStatus.RUNNING, RunStatus.PAUSED, "pause"),
    Transition(RunStatus.PAUSED, RunStatus.RUNNING, "resume"),
    Transition(RunStatus.RUNNING, RunStatus.COMPLETED, "complete"),
    Transition(RunStatus.RUNNING, RunStatus.FAILED, "fail"),
    Transition(RunStatus.RUNNING, RunStatus.ABORTED, "abort"),
    Transition(RunStatus.PAUSED, RunStatus.ABORTED, "abort"),
)


class RunStateMachine:
    """Finite state machine over RunStatus with transition history."""

    def __init__(
        self,
        initial: RunStatus = RunStatus.PENDING,
        transitions: Sequence[Transition] = RUN_TRANSITIONS,
    ):
        self.status = initial
        self.transitions = tuple(transitions)
        self.history: list[tuple[str, float]] = [(initial.value, time.time())]

    def can_transition(self, to_state: RunStatus) -> bool:
        return any(t.from_state == self.status and t.to_state == to_state for t in self.transitions)

    def transition(self, to_state: RunStatus) -> Transition:
        """Move to `to_state` or raise InvalidTransition."""
        for t in self.transitions:
            if t.from_state == self.status and t.to_state == to_state:
                logger.debug(f"Run status {self.status.value} -> {to_state.value}", event=t.event)
                self.status = to_state
                self.history.append((to_state.value, time.time()))
                return t
        raise InvalidTransition(
            f"Cannot move run from '{self.status.value}' to '{to_state.value}'",
            from_state=self.status.value,
            to_state=to_state.value,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class LifecycleTracker:
    """Forward-only progression through an ordered list of lifecycle stages."""

    stages: tuple[Enum, ...]
    current: Enum | None = None
    history: list[tuple[str, float]] = field(default_factory=list)

    def index_of(self, stage: Enum) -> int:
        return self.stages.index(stage)

    def advance(self, stage: Enum) -> None:
        """Move to `stage`; moving backwards or staying put is an error."""
        if self.current is not None and self.index_of(stage) <= self.index_of(self.current):
            raise InvalidTransition(
                f"Lifecycle cannot move from '{self.current.value}' to '{stage.value}'",
                from_state=self.current.value,
                to_state=stage.value,
            )
        self.current = stage
        self.history.append((stage.value, time.time()))

    def has_reached(self, stage: Enum) -> bool:
        return self.current is not None and self.index_of(self.current) >= self.index_of(stage)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.current.value if self.current is not None else None,
            "history": [{"state": s, "timestamp": ts} for s, ts in self.history],
        }

    @classmethod
    def from_dict(cls, stages: tuple[Enum, ...], data: dict[str, Any]) -> "LifecycleTracker":
        enum_type = type(stages[0])
        state = data.get("state")
        return cls(
            stages=stages,
            current=enum_type(state) if state is not None else None,
            history=[(h["state"], h["timestamp"]) for h in data.get("history", [])],
        )


def phase_lifecycle() -> LifecycleTracker:
    return LifecycleTracker(stages=tuple(PhaseLifecycle))


def action_lifecycle() -> LifecycleTracker:
    return LifecycleTracker(stages=tuple(ActionLifecycle))
