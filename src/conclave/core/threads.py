"""
Thread ledger: append-only transcripts per run, phase and action.
"""

import asyncio
import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from ..observability.logging import get_logger

logger = get_logger(__name__)


class ThreadType(str, Enum):
    RUN = "run"
    PHASE = "phase"
    ACTION = "action"


@dataclass(frozen=True)
class Message:
    """One transcript entry. Frozen: threads never mutate messages in place."""

    role: str
    content: str
    timestamp: float = field(default_factory=time.time)
    participant_id: str | None = None
    participant_name: str | None = None
    round: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Thread:
    id: str
    type: ThreadType
    scope_id: str
    phase_id: str | None = None
    messages: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "scope_id": self.scope_id,
            "phase_id": self.phase_id,
            "messages": [m.to_dict() for m in self.messages],
        }


class ThreadLedger:
    """
    Owns every thread of a run.

    Appends from concurrently running actions and parallel participants go
    through a single lock so message order within a thread is the order in
    which appends completed.
    """

    def __init__(self):
        self._threads: dict[str, Thread] = {}
        self._by_scope: dict[tuple[ThreadType, str], str] = {}
        self._lock = asyncio.Lock()

    def create_thread(
        self, thread_type: ThreadType, scope_id: str, phase_id: str | None = None
    ) -> Thread:
        thread = Thread(
            id=f"{thread_type.value}-{scope_id}-{uuid.uuid4().hex[:8]}",
            type=thread_type,
            scope_id=scope_id,
            phase_id=phase_id,
        )
        self._threads[thread.id] = thread
        self._by_scope[(thread_type, scope_id)] = thread.id
        logger.debug("Thread created", thread_id=thread.id, thread_type=thread_type.value)
        return thread

    def get_or_create(
        self, thread_type: ThreadType, scope_id: str, phase_id: str | None = None
    ) -> Thread:
        thread_id = self._by_scope.get((thread_type, scope_id))
        if thread_id is not None:
            return self._threads[thread_id]
        return self.create_thread(thread_type, scope_id, phase_id)

    def find(self, thread_type: ThreadType, scope_id: str) -> Thread | None:
        thread_id = self._by_scope.get((thread_type, scope_id))
        return self._threads.get(thread_id) if thread_id else None

    def get(self, thread_id: str) -> Thread:
        return self._threads[thread_id]

    async def append(
        self,
        thread_id: str,
        role: str,
        content: Any,
        participant_id: str | None = None,
        participant_name: str | None = None,
        round: int | None = None,
    ) -> Message:
        message = Message(
            role=role,
            content=content if isinstance(content, str) else stringify(content),
            participant_id=participant_id,
            participant_name=participant_name,
            round=round,
        )
        async with self._lock:
            self._threads[thread_id].messages.append(message)
        return message

    def get_messages(
        self, thread_id: str, role: str | None = None, limit: int | None = None
    ) -> list[Message]:
        messages = self._threads[thread_id].messages
        if role is not None:
            messages = [m for m in messages if m.role == role]
        if limit is not None:
            messages = messages[-limit:]
        return list(messages)

    def format_transcript(self, thread_id: str) -> str:
        lines = []
        for m in self._threads[thread_id].messages:
            speaker = m.participant_name or m.role
            lines.append(f"[{speaker}]: {m.content}")
        return "\n\n".join(lines)

    def threads_for_phase(self, phase_id: str) -> list[Thread]:
        return [t for t in self._threads.values() if t.phase_id == phase_id]

    def snapshot(self) -> dict[str, Any]:
        return {tid: t.to_dict() for tid, t in self._threads.items()}


def stringify(value: Any) -> str:
    """Render an arbitrary output value as transcript text."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)
