"""
Run events and the supervisor-owned subscriber list.
"""

import asyncio
import inspect
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..observability.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    RUN_STARTED = "run:started"
    RUN_PAUSED = "run:paused"
    RUN_RESUMED = "run:resumed"
    RUN_ABORTED = "run:aborted"
    RUN_COMPLETED = "run:completed"
    RUN_FAILED = "run:failed"
    PHASE_STARTED = "phase:started"
    PHASE_COMPLETED = "phase:completed"
    ACTION_CALLED = "action:called"
    ACTION_STARTED = "action:started"
    ACTION_COMPLETED = "action:completed"
    GAVEL_REQUESTED = "gavel:requested"
    GAVEL_RESOLVED = "gavel:resolved"


@dataclass(frozen=True)
class Event:
    type: EventType
    run_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "data": dict(self.data),
            "timestamp": self.timestamp,
        }


Subscriber = Callable[[Event], Any]


class EventBus:
    """
    Subscriber list for run events.

    Callbacks may be sync or async; async callbacks are scheduled on the running
    loop. A failing subscriber is logged and never interrupts the run.
    """

    def __init__(self):
        self._subscribers: list[tuple[Subscriber, frozenset[EventType] | None]] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(
        self, callback: Subscriber, types: Iterable[EventType] | None = None
    ) -> Callable[[], None]:
        entry = (callback, frozenset(types) if types is not None else None)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def emit(self, event: Event) -> None:
        logger.debug(f"Event {event.type.value}", event_type=event.type.value, data=event.data)
        for callback, types in list(self._subscribers):
            if types is not None and event.type not in types:
                continue
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_async_done)
            except Exception:
                logger.exception("Event subscriber failed", event_type=event.type.value)

    def _on_async_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Async event subscriber failed",
                error=repr(task.exception()),
            )

    async def drain(self) -> None:
        """Wait for scheduled async subscribers to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
