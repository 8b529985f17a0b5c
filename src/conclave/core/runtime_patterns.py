"""
Runtime primitives for run execution.

- Per-call timeouts that surface as ParticipantTimeout
- Bounded retries (tenacity) around orchestrated participant calls
- RunControl: the pause gate between dispatches and the abort flag polled at every turn
- Task joining with an optional overall deadline
"""

import asyncio
import logging
from collections.abc import Awaitable, Iterable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from ..observability.logging import get_logger
from .errors import ParticipantError, ParticipantTimeout

logger = get_logger(__name__)

T = TypeVar("T")


async def with_timeout(
    coro: Awaitable[T], timeout_s: float | None, participant_id: str | None = None
) -> T:
    """Await `coro`, converting a timeout into ParticipantTimeout."""
    if timeout_s is None:
        return await coro
    try:
        return await asyncio.wait_for(coro, timeout=timeout_s)
    except TimeoutError as e:
        raise ParticipantTimeout(
            f"Participant call exceeded {timeout_s:.3f}s",
            participant_id=participant_id,
            timeout_s=timeout_s,
        ) from e


def retrying(retry_count: int, backoff_s: float = 0.0) -> AsyncRetrying:
    """Retry policy for one orchestrated call: 1 attempt plus `retry_count` retries."""
    return AsyncRetrying(
        stop=stop_after_attempt(retry_count + 1),
        wait=wait_fixed(backoff_s),
        retry=retry_if_exception_type(ParticipantError),
        before_sleep=before_sleep_log(logger.logger, logging.WARNING),
        reraise=True,
    )


class RunControl:
    """
    Pause/abort signal shared by everything executing on behalf of one run.

    `checkpoint()` is awaited before every phase and before each action is
    dispatched: it blocks while the run is paused and raises CancelledError once
    aborted. Work already dispatched only polls `raise_if_aborted()`, so an
    in-flight action runs to completion while the run is paused.
    """

    def __init__(self, poll_interval_s: float = 0.05):
        self._resume = asyncio.Event()
        self._resume.set()
        self._aborted = False
        self.poll_interval_s = poll_interval_s

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def pause(self) -> None:
        self._resume.clear()

    def resume(self) -> None:
        self._resume.set()

    def abort(self) -> None:
        self._aborted = True
        self._resume.set()

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise asyncio.CancelledError("run aborted")

    async def checkpoint(self) -> None:
        if self._aborted:
            raise asyncio.CancelledError("run aborted")
        while not self._resume.is_set():
            try:
                await asyncio.wait_for(self._resume.wait(), timeout=self.poll_interval_s)
            except TimeoutError:
                continue
        if self._aborted:
            raise asyncio.CancelledError("run aborted")


async def join_tasks(tasks: Iterable[asyncio.Task[Any]], timeout_s: float | None = None) -> None:
    """
    Wait for every task, re-raising the first failure.

    With `timeout_s`, tasks still pending at the deadline are cancelled and a
    ParticipantTimeout is raised.
    """
    tasks = list(tasks)
    pending = [t for t in tasks if not t.done()]
    if pending:
        _, still_pending = await asyncio.wait(pending, timeout=timeout_s)
        if still_pending:
            for task in still_pending:
                task.cancel()
            await asyncio.gather(*still_pending, return_exceptions=True)
            raise ParticipantTimeout(
                f"{len(still_pending)} async action(s) did not finish within {timeout_s}s",
                timeout_s=timeout_s,
            )
    for task in tasks:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()


async def cancel_tasks(tasks: Iterable[asyncio.Task[Any]]) -> None:
    """Cancel outstanding tasks and wait for them to unwind."""
    outstanding = [t for t in tasks if not t.done()]
    for task in outstanding:
        task.cancel()
    if outstanding:
        await asyncio.gather(*outstanding, return_exceptions=True)
