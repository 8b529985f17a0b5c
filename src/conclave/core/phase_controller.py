"""
Phase controller: lifecycle, action scheduling over the trigger graph,
consolidation and the gavel.

The scheduler is a single coroutine per phase, so readiness checks are
serialized: an action is dispatched exactly once, when its dependency has
reached the required lifecycle stage.
"""

import asyncio
import copy
import time
from typing import Any

from ..agents.base import ContextAssembler, Synthesizer
from ..config.settings import EngineConfig
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from .action_executor import ActionExecutor, ActionResult, PhaseContext
from .definitions import (
    ActionDefinition,
    ConsolidationPolicy,
    ExecutionMode,
    PhaseDefinition,
    Pipeline,
)
from .errors import InvalidPipeline, MissingDesignatedAction, RunFailed
from .events import Event, EventBus, EventType
from .gavel import GavelCheckpoint
from .output_store import OutputStore
from .run import PhaseState, Run
from .runtime_patterns import RunControl, cancel_tasks, join_tasks
from .state_machine import ActionLifecycle, PhaseLifecycle
from .threads import ThreadLedger, ThreadType
from .triggers import TriggerGraph

logger = get_logger(__name__)


class PhaseController:
    def __init__(
        self,
        run: Run,
        pipeline: Pipeline,
        graphs: dict[str, TriggerGraph],
        executor: ActionExecutor,
        ledger: ThreadLedger,
        output_store: OutputStore,
        control: RunControl,
        events: EventBus,
        engine: EngineConfig,
        context_assembler: ContextAssembler | None = None,
        synthesizer: Synthesizer | None = None,
    ):
        self.run = run
        self.pipeline = pipeline
        self.graphs = graphs
        self.executor = executor
        self.ledger = ledger
        self.output_store = output_store
        self.control = control
        self.events = events
        self.engine = engine
        self.context_assembler = context_assembler
        self.synthesizer = synthesizer
        self.pending_gavel: GavelCheckpoint | None = None
        self._changed = asyncio.Event()

    def _emit(self, event_type: EventType, **data: Any) -> None:
        self.events.emit(Event(event_type, self.run.id, data))

    def _advance_phase(self, state: PhaseState, stage: PhaseLifecycle) -> None:
        state.lifecycle.advance(stage)
        logger.debug(f"Phase {state.phase_id} -> {stage.value}", phase_id=state.phase_id)

    async def run_phase(self, index: int, phase: PhaseDefinition, phase_input: Any) -> Any:
        """Drive one phase to `respond` and return its consolidated output."""
        state = self.run.phase(phase.id)
        start = time.perf_counter()

        with probe("phase.execute", phase_id=phase.id, phase_index=index):
            self._advance_phase(state, PhaseLifecycle.START)
            self._emit(EventType.PHASE_STARTED, phase_id=phase.id, phase_index=index)
            logger.info("Phase started", phase_id=phase.id, phase_index=index)

            context = await self._assemble_context(phase)
            phase_thread_id = None
            if phase.threads.phase_thread.enabled:
                phase_thread_id = self.ledger.get_or_create(
                    ThreadType.PHASE, phase.id, phase_id=phase.id
                ).id
            self._advance_phase(state, PhaseLifecycle.BEFORE_ACTIONS)

            ctx = PhaseContext(
                phase=phase,
                phase_index=index,
                phase_input=phase_input,
                run_input=self.run.input,
                context=context,
                phase_thread_id=phase_thread_id,
            )
            self._advance_phase(state, PhaseLifecycle.IN_PROGRESS)
            results = await self._run_actions(phase, ctx, state)

            self._advance_phase(state, PhaseLifecycle.AFTER_ACTIONS)
            value = await self._consolidate(phase, results)

            if phase.gavel.enabled or phase.output.consolidation is ConsolidationPolicy.USER_GAVEL:
                value = await self._gavel(phase, value, state)

            self._advance_phase(state, PhaseLifecycle.END)
            await self.output_store.set_phase_output(phase.id, value)
            self._advance_phase(state, PhaseLifecycle.RESPOND)

        duration = time.perf_counter() - start
        get_metrics_collector().record_phase(phase.id, duration)
        self._emit(EventType.PHASE_COMPLETED, phase_id=phase.id, phase_index=index)
        logger.timed("Phase completed", duration * 1000, phase_id=phase.id)
        return value

    async def _assemble_context(self, phase: PhaseDefinition) -> dict[str, Any]:
        if self.context_assembler is None:
            return {}
        run_state = {
            "run_id": self.run.id,
            "run_input": self.run.input,
            "globals": dict(self.output_store.globals),
            "phase_outputs": dict(self.output_store.phase_outputs),
            "static_context_flags": dict(self.pipeline.static_context),
        }
        return await self.context_assembler.assemble_context(phase, run_state)

    def _stage_callback(self, phase: PhaseDefinition, state: PhaseState, action: ActionDefinition):
        tracker = state.action(action.id)

        async def on_stage(stage: ActionLifecycle) -> None:
            tracker.advance(stage)
            logger.debug(
                f"Action {action.id} -> {stage.value}", phase_id=phase.id, action_id=action.id
            )
            if stage is ActionLifecycle.START:
                self._emit(EventType.ACTION_STARTED, phase_id=phase.id, action_id=action.id)
            elif stage is ActionLifecycle.RESPOND:
                self._emit(EventType.ACTION_COMPLETED, phase_id=phase.id, action_id=action.id)
            self._changed.set()

        return on_stage

    def _ready(
        self, graph: TriggerGraph, state: PhaseState, dispatched: set[str]
    ) -> list[ActionDefinition]:
        ready = []
        for action in graph.phase.actions:
            if action.id in dispatched:
                continue
            dep = graph.dependencies[action.id]
            if dep is None or state.action(dep.target_id).has_reached(dep.state):
                ready.append(action)
        return ready

    async def _run_actions(
        self, phase: PhaseDefinition, ctx: PhaseContext, state: PhaseState
    ) -> dict[str, ActionResult]:
        graph = self.graphs[phase.id]
        tasks: dict[str, asyncio.Task[ActionResult]] = {}
        dispatched: set[str] = set()

        try:
            while len(dispatched) < len(phase.actions):
                await self.control.checkpoint()
                self._changed.clear()
                self._raise_failures(phase, tasks)

                ready = self._ready(graph, state, dispatched)
                sync_tasks = []
                for action in ready:
                    dispatched.add(action.id)
                    state.action(action.id).advance(ActionLifecycle.CALLED)
                    self._emit(EventType.ACTION_CALLED, phase_id=phase.id, action_id=action.id)
                    task = asyncio.create_task(
                        self.executor.execute(action, ctx, self._stage_callback(phase, state, action)),
                        name=f"action:{phase.id}:{action.id}",
                    )
                    tasks[action.id] = task
                    if action.execution.mode is ExecutionMode.SYNC:
                        sync_tasks.append(task)

                if sync_tasks:
                    await asyncio.wait(sync_tasks)
                    continue
                if ready:
                    continue

                running = [t for t in tasks.values() if not t.done()]
                if not running:
                    self._raise_failures(phase, tasks)
                    raise InvalidPipeline(
                        f"Unsatisfiable trigger dependencies in phase '{phase.id}'",
                        phase_id=phase.id,
                        pending=[a.id for a in phase.actions if a.id not in dispatched],
                    )
                waiter = asyncio.create_task(self._changed.wait())
                try:
                    await asyncio.wait([waiter, *running], return_when=asyncio.FIRST_COMPLETED)
                finally:
                    waiter.cancel()

            # Phase end joins whatever is still in flight, awaited or not
            try:
                await join_tasks(tasks.values(), self.engine.phase_join_timeout_s)
            except Exception:
                self._raise_failures(phase, tasks)
                raise
            self._raise_failures(phase, tasks)
        except BaseException:
            await cancel_tasks(tasks.values())
            raise

        return {action_id: task.result() for action_id, task in tasks.items()}

    def _raise_failures(self, phase: PhaseDefinition, tasks: dict[str, asyncio.Task]) -> None:
        for action_id, task in tasks.items():
            if task.done() and not task.cancelled() and task.exception() is not None:
                raise RunFailed(task.exception(), phase_id=phase.id, action_id=action_id)

    async def _consolidate(self, phase: PhaseDefinition, results: dict[str, ActionResult]) -> Any:
        if not phase.actions:
            return {} if phase.output.consolidation is ConsolidationPolicy.MERGE else None

        ordered = [results[a.id] for a in phase.actions]
        policy = phase.output.consolidation
        match policy:
            case ConsolidationPolicy.LAST_ACTION | ConsolidationPolicy.USER_GAVEL:
                return ordered[-1].value
            case ConsolidationPolicy.DESIGNATED:
                action_id = phase.output.consolidation_action_id
                if not action_id or action_id not in results:
                    raise MissingDesignatedAction(
                        f"Designated action '{action_id}' not found in phase '{phase.id}'",
                        phase_id=phase.id,
                        action_id=action_id,
                    )
                return results[action_id].value
            case ConsolidationPolicy.MERGE:
                return merge_outputs(ordered)
            case ConsolidationPolicy.SYNTHESIZE:
                if self.synthesizer is None:
                    logger.warning(
                        "No synthesizer configured, using last action output", phase_id=phase.id
                    )
                    return ordered[-1].value
                with probe("phase.synthesize", phase_id=phase.id):
                    return await self.synthesizer.synthesize(
                        phase, {r.action_id: r.value for r in ordered}
                    )
        raise ValueError(f"Unknown consolidation policy: {policy}")

    async def _gavel(self, phase: PhaseDefinition, value: Any, state: PhaseState) -> Any:
        checkpoint = GavelCheckpoint(phase, value, state.gavel)
        self.pending_gavel = checkpoint
        self._emit(EventType.GAVEL_REQUESTED, **checkpoint.request.to_dict())
        logger.info("Awaiting gavel", phase_id=phase.id, can_skip=phase.gavel.can_skip)
        try:
            resolved = await checkpoint.wait()
        finally:
            checkpoint.cancel()
            self.pending_gavel = None
        self._emit(
            EventType.GAVEL_RESOLVED,
            phase_id=phase.id,
            decision=state.gavel.decision,
            skipped=state.gavel.skipped,
        )
        await self.control.checkpoint()
        return resolved


def merge_outputs(results: list[ActionResult]) -> Any:
    """
    Structural merge of action outputs in order; later writers win.

    Parallel results keyed by participant contribute each participant's value
    rather than the participant-keyed mapping.
    """
    contributions: list[Any] = []
    for result in results:
        if result.is_parallel_keyed and isinstance(result.value, dict):
            contributions.extend(result.value.values())
        else:
            contributions.append(result.value)

    merged: Any = None
    for value in contributions:
        if value is None:
            continue
        merged = _merge(merged, value)
    return {} if merged is None else merged


def _merge(left: Any, right: Any) -> Any:
    if left is None:
        return copy.deepcopy(right)
    if isinstance(left, dict) and isinstance(right, dict):
        merged = dict(left)
        for key, value in right.items():
            if isinstance(merged.get(key), dict) and isinstance(value, dict):
                merged[key] = _merge(merged[key], value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged
    if isinstance(left, str) and isinstance(right, str):
        return f"{left}\n\n{right}"
    if isinstance(left, list) and isinstance(right, list):
        return [*left, *right]
    if isinstance(left, list):
        return [*left, right]
    return [left, right]
