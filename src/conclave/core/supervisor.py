"""
Run supervisor: the single owner of the active run.

Commands (start/pause/resume/abort, gavel resolution) and queries are methods on
one object. Events go to the supervisor's own subscriber list. At most one run is
live at a time; starting another while it is active is rejected.
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..agents.base import AgentInvoker, ContextAssembler, Directory, Retriever, Synthesizer
from ..config.settings import EngineConfig
from ..observability.logging import get_logger, set_run_id
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from .action_executor import ActionExecutor
from .audit import save_run_snapshot
from .definitions import Pipeline
from .errors import (
    AlreadyRunning,
    GavelNotPending,
    InvalidPipeline,
    InvalidTransition,
    RunFailed,
)
from .events import Event, EventBus, EventType, Subscriber
from .gavel import GavelCheckpoint, GavelRequest
from .orchestration import AgreementScorer
from .output_store import OutputStore
from .participants import ParticipantResolver
from .phase_controller import PhaseController
from .run import Run
from .runtime_patterns import RunControl
from .state_machine import ActionLifecycle, RunStatus
from .threads import ThreadLedger, ThreadType
from .triggers import validate_pipeline

logger = get_logger(__name__)


class RunSupervisor:
    """
    Drives a pipeline run phase by phase.

    Example:
        >>> supervisor = RunSupervisor(directory, invoker)
        >>> run = await supervisor.start_run(pipeline, "hello")
        >>> await supervisor.wait_for_completion()
        >>> supervisor.output_store.final_output
    """

    def __init__(
        self,
        directory: Directory,
        invoker: AgentInvoker,
        engine: EngineConfig | None = None,
        context_assembler: ContextAssembler | None = None,
        retriever: Retriever | None = None,
        synthesizer: Synthesizer | None = None,
        scorer: AgreementScorer | None = None,
        artifacts_dir: Path | str | None = None,
    ):
        self.directory = directory
        self.invoker = invoker
        self.engine = engine or EngineConfig()
        self.context_assembler = context_assembler
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.scorer = scorer
        self.artifacts_dir = artifacts_dir
        self.events = EventBus()

        self._run: Run | None = None
        self._pipeline: Pipeline | None = None
        self._last_run: Run | None = None
        self._task: asyncio.Task | None = None
        self._control: RunControl | None = None
        self._started = 0.0
        self._controller: PhaseController | None = None
        self.output_store: OutputStore | None = None
        self.ledger: ThreadLedger | None = None

    # Queries

    def is_running(self) -> bool:
        return self._run is not None and self._run.status in (RunStatus.RUNNING, RunStatus.PAUSED)

    def get_active_run(self) -> Run | None:
        return self._run if self.is_running() else None

    @property
    def current_run(self) -> Run | None:
        """The active run, or the most recent one until the next start."""
        return self._run

    @property
    def last_run(self) -> Run | None:
        return self._last_run

    def get_all_pipelines(self) -> list[Pipeline]:
        return self.directory.get_all_pipelines()

    def get_pipeline(self, pipeline_id: str) -> Pipeline | None:
        return self.directory.get_pipeline(pipeline_id)

    def get_progress(self) -> dict[str, Any]:
        run, pipeline = self._run, self._pipeline
        if run is None or pipeline is None:
            return {
                "run_id": None,
                "status": None,
                "completed_actions": 0,
                "total_actions": 0,
                "percent": 0.0,
            }

        total = sum(len(p.actions) for p in pipeline.phases)
        completed = 0
        current_actions = []
        for phase in pipeline.phases:
            state = run.phases.get(phase.id)
            if state is None:
                continue
            for action in phase.actions:
                tracker = state.actions.get(action.id)
                if tracker is None:
                    continue
                if tracker.has_reached(ActionLifecycle.RESPOND):
                    completed += 1
                elif tracker.current is not None:
                    current_actions.append(action.id)

        if total:
            percent = round(100.0 * completed / total, 1)
        else:
            percent = 100.0 if run.is_terminal else 0.0
        return {
            "run_id": run.id,
            "status": run.status.value,
            "current_phase_index": run.current_phase_index,
            "current_phase_id": run.current_phase_id,
            "current_actions": current_actions,
            "completed_actions": completed,
            "total_actions": total,
            "percent": percent,
        }

    # Events

    def subscribe(
        self, callback: Subscriber, types: Iterable[EventType] | None = None
    ) -> Callable[[], None]:
        return self.events.subscribe(callback, types)

    def _emit(self, run: Run, event_type: EventType, **data: Any) -> None:
        self.events.emit(Event(event_type, run.id, data))

    # Commands

    def _load_pipeline(self, pipeline: Pipeline | dict[str, Any] | str) -> Pipeline:
        if isinstance(pipeline, Pipeline):
            return pipeline
        if isinstance(pipeline, str):
            found = self.directory.get_pipeline(pipeline)
            if found is None:
                raise InvalidPipeline(f"Unknown pipeline '{pipeline}'", pipeline_id=pipeline)
            return found
        try:
            return Pipeline.model_validate(pipeline)
        except ValidationError as e:
            raise InvalidPipeline(
                f"Malformed pipeline definition: {e.error_count()} error(s)",
                errors=e.errors(include_url=False),
            ) from e

    async def start_run(self, pipeline: Pipeline | dict[str, Any] | str, input: Any = None) -> Run:
        """Validate, create the run and begin driving it in the background."""
        if self.is_running():
            raise AlreadyRunning("A run is already active", run_id=self._run.id)

        definition = self._load_pipeline(pipeline)
        graphs = validate_pipeline(definition)

        run = Run(pipeline_id=definition.id, pipeline_name=definition.name, input=input)
        control = RunControl(self.engine.pause_poll_interval_s)
        ledger = ThreadLedger()
        output_store = OutputStore(definition.globals)
        ledger.create_thread(ThreadType.RUN, run.id)

        executor = ActionExecutor(
            resolver=ParticipantResolver(self.directory),
            invoker=self.invoker,
            ledger=ledger,
            output_store=output_store,
            control=control,
            engine=self.engine,
            retriever=self.retriever,
            scorer=self.scorer,
        )
        self._controller = PhaseController(
            run=run,
            pipeline=definition,
            graphs=graphs,
            executor=executor,
            ledger=ledger,
            output_store=output_store,
            control=control,
            events=self.events,
            engine=self.engine,
            context_assembler=self.context_assembler,
            synthesizer=self.synthesizer,
        )
        self._run, self._pipeline, self._control = run, definition, control
        self.ledger, self.output_store = ledger, output_store

        run.state.transition(RunStatus.RUNNING)
        run.mark_started()
        self._started = time.perf_counter()
        logger.info(
            "Run started",
            run_id=run.id,
            pipeline_id=definition.id,
            phases=len(definition.phases),
        )
        self._emit(run, EventType.RUN_STARTED, pipeline_id=definition.id)
        self._task = asyncio.create_task(self._drive(run, definition), name=f"run:{run.id}")
        return run

    def _require_run(self) -> Run:
        if self._run is None:
            raise InvalidTransition("No run to control")
        return self._run

    def pause_run(self) -> Run:
        run = self._require_run()
        run.state.transition(RunStatus.PAUSED)
        self._control.pause()
        logger.info("Run paused", run_id=run.id, phase_id=run.current_phase_id)
        self._emit(run, EventType.RUN_PAUSED, phase_id=run.current_phase_id)
        return run

    def resume_run(self) -> Run:
        run = self._require_run()
        run.state.transition(RunStatus.RUNNING)
        self._control.resume()
        logger.info("Run resumed", run_id=run.id, phase_id=run.current_phase_id)
        self._emit(run, EventType.RUN_RESUMED, phase_id=run.current_phase_id)
        return run

    async def abort_run(self) -> Run | None:
        """Abort the active run; a no-op when there is none or it already ended."""
        run = self._run
        if run is None or run.is_terminal:
            return run

        run.state.transition(RunStatus.ABORTED)
        self._control.abort()
        logger.warning("Run aborted", run_id=run.id, phase_id=run.current_phase_id)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        if run.ended_at is None:
            # cancelled before the driver got to run
            self._emit(run, EventType.RUN_ABORTED, phase_id=run.current_phase_id)
            self._finish(run, self._pipeline, time.perf_counter() - self._started)
        return run

    async def wait_for_completion(self, timeout: float | None = None) -> Run | None:
        if self._task is not None:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        return self._run

    # Gavel

    def pending_gavel(self) -> GavelRequest | None:
        checkpoint = self._checkpoint()
        return checkpoint.request if checkpoint is not None else None

    def _checkpoint(self) -> GavelCheckpoint | None:
        if self._controller is None or not self.is_running():
            return None
        checkpoint = self._controller.pending_gavel
        return checkpoint if checkpoint is not None and checkpoint.pending else None

    def _require_checkpoint(self) -> GavelCheckpoint:
        checkpoint = self._checkpoint()
        if checkpoint is None:
            raise GavelNotPending("No gavel is awaiting a decision")
        return checkpoint

    def accept_gavel(self) -> None:
        self._require_checkpoint().accept()

    def edit_gavel(self, values: dict[str, Any]) -> None:
        self._require_checkpoint().edit(values)

    def skip_gavel(self) -> None:
        self._require_checkpoint().skip()

    # Driver

    async def _drive(self, run: Run, pipeline: Pipeline) -> None:
        set_run_id(run.id)
        control = self._control
        start = self._started
        try:
            with probe("run.execute", run_id=run.id, pipeline_id=pipeline.id):
                phase_input: Any = run.input
                output: Any = None
                for index, phase in enumerate(pipeline.phases):
                    await control.checkpoint()
                    run.advance_cursor(index, phase.id)
                    output = await self._controller.run_phase(index, phase, phase_input)
                    phase_input = output

                await control.checkpoint()
                await self.output_store.set_final_output(output)
                run.state.transition(RunStatus.COMPLETED)
                logger.info("Run completed", run_id=run.id)
                self._emit(run, EventType.RUN_COMPLETED, final_output=output)
        except asyncio.CancelledError:
            if not control.aborted:
                raise
            self._emit(run, EventType.RUN_ABORTED, phase_id=run.current_phase_id)
        except Exception as e:
            failure = e if isinstance(e, RunFailed) else RunFailed(e, phase_id=run.current_phase_id)
            await self._fail(run, failure)
        finally:
            self._finish(run, pipeline, time.perf_counter() - start)

    async def _fail(self, run: Run, failure: RunFailed) -> None:
        run.error = failure.to_dict()
        logger.error(
            f"Run failed: {failure.message}",
            run_id=run.id,
            phase_id=failure.phase_id,
            action_id=failure.action_id,
            cause=getattr(failure.cause, "code", type(failure.cause).__name__),
        )
        try:
            # paused -> failed is not a legal transition; wait for resume or abort
            await self._control.checkpoint()
        except asyncio.CancelledError:
            self._emit(run, EventType.RUN_ABORTED, phase_id=run.current_phase_id)
            return
        if not run.is_terminal:
            run.state.transition(RunStatus.FAILED)
            self._emit(run, EventType.RUN_FAILED, error=run.error)

    def _finish(self, run: Run, pipeline: Pipeline, duration: float) -> None:
        run.mark_ended()
        self._last_run = run
        get_metrics_collector().record_run(pipeline.id, run.status.value, duration)
        if self.artifacts_dir is not None:
            try:
                save_run_snapshot(run, self.output_store, self.ledger, self.artifacts_dir)
            except OSError:
                logger.exception("Run snapshot not written", run_id=run.id)
        set_run_id(None)
