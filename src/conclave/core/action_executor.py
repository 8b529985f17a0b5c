"""
Action execution: participants, input, RAG, prompt, orchestration, output routing.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..agents.base import AgentInvoker, Retriever
from ..config.settings import EngineConfig
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from ..observability.tracing import add_span_attributes
from .definitions import ActionDefinition, InputSource, OrchestrationMode, PhaseDefinition
from .errors import ParticipantError
from .orchestration import (
    AgreementScorer,
    OrchestrationContext,
    OrchestrationResult,
    Turn,
    orchestrate,
)
from .output_store import OutputStore
from .participants import ParticipantResolver
from .prompts import format_context, render_template
from .runtime_patterns import RunControl, retrying
from .state_machine import ActionLifecycle
from .threads import ThreadLedger, ThreadType, stringify

logger = get_logger(__name__)

StageCallback = Callable[[ActionLifecycle], Awaitable[None]]


@dataclass
class PhaseContext:
    """Everything an action needs to know about the phase it runs in."""

    phase: PhaseDefinition
    phase_index: int
    phase_input: Any
    run_input: Any
    context: dict[str, Any] = field(default_factory=dict)
    phase_thread_id: str | None = None

    def previous_action_id(self, action_id: str) -> str | None:
        ids = [a.id for a in self.phase.actions]
        index = ids.index(action_id)
        return ids[index - 1] if index > 0 else None


@dataclass
class ActionResult:
    action_id: str
    value: Any
    orchestration: OrchestrationResult | None = None
    attempts: int = 1
    participant_ids: list[str] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def is_parallel_keyed(self) -> bool:
        return (
            self.orchestration is not None
            and self.orchestration.mode is OrchestrationMode.PARALLEL
            and len(self.participant_ids) > 1
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "value": self.value,
            "attempts": self.attempts,
            "participant_ids": list(self.participant_ids),
            "duration_s": self.duration_s,
            "orchestration": self.orchestration.to_dict() if self.orchestration else None,
        }


class ActionExecutor:
    """Runs one action to `respond`, reporting each lifecycle stage through a callback."""

    def __init__(
        self,
        resolver: ParticipantResolver,
        invoker: AgentInvoker,
        ledger: ThreadLedger,
        output_store: OutputStore,
        control: RunControl,
        engine: EngineConfig,
        retriever: Retriever | None = None,
        scorer: AgreementScorer | None = None,
    ):
        self.resolver = resolver
        self.invoker = invoker
        self.ledger = ledger
        self.output_store = output_store
        self.control = control
        self.engine = engine
        self.retriever = retriever
        self.scorer = scorer

    def resolve_input(self, action: ActionDefinition, ctx: PhaseContext) -> Any:
        spec = action.input
        match spec.source:
            case InputSource.PHASE_INPUT:
                value = ctx.phase_input
                if spec.source_key and isinstance(value, dict):
                    value = value.get(spec.source_key)
            case InputSource.PREVIOUS_ACTION:
                if spec.source_key:
                    value = self.output_store.get_phase_target(
                        ctx.phase.id,
                        spec.source_key,
                        self.output_store.get_action_output(ctx.phase.id, spec.source_key),
                    )
                elif self.output_store.has_next_action_input(ctx.phase.id):
                    value = self.output_store.pop_next_action_input(ctx.phase.id)
                else:
                    previous = ctx.previous_action_id(action.id)
                    value = (
                        self.output_store.get_action_output(ctx.phase.id, previous)
                        if previous
                        else ctx.phase_input
                    )
            case InputSource.GLOBAL:
                value = self.output_store.get_global(spec.source_key) if spec.source_key else None
            case InputSource.CUSTOM:
                value = spec.source_key or ""
            case InputSource.RUN_INPUT:
                value = ctx.run_input

        if spec.transform:
            value = render_template(
                spec.transform, input=value, globals=self.output_store.globals
            )
        return value

    async def _retrieve(self, action: ActionDefinition, input_value: Any) -> tuple[Any, str]:
        """Run retrieval and apply the result target; returns (input, rag context text)."""
        rag = action.rag
        if not rag.enabled:
            return input_value, ""
        if self.retriever is None:
            logger.warning("RAG enabled but no retriever configured", action_id=action.id)
            return input_value, ""

        query = render_template(rag.query_template or "{{input}}", input=input_value)
        with probe("rag.retrieve", action_id=action.id):
            results = await self.retriever.retrieve(rag.rag_pipeline_id, query)
        text = stringify(results) if results is not None else ""

        target = rag.result_target
        if target == "input":
            return f"{stringify(input_value)}\n\n{text}" if text else input_value, ""
        if target.startswith("global:"):
            await self.output_store.set_global(target.split(":", 1)[1], results, overwrite=True)
            return input_value, ""
        return input_value, text

    async def execute(
        self, action: ActionDefinition, ctx: PhaseContext, on_stage: StageCallback
    ) -> ActionResult:
        start = time.perf_counter()
        metrics = get_metrics_collector()

        with probe("action.execute", action_id=action.id, phase_id=ctx.phase.id):
            self.control.raise_if_aborted()
            await on_stage(ActionLifecycle.START)

            input_value = self.resolve_input(action, ctx)
            keyword_sources = {
                "input": stringify(input_value) if input_value is not None else "",
                "context": format_context(ctx.context),
            }
            participants = self.resolver.resolve(
                action, keyword_sources=keyword_sources, team_scope=ctx.phase.teams or None
            )
            input_value, rag_text = await self._retrieve(action, input_value)

            thread = self.ledger.get_or_create(
                ThreadType.ACTION, f"{ctx.phase.id}:{action.id}", phase_id=ctx.phase.id
            )
            if input_value is not None:
                await self.ledger.append(thread.id, "user", input_value)

            context_text = format_context(ctx.context)

            def build_prompt(turn: Turn) -> str:
                return render_template(
                    action.prompt_template,
                    input=input_value,
                    ragContext=rag_text,
                    previousResponse=turn.previous_response,
                    transcript=turn.transcript,
                    participant={"id": turn.participant.id, "name": turn.participant.name},
                    phase={"id": ctx.phase.id, "name": ctx.phase.name or ctx.phase.id},
                    globals=self.output_store.globals,
                    context=context_text,
                    round=turn.round,
                )

            timeout_ms = action.execution.timeout_ms or self.engine.default_timeout_ms
            orchestration_ctx = OrchestrationContext(
                participants=participants,
                invoker=self.invoker,
                ledger=self.ledger,
                thread_id=thread.id,
                control=self.control,
                build_prompt=build_prompt,
                engine=self.engine,
                timeout_s=timeout_ms / 1000.0,
                max_rounds=action.participants.max_rounds or self.engine.default_max_rounds,
                consensus_threshold=(
                    action.participants.consensus_threshold
                    if action.participants.consensus_threshold is not None
                    else self.engine.default_consensus_threshold
                ),
                scorer=self.scorer,
                action_id=action.id,
            )

            await on_stage(ActionLifecycle.IN_PROGRESS)
            add_span_attributes(
                action_id=action.id,
                orchestration=action.participants.orchestration.value,
                participants=len(participants),
            )

            attempts = 0
            try:
                async for attempt in retrying(action.execution.retry_count, self.engine.retry_backoff_s):
                    with attempt:
                        attempts += 1
                        if attempts > 1:
                            logger.info(
                                "Retrying action",
                                action_id=action.id,
                                attempt=attempts,
                                max_attempts=action.execution.retry_count + 1,
                            )
                        result = await orchestrate(
                            action.participants.orchestration, orchestration_ctx
                        )
            except ParticipantError:
                metrics.record_action(action.id, False, attempts)
                logger.error(
                    "Action failed after retries",
                    action_id=action.id,
                    attempts=attempts,
                )
                raise

            await on_stage(ActionLifecycle.COMPLETE)
            await self.output_store.route_action_output(
                ctx.phase.id, action.id, action.output, result.value
            )
            if ctx.phase_thread_id is not None:
                await self.ledger.append(
                    ctx.phase_thread_id,
                    "assistant",
                    result.value,
                    participant_name=action.label,
                )
            metrics.record_action(action.id, True, attempts)
            await on_stage(ActionLifecycle.RESPOND)

        duration = time.perf_counter() - start
        logger.timed(
            "Action complete",
            duration * 1000,
            action_id=action.id,
            attempts=attempts,
            orchestration=result.mode.value,
        )
        return ActionResult(
            action_id=action.id,
            value=result.value,
            orchestration=result,
            attempts=attempts,
            participant_ids=[p.id for p in participants],
            duration_s=duration,
        )
