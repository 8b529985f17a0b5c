"""
Orchestration strategies: how a resolved participant list jointly answers one action.

Each strategy is a closed variant of OrchestrationMode. Strategies raise
ParticipantError when the orchestrated call as a whole failed; the action
executor retries the whole call with the same participants.

Policies:
- sequential: each participant sees the transcript so far; result is the last
  response (or all responses joined, per engine config)
- parallel: best-effort; failed or timed-out participants are recorded but the
  call only fails when every participant failed
- round_robin: up to max_rounds full cycles; a cycle in which every participant
  answers with the stop token ends the loop early
- consensus: like round_robin, scored after every round; stops once the
  agreement score reaches the threshold
"""

import asyncio
import itertools
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..agents.base import AgentInvoker, AgentResponse, Participant
from ..config.settings import EngineConfig
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from .definitions import OrchestrationMode
from .errors import ParticipantError, ParticipantInvocationFailed, ParticipantTimeout
from .runtime_patterns import RunControl, with_timeout
from .threads import ThreadLedger, stringify

logger = get_logger(__name__)

AgreementScorer = Callable[[list[str]], float]


@dataclass(frozen=True)
class Turn:
    """What a participant gets to see when it is asked to respond."""

    participant: Participant
    round: int
    transcript: str = ""
    previous_response: Any = None


PromptBuilder = Callable[[Turn], str]


@dataclass
class OrchestrationContext:
    participants: list[Participant]
    invoker: AgentInvoker
    ledger: ThreadLedger
    thread_id: str
    control: RunControl
    build_prompt: PromptBuilder
    engine: EngineConfig
    timeout_s: float | None = None
    max_rounds: int = 3
    consensus_threshold: float = 80.0
    scorer: "AgreementScorer | None" = None
    action_id: str | None = None


@dataclass
class OrchestrationResult:
    mode: OrchestrationMode
    value: Any
    responses: list[AgentResponse] = field(default_factory=list)
    rounds: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def contributions(self) -> dict[str, Any]:
        """Successful responses keyed by participant id."""
        return {r.participant_id: r.value for r in self.responses if r.ok}

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "value": self.value,
            "rounds": self.rounds,
            "responses": [r.to_dict() for r in self.responses],
            "metadata": dict(self.metadata),
        }


async def call_participant(ctx: OrchestrationContext, turn: Turn) -> AgentResponse:
    """Invoke one participant with the per-call timeout; errors become ParticipantError."""
    participant = turn.participant
    ctx.control.raise_if_aborted()
    prompt = ctx.build_prompt(turn)
    metrics = get_metrics_collector()
    start = time.perf_counter()

    with probe("participant.invoke", participant_id=participant.id, round=turn.round):
        try:
            value = await with_timeout(
                ctx.invoker.invoke(participant, prompt, dict(participant.position.api_config)),
                ctx.timeout_s,
                participant.id,
            )
        except ParticipantTimeout:
            duration = time.perf_counter() - start
            metrics.record_participant_call(participant.id, duration, False, timed_out=True)
            logger.warning(
                "Participant timed out",
                participant_id=participant.id,
                action_id=ctx.action_id,
                timeout_s=ctx.timeout_s,
            )
            raise
        except ParticipantError:
            metrics.record_participant_call(participant.id, time.perf_counter() - start, False)
            raise
        except Exception as e:
            metrics.record_participant_call(participant.id, time.perf_counter() - start, False)
            raise ParticipantInvocationFailed(
                f"Participant '{participant.name}' failed: {e}",
                participant_id=participant.id,
            ) from e

    duration = time.perf_counter() - start
    metrics.record_participant_call(participant.id, duration, True)
    return AgentResponse(
        participant_id=participant.id,
        participant_name=participant.name,
        value=value,
        duration_s=duration,
        round=turn.round,
    )


async def _record(ctx: OrchestrationContext, response: AgentResponse) -> None:
    if response.ok:
        content = response.value
    else:
        content = f"[failed: {response.error}]"
    await ctx.ledger.append(
        ctx.thread_id,
        "assistant",
        content,
        participant_id=response.participant_id,
        participant_name=response.participant_name,
        round=response.round,
    )


async def run_direct(ctx: OrchestrationContext, mode: OrchestrationMode) -> OrchestrationResult:
    """A single participant: one call, no orchestration."""
    response = await call_participant(
        ctx, Turn(ctx.participants[0], 1, ctx.ledger.format_transcript(ctx.thread_id))
    )
    await _record(ctx, response)
    return OrchestrationResult(mode=mode, value=response.value, responses=[response])


async def run_sequential(ctx: OrchestrationContext) -> OrchestrationResult:
    responses: list[AgentResponse] = []
    previous: Any = None
    for participant in ctx.participants:
        turn = Turn(participant, 1, ctx.ledger.format_transcript(ctx.thread_id), previous)
        response = await call_participant(ctx, turn)
        await _record(ctx, response)
        responses.append(response)
        previous = response.value

    if ctx.engine.sequential_result == "concatenate":
        value: Any = "\n\n".join(stringify(r.value) for r in responses)
    else:
        value = previous
    return OrchestrationResult(mode=OrchestrationMode.SEQUENTIAL, value=value, responses=responses)


async def run_parallel(ctx: OrchestrationContext) -> OrchestrationResult:
    transcript = ctx.ledger.format_transcript(ctx.thread_id)

    async def attempt(participant: Participant) -> AgentResponse:
        try:
            return await call_participant(ctx, Turn(participant, 1, transcript))
        except ParticipantError as e:
            return AgentResponse(
                participant_id=participant.id,
                participant_name=participant.name,
                ok=False,
                error=e.message,
                error_code=e.code,
                round=1,
            )

    responses = list(await asyncio.gather(*(attempt(p) for p in ctx.participants)))
    for response in responses:
        await _record(ctx, response)

    failed = [r for r in responses if not r.ok]
    if len(failed) == len(responses):
        if all(r.error_code == ParticipantTimeout.code for r in failed):
            raise ParticipantTimeout(
                f"All {len(failed)} parallel participants timed out", action_id=ctx.action_id
            )
        raise ParticipantInvocationFailed(
            f"All {len(failed)} parallel participants failed", action_id=ctx.action_id
        )
    if failed:
        logger.warning(
            "Parallel call partially failed",
            action_id=ctx.action_id,
            failed=[r.participant_id for r in failed],
            succeeded=len(responses) - len(failed),
        )

    result = OrchestrationResult(mode=OrchestrationMode.PARALLEL, value=None, responses=responses)
    result.value = result.contributions
    result.metadata["failed"] = [r.participant_id for r in failed]
    return result


def is_stop_response(value: Any, token: str) -> bool:
    return isinstance(value, str) and value.strip().upper() == token.strip().upper()


async def run_round_robin(ctx: OrchestrationContext) -> OrchestrationResult:
    token = ctx.engine.round_robin_stop_token
    responses: list[AgentResponse] = []
    scratchpad: Any = None
    rounds = 0
    converged = False

    for round_no in range(1, ctx.max_rounds + 1):
        rounds = round_no
        stops = 0
        for participant in ctx.participants:
            turn = Turn(participant, round_no, ctx.ledger.format_transcript(ctx.thread_id), scratchpad)
            response = await call_participant(ctx, turn)
            await _record(ctx, response)
            responses.append(response)
            if is_stop_response(response.value, token):
                stops += 1
            else:
                scratchpad = response.value
        if stops == len(ctx.participants):
            converged = True
            logger.info("Round robin converged", action_id=ctx.action_id, round=round_no)
            break

    return OrchestrationResult(
        mode=OrchestrationMode.ROUND_ROBIN,
        value=scratchpad,
        responses=responses,
        rounds=rounds,
        metadata={"converged": converged},
    )


_WORD = re.compile(r"\w+")


def _words(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


def jaccard_agreement(texts: list[str]) -> float:
    """Mean pairwise Jaccard similarity of word sets, on a 0-100 scale."""
    if len(texts) < 2:
        return 100.0
    sets = [_words(t) for t in texts]
    scores = []
    for a, b in itertools.combinations(sets, 2):
        union = a | b
        scores.append(len(a & b) / len(union) if union else 1.0)
    return 100.0 * sum(scores) / len(scores)


def _most_central(responses: list[AgentResponse]) -> Any:
    """The response most similar on average to the others in its round."""
    if len(responses) == 1:
        return responses[0].value
    sets = [_words(stringify(r.value)) for r in responses]

    def centrality(i: int) -> float:
        total = 0.0
        for j, other in enumerate(sets):
            if i == j:
                continue
            union = sets[i] | other
            total += len(sets[i] & other) / len(union) if union else 1.0
        return total

    best = max(range(len(responses)), key=centrality)
    return responses[best].value


async def run_consensus(ctx: OrchestrationContext) -> OrchestrationResult:
    scorer = ctx.scorer or jaccard_agreement
    responses: list[AgentResponse] = []
    proposal: Any = None
    agreement = 0.0
    reached = False
    history: list[float] = []
    rounds = 0

    for round_no in range(1, ctx.max_rounds + 1):
        rounds = round_no
        round_responses: list[AgentResponse] = []
        for participant in ctx.participants:
            turn = Turn(participant, round_no, ctx.ledger.format_transcript(ctx.thread_id), proposal)
            response = await call_participant(ctx, turn)
            await _record(ctx, response)
            round_responses.append(response)
        responses.extend(round_responses)

        agreement = scorer([stringify(r.value) for r in round_responses])
        history.append(agreement)
        proposal = _most_central(round_responses)
        logger.debug(
            "Consensus round scored",
            action_id=ctx.action_id,
            round=round_no,
            agreement=round(agreement, 2),
        )
        if agreement >= ctx.consensus_threshold:
            reached = True
            break

    if not reached:
        logger.info(
            "Consensus not reached",
            action_id=ctx.action_id,
            rounds=rounds,
            agreement=round(agreement, 2),
        )
    return OrchestrationResult(
        mode=OrchestrationMode.CONSENSUS,
        value={
            "proposal": proposal,
            "consensus_reached": reached,
            "agreement": agreement,
            "rounds": rounds,
        },
        responses=responses,
        rounds=rounds,
        metadata={"agreement_history": history},
    )


async def orchestrate(mode: OrchestrationMode, ctx: OrchestrationContext) -> OrchestrationResult:
    """Dispatch to the strategy for `mode`."""
    if len(ctx.participants) == 1:
        return await run_direct(ctx, mode)
    match mode:
        case OrchestrationMode.SEQUENTIAL:
            return await run_sequential(ctx)
        case OrchestrationMode.PARALLEL:
            return await run_parallel(ctx)
        case OrchestrationMode.ROUND_ROBIN:
            return await run_round_robin(ctx)
        case OrchestrationMode.CONSENSUS:
            return await run_consensus(ctx)
    raise ValueError(f"Unknown orchestration mode: {mode}")
