"""
Action trigger graph for a phase, validated as a DAG before a run starts.
"""

from dataclasses import dataclass

from .definitions import ConsolidationPolicy, PhaseDefinition, Pipeline, TriggerType
from .errors import InvalidPipeline, MissingDesignatedAction
from .state_machine import ActionLifecycle


@dataclass(frozen=True)
class Dependency:
    """An action becomes eligible once `target_id` reaches `state`."""

    target_id: str
    state: ActionLifecycle


class TriggerGraph:
    """Dependencies of every action in one phase, indexed by action id."""

    def __init__(self, phase: PhaseDefinition):
        self.phase = phase
        self.action_ids = [a.id for a in phase.actions]
        self.dependencies: dict[str, Dependency | None] = {}

        seen: set[str] = set()
        for action in phase.actions:
            if action.id in seen:
                raise InvalidPipeline(
                    f"Duplicate action id '{action.id}' in phase '{phase.id}'",
                    phase_id=phase.id,
                    action_id=action.id,
                )
            seen.add(action.id)

        for index, action in enumerate(phase.actions):
            self.dependencies[action.id] = self._dependency_for(index)

        self._check_acyclic()

    def _dependency_for(self, index: int) -> Dependency | None:
        action = self.phase.actions[index]
        trigger = action.execution.trigger
        match trigger.type:
            case TriggerType.IMMEDIATE:
                return None
            case TriggerType.SEQUENTIAL:
                if index == 0:
                    return None
                return Dependency(self.phase.actions[index - 1].id, ActionLifecycle.RESPOND)
            case TriggerType.AWAIT | TriggerType.ON:
                target = trigger.target_action_id
                if not target or target not in self.action_ids:
                    raise InvalidPipeline(
                        f"Action '{action.id}' triggers on undefined action '{target}'",
                        phase_id=self.phase.id,
                        action_id=action.id,
                        target_action_id=target,
                    )
                if target == action.id:
                    raise InvalidPipeline(
                        f"Action '{action.id}' cannot trigger on itself",
                        phase_id=self.phase.id,
                        action_id=action.id,
                    )
                state = (
                    ActionLifecycle.RESPOND
                    if trigger.type is TriggerType.AWAIT
                    else trigger.target_state
                )
                return Dependency(target, state)
        raise InvalidPipeline(f"Unknown trigger type: {trigger.type}", action_id=action.id)

    def _check_acyclic(self) -> None:
        """Peel off dependency-free actions level by level; a leftover means a cycle."""
        in_degree = dict.fromkeys(self.action_ids, 0)
        graph: dict[str, list[str]] = {action_id: [] for action_id in self.action_ids}

        for action_id, dep in self.dependencies.items():
            if dep is not None:
                graph[dep.target_id].append(action_id)
                in_degree[action_id] += 1

        remaining = list(self.action_ids)
        while remaining:
            ready = [action_id for action_id in remaining if in_degree[action_id] == 0]
            if not ready:
                raise InvalidPipeline(
                    f"Circular trigger dependency in phase '{self.phase.id}'",
                    phase_id=self.phase.id,
                    actions=remaining,
                )
            for action_id in ready:
                remaining.remove(action_id)
                for dependent in graph[action_id]:
                    in_degree[dependent] -= 1


def validate_pipeline(pipeline: Pipeline) -> dict[str, TriggerGraph]:
    """Check run-level structure and build every phase's trigger graph."""
    if not pipeline.phases:
        raise InvalidPipeline(f"Pipeline '{pipeline.id}' has no phases", pipeline_id=pipeline.id)

    graphs: dict[str, TriggerGraph] = {}
    for phase in pipeline.phases:
        if phase.id in graphs:
            raise InvalidPipeline(
                f"Duplicate phase id '{phase.id}'", pipeline_id=pipeline.id, phase_id=phase.id
            )
        graphs[phase.id] = TriggerGraph(phase)

        output = phase.output
        if output.consolidation is ConsolidationPolicy.DESIGNATED and phase.actions:
            if phase.get_action(output.consolidation_action_id or "") is None:
                raise MissingDesignatedAction(
                    f"Designated action '{output.consolidation_action_id}' "
                    f"not found in phase '{phase.id}'",
                    phase_id=phase.id,
                    action_id=output.consolidation_action_id,
                )
    return graphs
