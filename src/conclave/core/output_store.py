"""
Output store: globals, per-action and per-phase outputs, and the final output.
"""

import asyncio
import copy
from typing import Any

from ..observability.logging import get_logger
from .definitions import OutputSpec, OutputTarget

logger = get_logger(__name__)


class OutputStore:
    """
    Keyed run outputs shared by concurrently executing actions.

    Globals are write-once per key per run; a seeded pipeline default does not
    count as a write. Explicit action output targets overwrite (last writer wins)
    unless the action asks to append.
    """

    def __init__(self, globals_: dict[str, Any] | None = None):
        self.globals: dict[str, Any] = dict(globals_ or {})
        self.phase_outputs: dict[str, Any] = {}
        self.action_outputs: dict[str, dict[str, Any]] = {}
        self.phase_targets: dict[str, dict[str, Any]] = {}
        self.next_action_input: dict[str, Any] = {}
        self.final_output: Any = None
        self.final_output_set = False
        self._written_globals: set[str] = set()
        self._lock = asyncio.Lock()

    async def set_global(self, key: str, value: Any, overwrite: bool = False) -> bool:
        """Write a global; returns False if the key was already written this run."""
        async with self._lock:
            return self._set_global(key, value, overwrite)

    def _set_global(self, key: str, value: Any, overwrite: bool) -> bool:
        if key in self._written_globals and not overwrite:
            logger.warning("Global already written this run, keeping first value", key=key)
            return False
        self.globals[key] = value
        self._written_globals.add(key)
        return True

    def get_global(self, key: str, default: Any = None) -> Any:
        return self.globals.get(key, default)

    async def route_action_output(
        self, phase_id: str, action_id: str, spec: OutputSpec, value: Any
    ) -> None:
        """Record an action's result and write it to its declared target."""
        async with self._lock:
            self.action_outputs.setdefault(phase_id, {})[action_id] = value
            key = spec.target_key or action_id
            match spec.target:
                case OutputTarget.PHASE_OUTPUT:
                    bucket = self.phase_targets.setdefault(phase_id, {})
                    bucket[key] = _combine(bucket.get(key), value, spec.append)
                case OutputTarget.GLOBAL:
                    combined = _combine(self.globals.get(key), value, spec.append)
                    self._set_global(key, combined, overwrite=True)
                case OutputTarget.NEXT_ACTION:
                    self.next_action_input[phase_id] = value

    def get_phase_target(self, phase_id: str, key: str, default: Any = None) -> Any:
        """Value written to a phase output key, or an action id when no key was given."""
        return self.phase_targets.get(phase_id, {}).get(key, default)

    def has_next_action_input(self, phase_id: str) -> bool:
        return phase_id in self.next_action_input

    def pop_next_action_input(self, phase_id: str, default: Any = None) -> Any:
        return self.next_action_input.pop(phase_id, default)

    def get_action_output(self, phase_id: str, action_id: str, default: Any = None) -> Any:
        return self.action_outputs.get(phase_id, {}).get(action_id, default)

    def get_action_outputs(self, phase_id: str) -> dict[str, Any]:
        return dict(self.action_outputs.get(phase_id, {}))

    async def set_phase_output(self, phase_id: str, value: Any) -> None:
        async with self._lock:
            self.phase_outputs[phase_id] = value

    def get_phase_output(self, phase_id: str, default: Any = None) -> Any:
        return self.phase_outputs.get(phase_id, default)

    async def set_final_output(self, value: Any) -> None:
        async with self._lock:
            if self.final_output_set:
                logger.warning("Final output already set, ignoring")
                return
            self.final_output = value
            self.final_output_set = True

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(
            {
                "globals": self.globals,
                "phaseOutputs": self.phase_outputs,
                "actionOutputs": self.action_outputs,
                "phaseTargets": self.phase_targets,
                "finalOutput": self.final_output,
            }
        )


def _combine(existing: Any, value: Any, append: bool) -> Any:
    if not append:
        return value
    if existing is None:
        return [value]
    if isinstance(existing, list):
        return [*existing, value]
    return [existing, value]
