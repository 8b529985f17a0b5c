"""
Conclave - pipeline run engine for multi-agent deliberation

Executes a pipeline (an ordered list of phases, each a set of actions) as a
single supervised run. Actions are dispatched by trigger rules, fan out to
the positions resolved for them, and combine their answers through an
orchestration strategy: sequential, parallel, round robin or consensus.
Phase outputs are consolidated and may be held at a human review checkpoint
(the gavel) before the run moves on.

Quick Start:
    >>> from conclave import InMemoryDirectory, RunSupervisor
    >>>
    >>> supervisor = RunSupervisor(directory=InMemoryDirectory.from_file("org.json"),
    ...                            invoker=my_invoker)
    >>> run = await supervisor.start_run("review", input="Draft the release notes")
    >>> await supervisor.wait_for_completion()
    >>> print(run.status, supervisor.output_store.final_output)

API Server:
    $ conclave --directory org.json
    # or
    $ uvicorn conclave.api.server:app --host 127.0.0.1 --port 8000

    $ curl -X POST http://localhost:8000/runs \
      -H 'Content-Type: application/json' \
      -d '{"pipelineId": "review", "input": "hello"}'

Observability:
    - Structured single-line logs carrying the run ID
    - OpenTelemetry spans and metrics (OTLP export when configured)
    - Optional run snapshots: artifacts/run_<run_id>.json
"""

__version__ = "1.0.0"

from .agents.base import AgentInvoker, InMemoryDirectory, Participant, Position, Team
from .core.definitions import Pipeline
from .core.errors import EngineError
from .core.run import Run
from .core.state_machine import RunStatus
from .core.supervisor import RunSupervisor

__all__ = [
    "AgentInvoker",
    "EngineError",
    "InMemoryDirectory",
    "Participant",
    "Pipeline",
    "Position",
    "Run",
    "RunStatus",
    "RunSupervisor",
    "Team",
    "__version__",
]
