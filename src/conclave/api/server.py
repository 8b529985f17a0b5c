"""
FastAPI control surface for the Conclave run engine.

Endpoints:
- GET /health: Component health and uptime
- GET /pipelines, GET /pipelines/{id}: Pipelines known to the directory
- POST /runs: Start a run (202); the run continues in the background
- GET /runs/active: Active (or most recent) run, progress and outputs
- POST /runs/pause | /runs/resume | /runs/abort: Run control
- GET /gavel: Pending review checkpoint, if any
- POST /gavel/accept | /gavel/edit | /gavel/skip: Resolve the checkpoint

Engine errors are returned as {"error": <code>, "message": <text>} with a
status derived from the error kind.

Usage:
    $ uvicorn conclave.api.server:app --host 127.0.0.1 --port 8000
    $ curl -X POST http://localhost:8000/runs \
      -H 'Content-Type: application/json' \
      -d '{"pipelineId": "review", "input": "hello"}'
"""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .. import __version__
from ..config.container import Container, setup_container
from ..config.settings import get_settings
from ..core.errors import (
    AlreadyRunning,
    EngineError,
    FieldNotEditable,
    InvalidPipeline,
    InvalidTransition,
    MissingDesignatedAction,
)
from ..core.supervisor import RunSupervisor
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector

logger = get_logger(__name__)

# Global state
container: Container | None = None


def _reset_globals_for_tests() -> None:
    """Reset global state for test isolation."""
    global container
    container = None


class StartRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pipeline_id: str | None = Field(None, alias="pipelineId")
    pipeline: dict[str, Any] | None = Field(None, description="Inline pipeline definition")
    input: Any = Field(None, description="Run input handed to the first phase")


class GavelEditRequest(BaseModel):
    values: dict[str, Any]


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    components: dict[str, str]


def status_for(error: EngineError) -> int:
    if isinstance(error, (AlreadyRunning, InvalidTransition)):
        return 409
    if isinstance(error, (InvalidPipeline, MissingDesignatedAction, FieldNotEditable)):
        return 422
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global container

    logger.info("Starting Conclave API server...")
    app.state.startup_time = time.time()
    if getattr(app.state, "supervisor", None) is None:
        container = setup_container()
        app.state.supervisor = container.get("supervisor")
    logger.info("Conclave API server ready")

    yield

    logger.info("Shutting down Conclave API server...")
    supervisor: RunSupervisor = app.state.supervisor
    if supervisor.is_running():
        await supervisor.abort_run()
    if container is not None:
        await container.cleanup()


def get_supervisor(request: Request) -> RunSupervisor:
    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None:
        raise HTTPException(status_code=503, detail="Supervisor not initialized")
    return supervisor


def run_payload(supervisor: RunSupervisor) -> dict[str, Any]:
    run = supervisor.current_run
    return {
        "run": run.to_dict() if run is not None else None,
        "progress": supervisor.get_progress(),
        "outputs": supervisor.output_store.snapshot() if supervisor.output_store else None,
    }


def create_app(supervisor: RunSupervisor | None = None) -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Conclave",
        description="Multi-agent pipeline run engine",
        version=__version__,
        docs_url="/docs" if settings.api.enable_docs else None,
        redoc_url="/redoc" if settings.api.enable_docs else None,
        lifespan=lifespan,
    )
    app.state.supervisor = supervisor
    app.state.startup_time = time.time()

    if settings.api.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.api.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["authorization", "content-type"],
        )

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        logger.warning(
            "Engine error",
            path=request.url.path,
            error=exc.code,
            detail=exc.message,
        )
        return JSONResponse(
            status_code=status_for(exc),
            content={"error": exc.code, "message": exc.message},
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check_endpoint(request: Request) -> HealthResponse:
        """Health check endpoint."""
        uptime = max(0.0, time.time() - getattr(app.state, "startup_time", time.time()))
        components = {"config": "healthy"}
        supervisor = getattr(app.state, "supervisor", None)
        if supervisor is None:
            components["supervisor"] = "not_initialized"
        else:
            components["supervisor"] = "busy" if supervisor.is_running() else "idle"

        return HealthResponse(
            status="healthy" if supervisor is not None else "unhealthy",
            version=__version__,
            uptime_seconds=uptime,
            components=components,
        )

    @app.get("/metrics")
    async def metrics_endpoint() -> dict[str, Any]:
        return get_metrics_collector().get_engine_metrics()

    @app.get("/pipelines")
    async def list_pipelines(request: Request) -> list[dict[str, Any]]:
        supervisor = get_supervisor(request)
        return [
            {"id": p.id, "name": p.name, "description": p.description, "phases": len(p.phases)}
            for p in supervisor.get_all_pipelines()
        ]

    @app.get("/pipelines/{pipeline_id}")
    async def get_pipeline(pipeline_id: str, request: Request) -> dict[str, Any]:
        pipeline = get_supervisor(request).get_pipeline(pipeline_id)
        if pipeline is None:
            raise HTTPException(status_code=404, detail=f"Pipeline '{pipeline_id}' not found")
        return pipeline.model_dump(mode="json", by_alias=True)

    @app.post("/runs", status_code=202)
    async def start_run(body: StartRunRequest, request: Request) -> dict[str, Any]:
        supervisor = get_supervisor(request)
        if body.pipeline is not None:
            definition: Any = body.pipeline
        elif body.pipeline_id is not None:
            definition = supervisor.get_pipeline(body.pipeline_id)
            if definition is None:
                raise HTTPException(
                    status_code=404, detail=f"Pipeline '{body.pipeline_id}' not found"
                )
        else:
            raise HTTPException(status_code=422, detail="pipelineId or pipeline is required")

        await supervisor.start_run(definition, body.input)
        return run_payload(supervisor)

    @app.get("/runs/active")
    async def active_run(request: Request) -> dict[str, Any]:
        return run_payload(get_supervisor(request))

    @app.post("/runs/pause")
    async def pause_run(request: Request) -> dict[str, Any]:
        supervisor = get_supervisor(request)
        supervisor.pause_run()
        return run_payload(supervisor)

    @app.post("/runs/resume")
    async def resume_run(request: Request) -> dict[str, Any]:
        supervisor = get_supervisor(request)
        supervisor.resume_run()
        return run_payload(supervisor)

    @app.post("/runs/abort")
    async def abort_run(request: Request) -> dict[str, Any]:
        supervisor = get_supervisor(request)
        await supervisor.abort_run()
        return run_payload(supervisor)

    @app.get("/gavel")
    async def pending_gavel(request: Request) -> dict[str, Any]:
        gavel = get_supervisor(request).pending_gavel()
        return {"pending": gavel is not None, "request": gavel.to_dict() if gavel else None}

    @app.post("/gavel/accept")
    async def accept_gavel(request: Request) -> dict[str, Any]:
        get_supervisor(request).accept_gavel()
        return {"resolved": "accept"}

    @app.post("/gavel/edit")
    async def edit_gavel(body: GavelEditRequest, request: Request) -> dict[str, Any]:
        get_supervisor(request).edit_gavel(body.values)
        return {"resolved": "edit"}

    @app.post("/gavel/skip")
    async def skip_gavel(request: Request) -> dict[str, Any]:
        get_supervisor(request).skip_gavel()
        return {"resolved": "skip"}

    return app


app = create_app()
