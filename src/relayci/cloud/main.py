from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional, Sequence

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from relayci.errors import UnknownEventError
from relayci.cache import CacheStore
from relayci.executor import ShellStepExecutor
from relayci.git_facts.git import GitSourceControl
from relayci.loader import load_definitions
from relayci.model import Event, EventKind, PipelineDefinition, Run
from relayci.orchestrator import PipelineOrchestrator
from relayci.report import ConsoleReporter, MemoryReporter, MultiReporter
from relayci.settings import EngineConfig

from .settings import DEFINITIONS, HISTORY_LIMIT

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    kind: str
    repository: str
    branch: str | None = None
    ref: str | None = None
    sha: str | None = None
    pr_number: int | None = None
    base_branch: str | None = None
    cron: str | None = None
    fired_at: datetime | None = None
    inputs: dict[str, str] = Field(default_factory=dict)

class EventResponse(BaseModel):
    run_ids: list[str]
    cancelled: list[str]

class RunSummary(BaseModel):
    id: str
    definition: str
    ref: str
    group_key: str | None
    status: str
    superseded_by: str | None
    created_at: datetime

class RunResponse(BaseModel):
    run: RunSummary | None = None
    result: dict[str, Any] | None = None

# -------------------- App --------------------

def _summary(run: Run) -> RunSummary:
    return RunSummary(
        id=run.id,
        definition=run.definition.name,
        ref=run.context.ref,
        group_key=run.group_key,
        status=run.status.value,
        superseded_by=run.superseded_by,
        created_at=run.created_at,
    )


def _default_orchestrator(
    definitions: Optional[Sequence[PipelineDefinition]],
    history: MemoryReporter,
) -> PipelineOrchestrator:
    config = EngineConfig.from_env()
    return PipelineOrchestrator(
        definitions if definitions is not None else load_definitions(DEFINITIONS),
        source_control=GitSourceControl(base_url=config.git_base_url),
        executor=ShellStepExecutor(cache=CacheStore(config.cache_dir), toolchain_command=config.toolchain_command),
        reporter=MultiReporter([ConsoleReporter(), history]),
        config=config,
    )


def create_app(
    definitions: Optional[Sequence[PipelineDefinition]] = None,
    orchestrator: Optional[PipelineOrchestrator] = None,
    history: Optional[MemoryReporter] = None,
) -> FastAPI:
    """
    Build the control plane.

    `history` must be a reporter the orchestrator reports to; finished runs
    are looked up there. Without an orchestrator one is created on startup
    from RELAYCI_DEFINITIONS.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.orchestrator is None:
            app.state.orchestrator = _default_orchestrator(definitions, app.state.history)
        yield
        app.state.orchestrator.cancel_all()
        app.state.orchestrator.shutdown(wait=False)

    app = FastAPI(title="relayci control plane", lifespan=lifespan)
    app.state.history = history or MemoryReporter(limit=HISTORY_LIMIT)
    app.state.orchestrator = orchestrator

    def current() -> PipelineOrchestrator:
        if app.state.orchestrator is None:
            raise HTTPException(status_code=503, detail="Orchestrator not started")
        return app.state.orchestrator

    # -------------------- Endpoints --------------------

    @app.post("/events", response_model=EventResponse)
    def post_event(req: EventRequest):
        try:
            EventKind.parse(req.kind)
        except UnknownEventError as e:
            raise HTTPException(status_code=422, detail=str(e))

        runs = current().on_event(Event(**req.model_dump()))
        ids = {r.id for r in runs}
        # superseded runs are reported synchronously inside on_event
        cancelled = [r.run_id for r in app.state.history.results if r.superseded_by in ids]
        return EventResponse(run_ids=[r.id for r in runs], cancelled=cancelled)

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs():
        return [_summary(r) for r in current().active_runs()]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        run = current().get_run(run_id)
        if run is not None:
            return RunResponse(run=_summary(run))
        results = app.state.history.for_run(run_id)
        if not results:
            raise HTTPException(status_code=404, detail="Run not found")
        return RunResponse(result=results[-1].to_dict())

    @app.get("/groups", response_model=dict[str, str])
    def groups():
        return current().groups.snapshot()

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    return app


app = create_app()
