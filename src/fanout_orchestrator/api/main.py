"""FastAPI app entrypoint for fanout-orchestrator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fanout_orchestrator.backend.base import ExecutionBackend
from fanout_orchestrator.config.settings import Settings, get_settings
from fanout_orchestrator.errors import (
    MalformedInputError,
    StoreReadError,
    StoreWriteError,
    SubmissionError,
)
from fanout_orchestrator.orchestrator import Orchestrator
from fanout_orchestrator.reporter import TaskStatusReporter
from fanout_orchestrator.runtime import (
    build_backend,
    build_launcher,
    build_monitor,
    build_orchestrator,
    build_store,
)
from fanout_orchestrator.storage.base import StatusStore
from fanout_orchestrator.storage.models import (
    STATUS_RUNNING,
    ExecutionRecord,
    RunSummary,
    TaskDetail,
)


class StartExecutionRequest(BaseModel):
    request: dict[str, Any]
    durable: bool = True
    execution_id: str | None = Field(default=None, min_length=1)


class TaskStatusUpdate(BaseModel):
    status: Literal["Running", "Completed", "Failed"]
    task_name: str = ""
    started_at: datetime | None = None


class PollResponse(BaseModel):
    iterator: dict[str, Any]
    run_status: str
    completed_tasks: int
    failed_tasks: int
    running_tasks: int
    summary_updated: bool


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    store_override: StatusStore | None,
    backend_override: ExecutionBackend | None,
) -> None:
    if not hasattr(app.state, "store"):
        app.state.store = store_override or build_store(settings)
        if store_override is not None:
            app.state.store.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "orchestrator"):
        backend = backend_override or build_backend(settings)
        app.state.launcher = build_launcher(settings, app.state.store, backend)
        app.state.monitor = build_monitor(app.state.store)
        app.state.reporter = TaskStatusReporter(app.state.store)
        app.state.orchestrator = build_orchestrator(settings, app.state.store, backend)


def create_app(
    *,
    store: StatusStore | None = None,
    backend: ExecutionBackend | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    def _ensure(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            store_override=store,
            backend_override=backend,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure(app)
        yield

    app_lifespan = lifespan if store is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if store is not None:
        _ensure(app)

    def _state(request: Request) -> Any:
        if not hasattr(request.app.state, "orchestrator"):
            _ensure(request.app)
        return request.app.state

    @app.exception_handler(MalformedInputError)
    async def _malformed(request: Request, exc: MalformedInputError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(SubmissionError)
    async def _submission(request: Request, exc: SubmissionError) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={
                "detail": str(exc),
                "workflow_name": exc.workflow_name,
                "run_id": exc.run_id,
                "task_name": exc.task_name,
                "submitted_task_ids": exc.submitted_task_ids,
            },
        )

    @app.exception_handler(StoreWriteError)
    @app.exception_handler(StoreReadError)
    async def _store_unavailable(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/runs")
    def launch_run(payload: dict[str, Any], request: Request) -> dict[str, Any]:
        return _state(request).launcher.launch(payload).to_dict()

    @app.post("/runs/poll", response_model=PollResponse)
    def poll_run(payload: dict[str, Any], request: Request) -> PollResponse:
        outcome = _state(request).monitor.evaluate(payload)
        return PollResponse(
            iterator=outcome.payload.to_dict(),
            run_status=outcome.run_status,
            summary_updated=outcome.summary_updated,
            **outcome.counts.as_summary_fields(),
        )

    # Registered before the summary route so ``/runs/<id>/tasks`` is not read as a summary.
    @app.get("/runs/{run_id}/tasks", response_model=list[TaskDetail])
    def list_run_tasks(run_id: int, request: Request) -> list[TaskDetail]:
        return _state(request).store.query_details_by_run(run_id)

    @app.post("/runs/{run_id}/tasks/{task_id:path}/status", response_model=TaskDetail)
    def report_task_status(
        run_id: int,
        task_id: str,
        payload: TaskStatusUpdate,
        request: Request,
    ) -> TaskDetail:
        state = _state(request)
        reporter: TaskStatusReporter = state.reporter
        if payload.status == STATUS_RUNNING:
            reporter.mark_running(run_id, task_id, payload.task_name)
        else:
            reporter.mark_finished(
                run_id,
                task_id,
                succeeded=payload.status == "Completed",
                started_at=payload.started_at,
            )
        for detail in state.store.query_details_by_run(run_id):
            if detail.task_id == task_id:
                return detail
        raise HTTPException(status_code=404, detail="Task not found")

    @app.get("/runs/{workflow_name}/{run_id}", response_model=RunSummary)
    def get_run(workflow_name: str, run_id: int, request: Request) -> RunSummary:
        summary = _state(request).store.get_summary(workflow_name, run_id)
        if summary is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return summary

    @app.post("/executions", response_model=ExecutionRecord, status_code=201)
    def start_execution(payload: StartExecutionRequest, request: Request) -> ExecutionRecord:
        orchestrator: Orchestrator = _state(request).orchestrator
        return orchestrator.start(
            payload.request,
            execution_id=payload.execution_id,
            durable=payload.durable,
        )

    @app.post("/executions/resume-due", response_model=list[ExecutionRecord])
    def resume_due_executions(request: Request) -> list[ExecutionRecord]:
        orchestrator: Orchestrator = _state(request).orchestrator
        return orchestrator.resume_due()

    @app.get("/executions/{execution_id}", response_model=ExecutionRecord)
    def get_execution(execution_id: str, request: Request) -> ExecutionRecord:
        record = _state(request).store.get_execution(execution_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        return record

    @app.post("/executions/{execution_id}/resume", response_model=ExecutionRecord)
    def resume_execution(
        execution_id: str,
        request: Request,
        force: bool = False,
    ) -> ExecutionRecord:
        orchestrator: Orchestrator = _state(request).orchestrator
        try:
            return orchestrator.resume(execution_id, force=force)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Execution not found") from exc
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    return app


app = create_app()
