"""FastAPI app factory.

Endpoints are thin wrappers over the :class:`AutomationEngine` services.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bpm_orchestrator import __version__
from bpm_orchestrator.definitions.models import ProcessDefinition
from bpm_orchestrator.definitions.registry import parse_definition
from bpm_orchestrator.definitions.validator import validate
from bpm_orchestrator.errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from bpm_orchestrator.events.models import (
    EventDefinition,
    EventHandler,
    EventStatus,
    ProcessedEvent,
)
from bpm_orchestrator.monitoring import MonitoringOverview
from bpm_orchestrator.runtime import AutomationEngine
from bpm_orchestrator.scheduler.models import JobExecution, ScheduledJob
from bpm_orchestrator.server.models import (
    CancelRequest,
    CompleteStepRequest,
    CreateTaskRequest,
    HealthResponse,
    PrioritizeRequest,
    PublishEventRequest,
    PurgeRequest,
    QueueConfigRequest,
    RunJobRequest,
    StartExecutionRequest,
    ToggleJobRequest,
)
from bpm_orchestrator.store import utc_now
from bpm_orchestrator.tasks.models import OrchestratedTask, TaskQueue, TaskRequest, TaskStatus
from bpm_orchestrator.workflow.models import ExecutionStatus, WorkflowExecution

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (NotFoundError, 404),
    (ValidationError, 422),
    (IllegalTransitionError, 409),
    (ConflictError, 409),
    (StoreUnavailableError, 503),
]


def _error_response(request: Request, exc: Exception) -> JSONResponse:
    status = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 500)
    body: dict[str, Any] = {"detail": str(exc)}
    if isinstance(exc, ValidationError):
        body["issues"] = [issue.to_json() for issue in exc.issues]
    if status >= 500:
        logger.warning("Request failed", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(status_code=status, content=body)


def create_app(engine: AutomationEngine | None = None) -> FastAPI:
    engine = engine or AutomationEngine()
    settings = engine.settings

    app = FastAPI(
        title="BPM Orchestrator",
        version=__version__,
        description="REST API over the process automation and orchestration services.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.state.settings = settings
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    for kind, _ in _STATUS_BY_ERROR:
        app.add_exception_handler(kind, _error_response)

    @app.get("/api/v1/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(version=__version__)

    # -- definitions ---------------------------------------------------------------

    @app.get("/api/v1/definitions", response_model=list[ProcessDefinition])
    def list_definitions(active_only: bool = False) -> list[ProcessDefinition]:
        return engine.definitions.list(active_only=active_only)

    @app.post("/api/v1/definitions", response_model=ProcessDefinition, status_code=201)
    def create_definition(body: dict[str, Any]) -> ProcessDefinition:
        return engine.definitions.create(parse_definition(body))

    @app.post("/api/v1/definitions/validate")
    def validate_definition(body: dict[str, Any]) -> dict[str, object]:
        return validate(parse_definition(body)).to_json()

    @app.get("/api/v1/definitions/{definition_id}", response_model=ProcessDefinition)
    def get_definition(definition_id: str, version: int | None = None) -> ProcessDefinition:
        return engine.definitions.get(definition_id, version)

    @app.patch("/api/v1/definitions/{definition_id}", response_model=ProcessDefinition)
    def update_definition(definition_id: str, body: dict[str, Any]) -> ProcessDefinition:
        return engine.definitions.update(definition_id, body)

    @app.post("/api/v1/definitions/{definition_id}/activate", response_model=ProcessDefinition)
    def activate_definition(definition_id: str, version: int | None = None) -> ProcessDefinition:
        return engine.definitions.activate(definition_id, version)

    @app.post("/api/v1/definitions/{definition_id}/deactivate", response_model=ProcessDefinition)
    def deactivate_definition(definition_id: str) -> ProcessDefinition:
        return engine.definitions.deactivate(definition_id)

    # -- executions ----------------------------------------------------------------

    @app.post("/api/v1/executions", response_model=WorkflowExecution, status_code=201)
    def start_execution(req: StartExecutionRequest) -> WorkflowExecution:
        return engine.workflows.execute_workflow(
            req.definition_id,
            req.input_data,
            trigger=req.trigger,
            idempotency_key=req.idempotency_key,
        )

    @app.get("/api/v1/executions", response_model=list[WorkflowExecution])
    def list_executions(
        definition_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int | None = None,
    ) -> list[WorkflowExecution]:
        return engine.workflows.get_execution_history(definition_id, status, limit)

    @app.get("/api/v1/executions/{execution_id}", response_model=WorkflowExecution)
    def get_execution(execution_id: str) -> WorkflowExecution:
        return engine.workflows.get_execution(execution_id)

    @app.get("/api/v1/executions/{execution_id}/progress")
    def get_execution_progress(execution_id: str) -> dict[str, object]:
        return engine.workflows.get_execution(execution_id).progress().model_dump()

    @app.post("/api/v1/executions/{execution_id}/cancel", response_model=WorkflowExecution)
    def cancel_execution(execution_id: str, req: CancelRequest | None = None) -> WorkflowExecution:
        return engine.workflows.cancel_execution(execution_id, req.reason if req else None)

    @app.post(
        "/api/v1/executions/{execution_id}/steps/{node_id}/complete",
        response_model=WorkflowExecution,
    )
    def complete_step(
        execution_id: str, node_id: str, req: CompleteStepRequest
    ) -> WorkflowExecution:
        return engine.workflows.complete_step(execution_id, node_id, req.output)

    @app.post("/api/v1/executions/purge")
    def purge_executions(req: PurgeRequest) -> dict[str, int]:
        cutoff = None
        if req.older_than_days is not None:
            cutoff = utc_now() - timedelta(days=req.older_than_days)
        return {"purged": engine.workflows.purge_executions(cutoff)}

    # -- tasks ---------------------------------------------------------------------

    @app.post("/api/v1/tasks", response_model=OrchestratedTask, status_code=201)
    def create_task(req: CreateTaskRequest) -> OrchestratedTask:
        request = TaskRequest.model_validate(req.model_dump(exclude={"idempotency_key"}))
        return engine.orchestrator.create_task(request, idempotency_key=req.idempotency_key)

    @app.get("/api/v1/tasks", response_model=list[OrchestratedTask])
    def list_tasks(
        status: TaskStatus | None = None,
        queue_name: str | None = None,
        limit: int | None = None,
    ) -> list[OrchestratedTask]:
        return engine.orchestrator.list_tasks(status=status, queue_name=queue_name, limit=limit)

    @app.get("/api/v1/tasks/{task_id}", response_model=OrchestratedTask)
    def get_task(task_id: str) -> OrchestratedTask:
        return engine.orchestrator.get_task(task_id)

    @app.post("/api/v1/tasks/{task_id}/cancel", response_model=OrchestratedTask)
    def cancel_task(task_id: str, req: CancelRequest | None = None) -> OrchestratedTask:
        return engine.orchestrator.cancel_task(task_id, req.reason if req else None)

    @app.post("/api/v1/tasks/{task_id}/retry", response_model=OrchestratedTask)
    def retry_task(task_id: str) -> OrchestratedTask:
        return engine.orchestrator.retry_task(task_id)

    @app.post("/api/v1/tasks/{task_id}/prioritize", response_model=OrchestratedTask)
    def prioritize_task(task_id: str, req: PrioritizeRequest) -> OrchestratedTask:
        return engine.orchestrator.prioritize_task(task_id, req.priority)

    @app.post("/api/v1/tasks/{task_id}/pause", response_model=OrchestratedTask)
    def pause_task(task_id: str) -> OrchestratedTask:
        return engine.orchestrator.pause_task(task_id)

    @app.post("/api/v1/tasks/{task_id}/resume", response_model=OrchestratedTask)
    def resume_task(task_id: str) -> OrchestratedTask:
        return engine.orchestrator.resume_task(task_id)

    @app.get("/api/v1/queues", response_model=list[TaskQueue])
    def list_queues() -> list[TaskQueue]:
        return engine.orchestrator.list_queues()

    @app.put("/api/v1/queues/{queue_name}", response_model=TaskQueue)
    def configure_queue(queue_name: str, req: QueueConfigRequest) -> TaskQueue:
        return engine.orchestrator.configure_queue(
            queue_name, capacity=req.capacity, max_workers=req.max_workers
        )

    # -- events ----------------------------------------------------------------------

    @app.get("/api/v1/events/definitions", response_model=list[EventDefinition])
    def list_event_definitions() -> list[EventDefinition]:
        return engine.events.list_event_definitions()

    @app.post("/api/v1/events/definitions", response_model=EventDefinition, status_code=201)
    def register_event(definition: EventDefinition) -> EventDefinition:
        return engine.events.register_event(definition)

    @app.post("/api/v1/events/definitions/{event_name}/handlers", response_model=EventDefinition)
    def register_handler(event_name: str, handler: EventHandler) -> EventDefinition:
        return engine.events.register_handler(event_name, handler)

    @app.delete(
        "/api/v1/events/definitions/{event_name}/handlers/{handler_id}",
        response_model=EventDefinition,
    )
    def unregister_handler(event_name: str, handler_id: str) -> EventDefinition:
        return engine.events.unregister_handler(event_name, handler_id)

    @app.post("/api/v1/events/{event_name}/publish", response_model=ProcessedEvent, status_code=202)
    def publish_event(event_name: str, req: PublishEventRequest) -> ProcessedEvent:
        return engine.events.publish_event(
            event_name, req.payload, source=req.source, idempotency_key=req.idempotency_key
        )

    @app.get("/api/v1/events", response_model=list[ProcessedEvent])
    def list_events(
        event_name: str | None = None,
        status: EventStatus | None = None,
        limit: int | None = None,
    ) -> list[ProcessedEvent]:
        return engine.events.get_processed_events(event_name, status, limit=limit)

    @app.get("/api/v1/events/{event_id}", response_model=ProcessedEvent)
    def get_event(event_id: str) -> ProcessedEvent:
        return engine.events.get_event(event_id)

    @app.post("/api/v1/events/{event_id}/reprocess", response_model=ProcessedEvent)
    def reprocess_event(event_id: str) -> ProcessedEvent:
        return engine.events.reprocess_dead_letter(event_id)

    # -- jobs ------------------------------------------------------------------------

    @app.get("/api/v1/jobs", response_model=list[ScheduledJob])
    def list_jobs(active_only: bool = False) -> list[ScheduledJob]:
        return engine.scheduler.list_jobs(active_only=active_only)

    @app.post("/api/v1/jobs", response_model=ScheduledJob, status_code=201)
    def create_job(job: ScheduledJob) -> ScheduledJob:
        return engine.scheduler.create_job(job)

    @app.get("/api/v1/jobs/{job_id}", response_model=ScheduledJob)
    def get_job(job_id: str) -> ScheduledJob:
        return engine.scheduler.get_job(job_id)

    @app.patch("/api/v1/jobs/{job_id}", response_model=ScheduledJob)
    def update_job(job_id: str, body: dict[str, Any]) -> ScheduledJob:
        return engine.scheduler.update_job(job_id, body)

    @app.delete("/api/v1/jobs/{job_id}", status_code=204)
    def delete_job(job_id: str) -> None:
        if not engine.scheduler.delete_job(job_id):
            raise NotFoundError(f"job {job_id!r} not found")

    @app.post("/api/v1/jobs/{job_id}/toggle", response_model=ScheduledJob)
    def toggle_job(job_id: str, req: ToggleJobRequest) -> ScheduledJob:
        return engine.scheduler.toggle_job(job_id, req.active)

    @app.post("/api/v1/jobs/{job_id}/run", response_model=JobExecution, status_code=202)
    def run_job(job_id: str, req: RunJobRequest | None = None) -> JobExecution:
        return engine.scheduler.run_job_now(job_id, req.idempotency_key if req else None)

    @app.get("/api/v1/jobs/{job_id}/history", response_model=list[JobExecution])
    def job_history(job_id: str, limit: int | None = None) -> list[JobExecution]:
        engine.scheduler.get_job(job_id)
        return engine.scheduler.get_job_history(job_id, limit)

    # -- monitoring ------------------------------------------------------------------

    @app.get("/api/v1/monitoring/overview", response_model=MonitoringOverview)
    def overview() -> MonitoringOverview:
        return engine.overview()

    return app
