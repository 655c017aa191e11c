"""Pydantic request/response models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from bpm_orchestrator.tasks.models import TaskPriority, TaskRequest
from bpm_orchestrator.workflow.models import ExecutionTrigger


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str


class StartExecutionRequest(BaseModel):
    definition_id: str
    input_data: dict[str, Any] = Field(default_factory=dict)
    trigger: ExecutionTrigger = ExecutionTrigger.MANUAL
    idempotency_key: str | None = None


class CompleteStepRequest(BaseModel):
    output: dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: str | None = None


class CreateTaskRequest(TaskRequest):
    idempotency_key: str | None = None


class PrioritizeRequest(BaseModel):
    priority: TaskPriority


class QueueConfigRequest(BaseModel):
    capacity: int | None = Field(default=None, ge=1)
    max_workers: int | None = Field(default=None, ge=1)


class PublishEventRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    source: str | None = None
    idempotency_key: str | None = None


class ToggleJobRequest(BaseModel):
    active: bool


class RunJobRequest(BaseModel):
    idempotency_key: str | None = None


class PurgeRequest(BaseModel):
    older_than_days: int | None = Field(default=None, ge=0)
