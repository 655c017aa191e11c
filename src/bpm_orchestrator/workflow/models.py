from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from bpm_orchestrator.store import StoredRecord, utc_now


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES: frozenset[ExecutionStatus] = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class ExecutionTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    EVENT = "event"


class ExecutionLogEntry(BaseModel):
    node_id: str
    status: str
    timestamp: datetime = Field(default_factory=utc_now)
    output: dict[str, Any] | None = None
    message: str | None = None
    duration_ms: int | None = None


class ActiveStep(BaseModel):
    """A cursor parked on a task node."""

    task_id: str
    node_id: str
    entered_at: datetime = Field(default_factory=utc_now)
    via_edge_id: str | None = None
    awaiting_completion: bool = False
    pending_output: dict[str, Any] | None = None

    sla_warned: bool = False
    sla_breached: bool = False
    escalated: bool = False


class ExecutionProgress(BaseModel):
    completed_steps: int
    total_steps: int
    percentage: float


class WorkflowExecution(StoredRecord):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    definition_id: str
    definition_version: int
    status: ExecutionStatus = ExecutionStatus.PENDING

    current_node_ids: list[str] = Field(default_factory=list)
    steps_completed: int = 0
    total_steps: int = 0
    variables: dict[str, Any] = Field(default_factory=dict)
    execution_log: list[ExecutionLogEntry] = Field(default_factory=list)
    active_steps: list[ActiveStep] = Field(default_factory=list)
    join_arrivals: dict[str, list[str]] = Field(default_factory=dict)

    error_message: str | None = None
    trigger: ExecutionTrigger = ExecutionTrigger.MANUAL
    idempotency_key: str | None = None

    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def step_for_task(self, task_id: str) -> ActiveStep | None:
        for step in self.active_steps:
            if step.task_id == task_id:
                return step
        return None

    def step_for_node(self, node_id: str) -> ActiveStep | None:
        for step in self.active_steps:
            if step.node_id == node_id:
                return step
        return None

    def progress(self) -> ExecutionProgress:
        total = max(self.total_steps, self.steps_completed)
        if self.status is ExecutionStatus.COMPLETED:
            pct = 100.0
        elif total:
            pct = round(100.0 * self.steps_completed / total, 1)
        else:
            pct = 0.0
        return ExecutionProgress(
            completed_steps=self.steps_completed, total_steps=total, percentage=pct
        )

    def log(self, node_id: str, status: str, at: datetime, **fields: Any) -> None:
        self.execution_log.append(
            ExecutionLogEntry(node_id=node_id, status=status, timestamp=at, **fields)
        )
