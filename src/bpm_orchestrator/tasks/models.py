"""Task and queue records owned by the task orchestrator."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from bpm_orchestrator.errors import IllegalTransitionError
from bpm_orchestrator.store import StoredRecord, utc_now


class TaskType(str, Enum):
    BATCH = "batch"
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    DISTRIBUTED = "distributed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Dispatch rank; lower runs first."""

        return _PRIORITY_RANK[self]


_PRIORITY_RANK: dict[TaskPriority, int] = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


TERMINAL_TASK_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

ALLOWED_TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.QUEUED: {
        TaskStatus.RUNNING,
        TaskStatus.PAUSED,
        TaskStatus.CANCELLED,
        TaskStatus.FAILED,
    },
    TaskStatus.PAUSED: {TaskStatus.QUEUED, TaskStatus.CANCELLED},
    TaskStatus.RUNNING: {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.QUEUED,
        TaskStatus.CANCELLED,
    },
    # Manual retry / dead-letter replay.
    TaskStatus.FAILED: {TaskStatus.QUEUED},
    TaskStatus.CANCELLED: {TaskStatus.QUEUED},
    TaskStatus.COMPLETED: set(),
}


def ensure_task_transition(current: TaskStatus, to: TaskStatus) -> None:
    if to not in ALLOWED_TASK_TRANSITIONS.get(current, set()):
        raise IllegalTransitionError(f"Illegal task transition: {current.value} -> {to.value}")


class OriginKind(str, Enum):
    DIRECT = "direct"
    WORKFLOW_STEP = "workflow_step"
    EVENT_HANDLER = "event_handler"
    SCHEDULED_JOB = "scheduled_job"


class TaskOrigin(BaseModel):
    """Which trigger produced a task; used to route its outcome back."""

    kind: OriginKind = OriginKind.DIRECT
    reference_id: str | None = None
    node_id: str | None = None
    handler_id: str | None = None


class TaskErrorEntry(BaseModel):
    attempt: int
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    worker_id: str | None = None


class TaskRequest(BaseModel):
    """Input of :meth:`TaskOrchestrator.create_task`.

    ``None`` for retry/backoff settings means "use the configured default".
    ``task_id`` lets a producer reserve the id before the task exists, which
    makes re-submission after a crash idempotent.
    """

    task_name: str
    task_id: str | None = None
    task_type: TaskType = TaskType.SEQUENTIAL
    priority: TaskPriority = TaskPriority.MEDIUM
    queue_name: str = "default"
    action: str = "noop"
    dependencies: list[str] = Field(default_factory=list)
    max_retries: int | None = Field(default=None, ge=0)
    backoff_seconds: float | None = Field(default=None, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    input_data: dict[str, Any] = Field(default_factory=dict)
    origin: TaskOrigin = Field(default_factory=TaskOrigin)
    available_at: datetime | None = None


class OrchestratedTask(StoredRecord):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    task_name: str
    task_type: TaskType = TaskType.SEQUENTIAL
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.QUEUED
    queue_name: str = "default"
    action: str = "noop"

    dependencies: list[str] = Field(default_factory=list)
    assigned_workers: list[str] = Field(default_factory=list)
    # Identifies the current running attempt; reports from older attempts are discarded.
    claim_id: str | None = None

    retry_count: int = 0
    max_retries: int = 3
    backoff_seconds: float = 5.0
    available_at: datetime | None = None
    timeout_seconds: float | None = None

    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: dict[str, Any] | None = None
    error_log: list[TaskErrorEntry] = Field(default_factory=list)

    origin: TaskOrigin = Field(default_factory=TaskOrigin)
    sequence: int = 0
    idempotency_key: str | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def last_error(self) -> str | None:
        if not self.error_log:
            return None
        return self.error_log[-1].message

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class QueueHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    OVERLOADED = "overloaded"


def compute_queue_health(pending: int, capacity: int, degraded_ratio: float) -> QueueHealth:
    if capacity <= 0 or pending >= capacity:
        return QueueHealth.OVERLOADED
    if pending / capacity > degraded_ratio:
        return QueueHealth.DEGRADED
    return QueueHealth.HEALTHY


class TaskQueue(StoredRecord):
    queue_name: str
    capacity: int = 100
    max_workers: int = 4
    active_count: int = 0
    pending_count: int = 0
    available_workers: int = 4
    health: QueueHealth = QueueHealth.HEALTHY
    updated_at: datetime = Field(default_factory=utc_now)
