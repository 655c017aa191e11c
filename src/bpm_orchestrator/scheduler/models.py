from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from bpm_orchestrator.handlers import ActionKind
from bpm_orchestrator.store import StoredRecord, utc_now


class JobType(str, Enum):
    CRON = "cron"
    INTERVAL = "interval"
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class JobRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class JobTrigger(str, Enum):
    SCHEDULE = "schedule"
    MANUAL = "manual"


class ScheduledJob(StoredRecord):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    description: str = ""
    job_type: JobType
    schedule_expression: str
    timezone: str = "UTC"

    action_type: ActionKind = ActionKind.FUNCTION
    action_config: dict[str, Any] = Field(default_factory=dict)
    queue_name: str = "default"

    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_run_status: JobRunStatus | None = None
    run_count: int = 0
    failure_count: int = 0

    max_retries: int = Field(default=0, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    failure_threshold: int | None = Field(default=None, ge=1)
    max_runs: int | None = Field(default=None, ge=1)
    end_at: datetime | None = None

    is_active: bool = True
    needs_attention: bool = False
    attention_reason: str | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class JobExecution(StoredRecord):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    job_id: str
    status: JobRunStatus = JobRunStatus.RUNNING
    task_id: str | None = None
    trigger: JobTrigger = JobTrigger.SCHEDULE
    scheduled_for: datetime | None = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    duration_ms: int | None = None
    retry_attempt: int = 0
    error_message: str | None = None
    output: dict[str, Any] | None = None
    idempotency_key: str | None = None
