"""Aggregate health view over executions, tasks, queues, jobs and events."""

from __future__ import annotations

from collections import Counter
from datetime import datetime

from pydantic import BaseModel, Field

from bpm_orchestrator.events.models import EventStatus
from bpm_orchestrator.state import StateStore
from bpm_orchestrator.store import utc_now
from bpm_orchestrator.tasks.models import TaskQueue, TaskStatus
from bpm_orchestrator.workflow.models import ExecutionStatus


class JobAttention(BaseModel):
    job_id: str
    name: str
    reason: str | None = None
    failure_count: int = 0


class MonitoringOverview(BaseModel):
    generated_at: datetime = Field(default_factory=utc_now)
    executions_by_status: dict[str, int] = Field(default_factory=dict)
    execution_success_rate: float | None = None
    tasks_by_status: dict[str, int] = Field(default_factory=dict)
    task_success_rate: float | None = None
    average_task_duration_ms: float | None = None
    queues: list[TaskQueue] = Field(default_factory=list)
    active_jobs: int = 0
    jobs_needing_attention: list[JobAttention] = Field(default_factory=list)
    events_by_status: dict[str, int] = Field(default_factory=dict)
    dead_letter_events: int = 0


def _rate(succeeded: int, total: int) -> float | None:
    if total == 0:
        return None
    return round(100.0 * succeeded / total, 1)


def build_overview(store: StateStore) -> MonitoringOverview:
    executions = store.executions.list()
    execution_counts = Counter(e.status.value for e in executions)
    finished = sum(
        execution_counts[s.value]
        for s in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)
    )

    tasks = store.tasks.list()
    task_counts = Counter(t.status.value for t in tasks)
    durations = [
        t.duration_ms
        for t in tasks
        if t.status is TaskStatus.COMPLETED and t.duration_ms is not None
    ]
    task_finished = sum(
        task_counts[s.value]
        for s in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)
    )

    jobs = store.jobs.list()
    events = store.events.list()
    event_counts = Counter(e.status.value for e in events)

    return MonitoringOverview(
        executions_by_status=dict(execution_counts),
        execution_success_rate=_rate(execution_counts[ExecutionStatus.COMPLETED.value], finished),
        tasks_by_status=dict(task_counts),
        task_success_rate=_rate(task_counts[TaskStatus.COMPLETED.value], task_finished),
        average_task_duration_ms=(
            round(sum(durations) / len(durations), 1) if durations else None
        ),
        queues=sorted(store.queues.list(), key=lambda q: q.queue_name),
        active_jobs=sum(1 for j in jobs if j.is_active),
        jobs_needing_attention=[
            JobAttention(
                job_id=j.id,
                name=j.name,
                reason=j.attention_reason,
                failure_count=j.failure_count,
            )
            for j in jobs
            if j.needs_attention
        ],
        events_by_status=dict(event_counts),
        dead_letter_events=event_counts[EventStatus.DEAD_LETTER.value],
    )
