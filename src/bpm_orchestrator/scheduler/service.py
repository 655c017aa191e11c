from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.errors import ConflictError, NotFoundError, ValidationError
from bpm_orchestrator.handlers import resolve_action
from bpm_orchestrator.notifications import LoggingNotifier, Notification, Notifier
from bpm_orchestrator.scheduler.models import (
    JobExecution,
    JobRunStatus,
    JobTrigger,
    ScheduledJob,
)
from bpm_orchestrator.scheduler.schedule import first_run, next_run_after_firing, validate_job
from bpm_orchestrator.store import utc_now
from bpm_orchestrator.tasks.models import (
    OrchestratedTask,
    OriginKind,
    TaskOrigin,
    TaskRequest,
    TaskStatus,
)
from bpm_orchestrator.tasks.orchestrator import TaskOrchestrator

if TYPE_CHECKING:
    from bpm_orchestrator.state import StateStore

logger = logging.getLogger(__name__)

_SCHEDULE_FIELDS = {"job_type", "schedule_expression", "timezone", "max_runs", "end_at"}
_READ_ONLY_FIELDS = {
    "id",
    "revision",
    "created_at",
    "run_count",
    "failure_count",
    "last_run_at",
    "last_run_status",
    "next_run_at",
    "needs_attention",
    "attention_reason",
    "is_active",
}


class Scheduler:
    """Fires scheduled jobs as orchestrated tasks.

    Each firing is claimed with a conditional update on the job, so concurrent
    scheduler instances never fire the same instant twice. A job whose
    consecutive failures reach the threshold is paused and flagged for an
    operator.
    """

    def __init__(
        self,
        store: StateStore,
        orchestrator: TaskOrchestrator,
        settings: OrchestratorSettings,
        *,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._jobs = store.jobs
        self._executions = store.job_executions
        self._tasks = store.tasks
        self._orchestrator = orchestrator
        self._settings = settings
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock

    # -- job management ----------------------------------------------------------

    def create_job(self, job: ScheduledJob) -> ScheduledJob:
        validate_job(job)
        resolve_action(job.action_type, job.action_config)
        now = self._clock()
        record = job.model_copy(
            update={
                "next_run_at": first_run(job, now) if job.is_active else None,
                "created_at": now,
                "updated_at": now,
                "run_count": 0,
                "failure_count": 0,
                "needs_attention": False,
            }
        )
        saved = self._jobs.insert(record)
        logger.info(
            "Job scheduled",
            extra={"job_id": saved.id, "job_name": saved.name, "next_run_at": saved.next_run_at},
        )
        return saved

    def update_job(self, job_id: str, changes: dict[str, Any]) -> ScheduledJob:
        unknown = set(changes) - set(ScheduledJob.model_fields)
        if unknown:
            raise ValidationError(f"unknown job fields: {', '.join(sorted(unknown))}")
        editable = {k: v for k, v in changes.items() if k not in _READ_ONLY_FIELDS}
        now = self._clock()

        def change(job: ScheduledJob) -> bool:
            candidate = ScheduledJob.model_validate({**job.model_dump(), **editable})
            validate_job(candidate)
            resolve_action(candidate.action_type, candidate.action_config)
            for key in editable:
                setattr(job, key, getattr(candidate, key))
            if _SCHEDULE_FIELDS & set(editable) and job.is_active:
                job.next_run_at = first_run(job, now)
            job.updated_at = now
            return True

        job, _ = self._jobs.mutate(job_id, change)
        return job

    def delete_job(self, job_id: str) -> bool:
        deleted = self._jobs.delete(job_id)
        if deleted:
            logger.info("Job deleted", extra={"job_id": job_id})
        return deleted

    def toggle_job(self, job_id: str, active: bool) -> ScheduledJob:
        """Activate or deactivate a job. Activation clears the attention flag."""

        now = self._clock()

        def change(job: ScheduledJob) -> bool:
            if active:
                job.is_active = True
                job.needs_attention = False
                job.attention_reason = None
                job.failure_count = 0
                job.next_run_at = first_run(job, now)
            else:
                job.is_active = False
                job.next_run_at = None
            job.updated_at = now
            return True

        job, _ = self._jobs.mutate(job_id, change)
        logger.info("Job toggled", extra={"job_id": job_id, "active": active})
        return job

    def get_job(self, job_id: str) -> ScheduledJob:
        return self._jobs.require(job_id)

    def list_jobs(
        self, *, active_only: bool = False, needs_attention: bool | None = None
    ) -> list[ScheduledJob]:
        def matches(job: ScheduledJob) -> bool:
            if active_only and not job.is_active:
                return False
            return needs_attention is None or job.needs_attention is needs_attention

        return sorted(self._jobs.list(matches), key=lambda j: (j.name, j.id))

    def get_job_history(self, job_id: str, limit: int | None = None) -> list[JobExecution]:
        found = sorted(
            self._executions.list(lambda e: e.job_id == job_id),
            key=lambda e: e.started_at,
            reverse=True,
        )
        return found[:limit] if limit is not None else found

    # -- firing ----------------------------------------------------------------------

    def run_job_now(self, job_id: str, idempotency_key: str | None = None) -> JobExecution:
        """Fire a job immediately, outside its schedule. ``next_run_at`` is untouched."""

        job = self._jobs.require(job_id)
        execution, created = self._executions.insert_if_absent(
            JobExecution(
                job_id=job.id,
                trigger=JobTrigger.MANUAL,
                started_at=self._clock(),
                idempotency_key=idempotency_key,
            ),
            lambda e: idempotency_key is not None and e.idempotency_key == idempotency_key,
        )
        if not created:
            return execution
        logger.info("Job run requested", extra={"job_id": job.id, "execution_id": execution.id})
        return self._dispatch(job, execution)

    def tick(self, now: datetime | None = None) -> list[JobExecution]:
        """Fire every active job whose ``next_run_at`` has passed."""

        now = now or self._clock()
        fired: list[JobExecution] = []
        due = [
            j
            for j in self._jobs.list(lambda j: j.is_active and j.next_run_at is not None)
            if j.next_run_at <= now
        ]
        for job in sorted(due, key=lambda j: j.next_run_at):
            execution = self._fire(job, now)
            if execution is not None:
                fired.append(execution)

        for orphan in self._executions.list(
            lambda e: e.status is JobRunStatus.RUNNING and e.task_id is None
        ):
            job = self._jobs.get(orphan.job_id)
            if job is not None and orphan.trigger is JobTrigger.SCHEDULE:
                self._dispatch(job, orphan)
        return fired

    def _fire(self, job: ScheduledJob, now: datetime) -> JobExecution | None:
        scheduled_for = job.next_run_at
        key = f"schedule:{job.id}:{scheduled_for.isoformat() if scheduled_for else ''}"
        execution, _ = self._executions.insert_if_absent(
            JobExecution(
                job_id=job.id,
                trigger=JobTrigger.SCHEDULE,
                scheduled_for=scheduled_for,
                started_at=now,
                idempotency_key=key,
            ),
            lambda e: e.idempotency_key == key,
        )

        claimed = job.model_copy(deep=True)
        claimed.run_count += 1
        claimed.last_run_at = now
        claimed.updated_at = now
        claimed.next_run_at = next_run_after_firing(claimed, now)
        if claimed.next_run_at is None:
            claimed.is_active = False
        try:
            self._jobs.replace(claimed, expected_revision=job.revision)
        except ConflictError:
            logger.info("Job firing claimed elsewhere", extra={"job_id": job.id})
            return None

        logger.info(
            "Job fired",
            extra={
                "job_id": job.id,
                "execution_id": execution.id,
                "next_run_at": claimed.next_run_at,
            },
        )
        return self._dispatch(claimed, execution)

    def _dispatch(self, job: ScheduledJob, execution: JobExecution) -> JobExecution:
        if execution.task_id is not None:
            return execution
        task = self._orchestrator.create_task(
            TaskRequest(
                task_name=f"job:{job.name}",
                queue_name=job.queue_name,
                action=resolve_action(job.action_type, job.action_config),
                max_retries=job.max_retries,
                input_data={
                    "config": dict(job.action_config),
                    "payload": dict(job.action_config.get("payload") or {}),
                    "job_id": job.id,
                    "job_execution_id": execution.id,
                },
                origin=TaskOrigin(kind=OriginKind.SCHEDULED_JOB, reference_id=execution.id),
            ),
            idempotency_key=f"job-execution:{execution.id}",
        )
        return self._executions.update(execution.id, task_id=task.id)

    # -- outcomes --------------------------------------------------------------------

    def on_task_finished(self, task: OrchestratedTask) -> JobExecution | None:
        if task.origin.kind is not OriginKind.SCHEDULED_JOB or not task.origin.reference_id:
            return None
        if not task.is_terminal:
            return None
        outcome = {
            TaskStatus.COMPLETED: JobRunStatus.COMPLETED,
            TaskStatus.FAILED: JobRunStatus.FAILED,
            TaskStatus.CANCELLED: JobRunStatus.CANCELLED,
        }[task.status]
        now = self._clock()

        def change(e: JobExecution) -> bool:
            if e.status is not JobRunStatus.RUNNING:
                return False
            e.status = outcome
            e.finished_at = now
            e.duration_ms = int((now - e.started_at) / timedelta(milliseconds=1))
            e.retry_attempt = task.retry_count
            e.output = task.output_data
            if outcome is JobRunStatus.FAILED:
                e.error_message = task.last_error or "task failed"
            return True

        try:
            execution, changed = self._executions.mutate(task.origin.reference_id, change)
        except NotFoundError:
            logger.warning("Task for unknown job execution", extra={"task_id": task.id})
            return None
        if changed:
            self._record_outcome(execution.job_id, outcome, execution.error_message)
        return execution

    def reconcile(self) -> int:
        """Apply outcomes of job tasks that finished while nobody was listening."""

        repaired = 0
        for execution in self._executions.list(
            lambda e: e.status is JobRunStatus.RUNNING and e.task_id is not None
        ):
            task = self._tasks.get(execution.task_id)
            if task is None or not task.is_terminal:
                continue
            updated = self.on_task_finished(task)
            if updated is not None and updated.status is not JobRunStatus.RUNNING:
                repaired += 1
        if repaired:
            logger.info("Reconciled job executions", extra={"repairs": repaired})
        return repaired

    def check_timeouts(self, now: datetime | None = None) -> list[JobExecution]:
        now = now or self._clock()
        timed_out: list[JobExecution] = []
        for execution in self._executions.list(lambda e: e.status is JobRunStatus.RUNNING):
            job = self._jobs.get(execution.job_id)
            if job is None or job.timeout_seconds is None:
                continue
            if execution.started_at + timedelta(seconds=job.timeout_seconds) > now:
                continue
            message = f"job exceeded its timeout of {job.timeout_seconds:g}s"

            def change(e: JobExecution, message: str = message) -> bool:
                if e.status is not JobRunStatus.RUNNING:
                    return False
                e.status = JobRunStatus.TIMEOUT
                e.finished_at = now
                e.duration_ms = int((now - e.started_at) / timedelta(milliseconds=1))
                e.error_message = message
                return True

            updated, changed = self._executions.mutate(execution.id, change)
            if not changed:
                continue
            logger.warning(
                "Job execution timed out", extra={"job_id": job.id, "execution_id": updated.id}
            )
            if updated.task_id is not None:
                task = self._orchestrator.get_task(updated.task_id)
                if not task.is_terminal:
                    self._orchestrator.cancel_task(updated.task_id, reason=message)
            self._record_outcome(job.id, JobRunStatus.TIMEOUT, message)
            timed_out.append(updated)
        return timed_out

    def _record_outcome(self, job_id: str, status: JobRunStatus, error: str | None) -> None:
        threshold_default = self._settings.scheduler_failure_threshold
        now = self._clock()
        paused = False

        def change(job: ScheduledJob) -> bool:
            nonlocal paused
            paused = False
            job.last_run_status = status
            job.updated_at = now
            if status is JobRunStatus.COMPLETED:
                job.failure_count = 0
            elif status in (JobRunStatus.FAILED, JobRunStatus.TIMEOUT):
                job.failure_count += 1
                threshold = job.failure_threshold or threshold_default
                if job.is_active and job.failure_count >= threshold:
                    job.is_active = False
                    job.next_run_at = None
                    job.needs_attention = True
                    job.attention_reason = (
                        f"paused after {job.failure_count} consecutive failures: {error}"
                    )
                    paused = True
            return True

        try:
            job, _ = self._jobs.mutate(job_id, change)
        except NotFoundError:
            return
        if paused:
            logger.warning(
                "Job paused after repeated failures",
                extra={"job_id": job.id, "failures": job.failure_count, "error": error},
            )
            self._notifier.notify(
                Notification(
                    channel="log",
                    recipients=["operators"],
                    subject=f"Scheduled job {job.name!r} was paused",
                    body=job.attention_reason or "",
                    context={"job_id": job.id, "failure_count": job.failure_count},
                )
            )
