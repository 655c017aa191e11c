"""The task orchestrator: the shared execution substrate.

Every unit of work (workflow steps, event handlers, scheduled jobs, direct
submissions) becomes an :class:`OrchestratedTask`. The orchestrator owns the
task lifecycle; producers learn about outcomes through :attr:`changes`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from bpm_orchestrator.changes import ChangeFeed
from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.errors import (
    ConflictError,
    IllegalTransitionError,
    TaskTimeoutError,
    ValidationError,
    describe_error,
)
from bpm_orchestrator.store import utc_now
from bpm_orchestrator.tasks.models import (
    OrchestratedTask,
    OriginKind,
    QueueHealth,
    TaskErrorEntry,
    TaskPriority,
    TaskQueue,
    TaskRequest,
    TaskStatus,
    compute_queue_health,
    ensure_task_transition,
)

if TYPE_CHECKING:
    from bpm_orchestrator.state import StateStore

logger = logging.getLogger(__name__)


class TaskOrchestrator:
    def __init__(
        self,
        store: StateStore,
        settings: OrchestratorSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._tasks = store.tasks
        self._queues = store.queues
        self._sequences = store.sequences
        self._settings = settings
        self._clock = clock
        self.changes: ChangeFeed[OrchestratedTask] = ChangeFeed("tasks")

    # -- submission ----------------------------------------------------------

    def create_task(
        self, request: TaskRequest, idempotency_key: str | None = None
    ) -> OrchestratedTask:
        """Enqueue a task. The same idempotency key (or task id) returns the existing task."""

        if request.task_id is not None:
            existing = self._tasks.get(request.task_id)
            if existing is not None:
                return existing
        if idempotency_key:
            existing = self._tasks.find_one(lambda t: t.idempotency_key == idempotency_key)
            if existing is not None:
                return existing

        for dependency in request.dependencies:
            if self._tasks.get(dependency) is None:
                raise ValidationError(f"unknown dependency task {dependency!r}")

        fields = request.model_dump(exclude={"task_id", "max_retries", "backoff_seconds"})
        task = OrchestratedTask(
            **fields,
            max_retries=(
                request.max_retries
                if request.max_retries is not None
                else self._settings.default_max_retries
            ),
            backoff_seconds=(
                request.backoff_seconds
                if request.backoff_seconds is not None
                else self._settings.retry_backoff_seconds
            ),
            sequence=self._sequences.next("task"),
            idempotency_key=idempotency_key,
            created_at=self._clock(),
            updated_at=self._clock(),
        )
        if request.task_id is not None:
            task.id = request.task_id

        task, created = self._tasks.insert_if_absent(
            task,
            lambda t: idempotency_key is not None and t.idempotency_key == idempotency_key,
        )
        if not created:
            return task

        logger.info(
            "Task queued",
            extra={
                "task_id": task.id,
                "task_name": task.task_name,
                "queue_name": task.queue_name,
                "priority": task.priority.value,
            },
        )
        queue = self._refresh_queue(task.queue_name)
        if queue.health is QueueHealth.OVERLOADED:
            logger.warning(
                "Queue is overloaded; task accepted anyway",
                extra={"queue_name": queue.queue_name, "pending": queue.pending_count},
            )

        self._fail_if_dependency_lost(task)
        return self._tasks.require(task.id)

    def create_tasks(self, requests: Iterable[TaskRequest]) -> list[OrchestratedTask]:
        return [self.create_task(request) for request in requests]

    # -- queries ---------------------------------------------------------------

    def get_task(self, task_id: str) -> OrchestratedTask:
        return self._tasks.require(task_id)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        queue_name: str | None = None,
        origin_kind: OriginKind | None = None,
        reference_id: str | None = None,
        limit: int | None = None,
    ) -> list[OrchestratedTask]:
        def matches(t: OrchestratedTask) -> bool:
            if status is not None and t.status is not status:
                return False
            if queue_name is not None and t.queue_name != queue_name:
                return False
            if origin_kind is not None and t.origin.kind is not origin_kind:
                return False
            if reference_id is not None and t.origin.reference_id != reference_id:
                return False
            return True

        tasks = sorted(self._tasks.list(matches), key=lambda t: t.sequence)
        return tasks[:limit] if limit is not None else tasks

    def ready_tasks(
        self, queue_name: str | None = None, now: datetime | None = None
    ) -> list[OrchestratedTask]:
        """Dispatchable tasks, highest priority first, FIFO within a priority."""

        now = now or self._clock()
        all_tasks = {t.id: t for t in self._tasks.list()}

        def is_ready(t: OrchestratedTask) -> bool:
            if t.status is not TaskStatus.QUEUED:
                return False
            if queue_name is not None and t.queue_name != queue_name:
                return False
            if t.available_at is not None and t.available_at > now:
                return False
            for dependency in t.dependencies:
                dep = all_tasks.get(dependency)
                if dep is None or dep.status is not TaskStatus.COMPLETED:
                    return False
            return True

        ready = [t for t in all_tasks.values() if is_ready(t)]
        return sorted(ready, key=lambda t: (t.priority.rank, t.sequence))

    def is_cancelled(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is None or task.status is TaskStatus.CANCELLED

    # -- dispatch ----------------------------------------------------------------

    def claim_next(
        self, queue_name: str, worker_id: str, now: datetime | None = None
    ) -> OrchestratedTask | None:
        """Atomically move the best ready task of a queue to ``running``."""

        now = now or self._clock()
        for candidate in self.ready_tasks(queue_name, now):
            try:
                claimed = self._tasks.update(
                    candidate.id,
                    expected_revision=candidate.revision,
                    status=TaskStatus.RUNNING,
                    started_at=now,
                    completed_at=None,
                    updated_at=now,
                    assigned_workers=[*candidate.assigned_workers, worker_id],
                    claim_id=uuid.uuid4().hex,
                )
            except ConflictError:
                continue
            logger.debug(
                "Task claimed",
                extra={"task_id": claimed.id, "queue_name": queue_name, "worker_id": worker_id},
            )
            self._refresh_queue(queue_name)
            return claimed
        return None

    def complete_task(
        self, task_id: str, output: dict | None = None, *, claim_id: str | None = None
    ) -> OrchestratedTask:
        """Store the result of a running attempt.

        With ``claim_id`` the result is only accepted from the attempt that claim
        started; a timed-out attempt that finishes late is ignored.
        """

        now = self._clock()

        def change(t: OrchestratedTask) -> bool:
            if not _owns_attempt(t, claim_id):
                return False
            t.status = TaskStatus.COMPLETED
            t.output_data = output or {}
            t.claim_id = None
            t.completed_at = now
            t.updated_at = now
            return True

        task, changed = self._tasks.mutate(task_id, change)
        if not changed:
            logger.info(
                "Result discarded for an attempt that no longer owns the task",
                extra={"task_id": task_id, "status": task.status.value},
            )
            return task
        logger.info(
            "Task completed", extra={"task_id": task.id, "duration_ms": task.duration_ms}
        )
        self._refresh_queue(task.queue_name)
        self._finish(task)
        return task

    def fail_task(
        self,
        task_id: str,
        error: str | BaseException,
        *,
        worker_id: str | None = None,
        claim_id: str | None = None,
    ) -> OrchestratedTask:
        """Record a failed attempt; re-queue with backoff while retries remain."""

        message = error if isinstance(error, str) else describe_error(error)
        now = self._clock()
        cap = self._settings.retry_backoff_max_seconds

        def change(t: OrchestratedTask) -> bool:
            if not _owns_attempt(t, claim_id):
                return False
            t.retry_count += 1
            t.error_log.append(
                TaskErrorEntry(
                    attempt=t.retry_count, message=message, timestamp=now, worker_id=worker_id
                )
            )
            t.claim_id = None
            t.updated_at = now
            if t.retry_count <= t.max_retries:
                delay = min(t.backoff_seconds * 2 ** (t.retry_count - 1), cap)
                t.status = TaskStatus.QUEUED
                t.available_at = now + timedelta(seconds=delay)
            else:
                t.status = TaskStatus.FAILED
                t.completed_at = now
            return True

        task, changed = self._tasks.mutate(task_id, change)
        if not changed:
            logger.info(
                "Failure discarded for an attempt that no longer owns the task",
                extra={"task_id": task_id, "status": task.status.value},
            )
            return task

        self._refresh_queue(task.queue_name)
        if task.status is TaskStatus.QUEUED:
            logger.warning(
                "Task failed; retry scheduled",
                extra={
                    "task_id": task.id,
                    "attempt": task.retry_count,
                    "max_retries": task.max_retries,
                    "available_at": task.available_at,
                    "error": message,
                },
            )
        else:
            logger.error(
                "Task failed permanently",
                extra={"task_id": task.id, "attempts": task.retry_count, "error": message},
            )
            self._finish(task)
        return task

    def check_timeouts(self, now: datetime | None = None) -> list[OrchestratedTask]:
        now = now or self._clock()
        expired = [
            t
            for t in self._tasks.list(lambda t: t.status is TaskStatus.RUNNING)
            if t.timeout_seconds is not None
            and t.started_at is not None
            and t.started_at + timedelta(seconds=t.timeout_seconds) <= now
        ]
        out: list[OrchestratedTask] = []
        for task in expired:
            logger.warning(
                "Task timed out", extra={"task_id": task.id, "timeout": task.timeout_seconds}
            )
            out.append(
                self.fail_task(
                    task.id,
                    TaskTimeoutError(f"task exceeded its timeout of {task.timeout_seconds:g}s"),
                    claim_id=task.claim_id,
                )
            )
        return out

    # -- operator actions ------------------------------------------------------

    def cancel_task(self, task_id: str, reason: str | None = None) -> OrchestratedTask:
        """Cancel a non-terminal task. Cancelling twice is a no-op."""

        now = self._clock()

        def change(t: OrchestratedTask) -> bool:
            if t.status is TaskStatus.CANCELLED:
                return False
            ensure_task_transition(t.status, TaskStatus.CANCELLED)
            t.status = TaskStatus.CANCELLED
            t.completed_at = now
            t.updated_at = now
            if reason:
                t.error_log.append(
                    TaskErrorEntry(attempt=t.retry_count, message=reason, timestamp=now)
                )
            return True

        task, changed = self._tasks.mutate(task_id, change)
        if changed:
            logger.info("Task cancelled", extra={"task_id": task.id, "reason": reason})
            self._refresh_queue(task.queue_name)
            self._finish(task)
        return task

    def retry_task(self, task_id: str) -> OrchestratedTask:
        """Re-queue a failed or cancelled task under the same id with a fresh retry budget."""

        now = self._clock()

        def change(t: OrchestratedTask) -> bool:
            if t.status not in (TaskStatus.FAILED, TaskStatus.CANCELLED):
                raise IllegalTransitionError(
                    f"only failed or cancelled tasks can be retried (task is {t.status.value})"
                )
            t.status = TaskStatus.QUEUED
            t.retry_count = 0
            t.available_at = None
            t.started_at = None
            t.completed_at = None
            t.output_data = None
            t.updated_at = now
            return True

        task, _ = self._tasks.mutate(task_id, change)
        logger.info("Task re-queued", extra={"task_id": task.id})
        self._refresh_queue(task.queue_name)
        return task

    def prioritize_task(self, task_id: str, priority: TaskPriority) -> OrchestratedTask:
        def change(t: OrchestratedTask) -> bool:
            if t.is_terminal:
                raise IllegalTransitionError(f"task {t.id} is already {t.status.value}")
            if t.priority is priority:
                return False
            t.priority = priority
            t.updated_at = self._clock()
            return True

        task, _ = self._tasks.mutate(task_id, change)
        return task

    def pause_task(self, task_id: str) -> OrchestratedTask:
        return self._move(task_id, TaskStatus.QUEUED, TaskStatus.PAUSED)

    def resume_task(self, task_id: str) -> OrchestratedTask:
        return self._move(task_id, TaskStatus.PAUSED, TaskStatus.QUEUED)

    def _move(self, task_id: str, source: TaskStatus, to: TaskStatus) -> OrchestratedTask:
        def change(t: OrchestratedTask) -> bool:
            if t.status is to:
                return False
            if t.status is not source:
                raise IllegalTransitionError(
                    f"Illegal task transition: {t.status.value} -> {to.value}"
                )
            t.status = to
            t.updated_at = self._clock()
            return True

        task, changed = self._tasks.mutate(task_id, change)
        if changed:
            self._refresh_queue(task.queue_name)
        return task

    # -- queues ----------------------------------------------------------------

    def configure_queue(
        self,
        queue_name: str,
        *,
        capacity: int | None = None,
        max_workers: int | None = None,
    ) -> TaskQueue:
        if capacity is not None and capacity < 1:
            raise ValidationError("queue capacity must be at least 1")
        if max_workers is not None and max_workers < 1:
            raise ValidationError("max_workers must be at least 1")
        self._ensure_queue(queue_name)

        def change(q: TaskQueue) -> bool:
            if capacity is not None:
                q.capacity = capacity
            if max_workers is not None:
                q.max_workers = max_workers
            return capacity is not None or max_workers is not None

        self._queues.mutate(queue_name, change)
        return self._refresh_queue(queue_name)

    def get_queue(self, queue_name: str) -> TaskQueue:
        existing = self._queues.get(queue_name)
        if existing is not None:
            return existing
        return self._refresh_queue(queue_name)

    def list_queues(self) -> list[TaskQueue]:
        return sorted(self._queues.list(), key=lambda q: q.queue_name)

    def _ensure_queue(self, queue_name: str) -> TaskQueue:
        queue, _ = self._queues.insert_if_absent(
            TaskQueue(
                queue_name=queue_name,
                capacity=self._settings.default_queue_capacity,
                max_workers=self._settings.worker_count,
                available_workers=self._settings.worker_count,
            ),
            lambda q: q.queue_name == queue_name,
        )
        return queue

    def _refresh_queue(self, queue_name: str) -> TaskQueue:
        self._ensure_queue(queue_name)
        in_queue = self._tasks.list(lambda t: t.queue_name == queue_name)
        pending = sum(1 for t in in_queue if t.status is TaskStatus.QUEUED)
        active = sum(1 for t in in_queue if t.status is TaskStatus.RUNNING)
        ratio = self._settings.queue_degraded_ratio

        def change(q: TaskQueue) -> bool:
            health = compute_queue_health(pending, q.capacity, ratio)
            available = max(q.max_workers - active, 0)
            if (q.pending_count, q.active_count, q.available_workers, q.health) == (
                pending,
                active,
                available,
                health,
            ):
                return False
            if health is not q.health:
                logger.info(
                    "Queue health changed",
                    extra={"queue_name": queue_name, "from": q.health.value, "to": health.value},
                )
            q.pending_count = pending
            q.active_count = active
            q.available_workers = available
            q.health = health
            q.updated_at = self._clock()
            return True

        queue, _ = self._queues.mutate(queue_name, change)
        return queue

    # -- terminal transitions --------------------------------------------------

    def _finish(self, task: OrchestratedTask) -> None:
        self.changes.publish(task)
        if task.status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
            for dependent in self._tasks.list(lambda t: task.id in t.dependencies):
                self._fail_dependent(dependent.id, task.id)

    def _fail_if_dependency_lost(self, task: OrchestratedTask) -> None:
        for dependency in task.dependencies:
            dep = self._tasks.get(dependency)
            if dep is not None and dep.status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
                self._fail_dependent(task.id, dependency)
                return

    def _fail_dependent(self, task_id: str, dependency_id: str) -> None:
        now = self._clock()
        message = f"dependency {dependency_id} did not complete"

        def change(t: OrchestratedTask) -> bool:
            if t.status not in (TaskStatus.QUEUED, TaskStatus.PAUSED):
                return False
            t.status = TaskStatus.FAILED
            t.completed_at = now
            t.updated_at = now
            t.error_log.append(
                TaskErrorEntry(attempt=t.retry_count, message=message, timestamp=now)
            )
            return True

        task, changed = self._tasks.mutate(task_id, change)
        if changed:
            logger.warning(
                "Task failed because a dependency did not complete",
                extra={"task_id": task.id, "dependency": dependency_id},
            )
            self._refresh_queue(task.queue_name)
            self._finish(task)


def _owns_attempt(task: OrchestratedTask, claim_id: str | None) -> bool:
    if task.status is not TaskStatus.RUNNING:
        return False
    return claim_id is None or task.claim_id == claim_id
