"""Unit tests for task orchestration: priority, retries, dependencies, idempotency."""

from __future__ import annotations

from datetime import timedelta

import pytest

from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.errors import IllegalTransitionError, ValidationError
from bpm_orchestrator.state import StateStore
from bpm_orchestrator.tasks import (
    OrchestratedTask,
    QueueHealth,
    TaskOrchestrator,
    TaskPriority,
    TaskRequest,
    TaskStatus,
)


@pytest.fixture
def orchestrator(store: StateStore, settings: OrchestratorSettings, clock) -> TaskOrchestrator:
    return TaskOrchestrator(store, settings, clock=clock)


def _submit(orchestrator: TaskOrchestrator, name: str, **fields) -> OrchestratedTask:
    return orchestrator.create_task(TaskRequest(task_name=name, **fields))


def test_higher_priority_is_dispatched_first(orchestrator: TaskOrchestrator) -> None:
    low = _submit(orchestrator, "T1", priority=TaskPriority.LOW)
    high = _submit(orchestrator, "T2", priority=TaskPriority.HIGH)

    claimed = orchestrator.claim_next("default", "w1")

    assert claimed is not None
    assert claimed.id == high.id
    assert claimed.status is TaskStatus.RUNNING
    assert claimed.assigned_workers == ["w1"]
    assert orchestrator.claim_next("default", "w1").id == low.id
    assert orchestrator.claim_next("default", "w1") is None


def test_fifo_within_a_priority(orchestrator: TaskOrchestrator) -> None:
    first = _submit(orchestrator, "a")
    _submit(orchestrator, "b")
    assert [t.id for t in orchestrator.ready_tasks()][0] == first.id


def test_retries_then_fails_permanently(orchestrator: TaskOrchestrator) -> None:
    task = _submit(orchestrator, "flaky", max_retries=2)

    for attempt in (1, 2):
        orchestrator.claim_next("default", "w1")
        task = orchestrator.fail_task(task.id, "boom")
        assert task.status is TaskStatus.QUEUED
        assert task.retry_count == attempt

    orchestrator.claim_next("default", "w1")
    task = orchestrator.fail_task(task.id, "boom")

    assert task.status is TaskStatus.FAILED
    assert task.retry_count == 3
    assert [e.attempt for e in task.error_log] == [1, 2, 3]
    assert task.last_error == "boom"


def test_retry_backoff_is_exponential_and_capped(
    store: StateStore, settings: OrchestratorSettings, clock
) -> None:
    tuned = settings.model_copy(
        update={"retry_backoff_seconds": 10.0, "retry_backoff_max_seconds": 25.0}
    )
    orchestrator = TaskOrchestrator(store, tuned, clock=clock)
    task = _submit(orchestrator, "slow", max_retries=5)

    delays = []
    for _ in range(3):
        claimed = orchestrator.claim_next("default", "w1", now=clock.now)
        assert claimed is not None
        task = orchestrator.fail_task(task.id, "nope")
        delays.append(task.available_at - clock.now)
        assert orchestrator.claim_next("default", "w1", now=clock.now) is None
        clock.now = task.available_at

    assert delays == [timedelta(seconds=10), timedelta(seconds=20), timedelta(seconds=25)]


def test_dependencies_gate_dispatch(orchestrator: TaskOrchestrator) -> None:
    first = _submit(orchestrator, "extract")
    second = _submit(
        orchestrator, "load", dependencies=[first.id], priority=TaskPriority.CRITICAL
    )

    claimed = orchestrator.claim_next("default", "w1")
    assert claimed.id == first.id
    assert orchestrator.claim_next("default", "w1") is None

    orchestrator.complete_task(first.id, {"rows": 3})
    assert orchestrator.claim_next("default", "w1").id == second.id


def test_failed_dependency_fails_dependents(orchestrator: TaskOrchestrator) -> None:
    first = _submit(orchestrator, "extract")
    second = _submit(orchestrator, "load", dependencies=[first.id])

    orchestrator.claim_next("default", "w1")
    orchestrator.fail_task(first.id, "source unavailable")

    dependent = orchestrator.get_task(second.id)
    assert dependent.status is TaskStatus.FAILED
    assert dependent.last_error == f"dependency {first.id} did not complete"


def test_unknown_dependency_is_rejected(orchestrator: TaskOrchestrator) -> None:
    with pytest.raises(ValidationError):
        _submit(orchestrator, "orphan", dependencies=["nope"])


def test_idempotency_key_and_reserved_id(orchestrator: TaskOrchestrator) -> None:
    one = orchestrator.create_task(TaskRequest(task_name="x"), idempotency_key="k")
    two = orchestrator.create_task(TaskRequest(task_name="y"), idempotency_key="k")
    assert one.id == two.id

    reserved = _submit(orchestrator, "r", task_id="fixed-id")
    again = _submit(orchestrator, "r", task_id="fixed-id")
    assert reserved.id == again.id == "fixed-id"
    assert len(orchestrator.list_tasks()) == 2


def test_cancel_is_idempotent_and_terminal(orchestrator: TaskOrchestrator) -> None:
    task = _submit(orchestrator, "x")
    cancelled = orchestrator.cancel_task(task.id, "not needed")
    assert cancelled.status is TaskStatus.CANCELLED
    assert orchestrator.cancel_task(task.id).revision == cancelled.revision

    done = _submit(orchestrator, "y")
    orchestrator.claim_next("default", "w1")
    orchestrator.complete_task(done.id)
    with pytest.raises(IllegalTransitionError):
        orchestrator.cancel_task(done.id)


def test_result_of_cancelled_task_is_discarded(orchestrator: TaskOrchestrator) -> None:
    task = _submit(orchestrator, "x")
    orchestrator.claim_next("default", "w1")
    orchestrator.cancel_task(task.id)

    after = orchestrator.complete_task(task.id, {"late": True})

    assert after.status is TaskStatus.CANCELLED
    assert after.output_data is None


def test_manual_retry_resets_budget(orchestrator: TaskOrchestrator) -> None:
    task = _submit(orchestrator, "x")
    orchestrator.claim_next("default", "w1")
    orchestrator.fail_task(task.id, "boom")

    retried = orchestrator.retry_task(task.id)

    assert retried.status is TaskStatus.QUEUED
    assert retried.retry_count == 0
    assert len(retried.error_log) == 1
    with pytest.raises(IllegalTransitionError):
        orchestrator.retry_task(task.id)


def test_pause_resume_and_prioritize(orchestrator: TaskOrchestrator) -> None:
    task = _submit(orchestrator, "x")
    assert orchestrator.pause_task(task.id).status is TaskStatus.PAUSED
    assert orchestrator.claim_next("default", "w1") is None
    assert orchestrator.resume_task(task.id).status is TaskStatus.QUEUED
    assert orchestrator.prioritize_task(task.id, TaskPriority.CRITICAL).priority is (
        TaskPriority.CRITICAL
    )
    assert orchestrator.resume_task(task.id).status is TaskStatus.QUEUED

    orchestrator.claim_next("default", "w1")
    with pytest.raises(IllegalTransitionError):
        orchestrator.pause_task(task.id)


def test_timeouts_count_as_failed_attempts(orchestrator: TaskOrchestrator, clock) -> None:
    task = _submit(orchestrator, "hang", timeout_seconds=30, max_retries=0)
    orchestrator.claim_next("default", "w1")

    assert orchestrator.check_timeouts(clock.now + timedelta(seconds=10)) == []
    [timed_out] = orchestrator.check_timeouts(clock.now + timedelta(seconds=31))

    assert timed_out.id == task.id
    assert timed_out.status is TaskStatus.FAILED
    assert "timeout" in timed_out.last_error


def test_timed_out_attempt_cannot_report_late(orchestrator: TaskOrchestrator, clock) -> None:
    task = _submit(orchestrator, "hang", timeout_seconds=30, max_retries=1)
    first = orchestrator.claim_next("default", "w1")
    clock.advance(seconds=31)
    [requeued] = orchestrator.check_timeouts()
    assert requeued.status is TaskStatus.QUEUED
    second = orchestrator.claim_next("default", "w2")
    assert second.claim_id != first.claim_id

    late = orchestrator.complete_task(task.id, {"from": "w1"}, claim_id=first.claim_id)
    assert late.status is TaskStatus.RUNNING
    assert late.output_data is None
    late = orchestrator.fail_task(task.id, "w1 gave up", claim_id=first.claim_id)
    assert late.status is TaskStatus.RUNNING
    assert late.retry_count == 1

    done = orchestrator.complete_task(task.id, {"from": "w2"}, claim_id=second.claim_id)
    assert done.status is TaskStatus.COMPLETED
    assert done.output_data == {"from": "w2"}


def test_queue_health_tracks_pending_work(orchestrator: TaskOrchestrator) -> None:
    orchestrator.configure_queue("bulk", capacity=2)
    _submit(orchestrator, "a", queue_name="bulk")
    assert orchestrator.get_queue("bulk").health is QueueHealth.HEALTHY

    _submit(orchestrator, "b", queue_name="bulk")
    queue = orchestrator.get_queue("bulk")
    assert queue.pending_count == 2
    assert queue.health is QueueHealth.OVERLOADED

    # Over capacity is accepted, only reported.
    _submit(orchestrator, "c", queue_name="bulk")
    assert orchestrator.get_queue("bulk").pending_count == 3


def test_terminal_transitions_are_published(orchestrator: TaskOrchestrator) -> None:
    seen: list[tuple[str, TaskStatus]] = []
    orchestrator.changes.subscribe(lambda t: seen.append((t.task_name, t.status)))

    a = _submit(orchestrator, "a")
    orchestrator.claim_next("default", "w1")
    orchestrator.complete_task(a.id)
    b = _submit(orchestrator, "b")
    orchestrator.cancel_task(b.id)

    assert seen == [("a", TaskStatus.COMPLETED), ("b", TaskStatus.CANCELLED)]


def test_create_tasks_keeps_submission_order(orchestrator: TaskOrchestrator) -> None:
    created = orchestrator.create_tasks(
        [TaskRequest(task_name="a"), TaskRequest(task_name="b"), TaskRequest(task_name="c")]
    )

    assert [t.task_name for t in created] == ["a", "b", "c"]
    assert [t.id for t in orchestrator.ready_tasks()] == [t.id for t in created]
