from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from bpm_orchestrator.errors import HandlerError, ValidationError
from bpm_orchestrator.handlers import TaskInput
from bpm_orchestrator.runtime import AutomationEngine
from bpm_orchestrator.scheduler import JobRunStatus, JobTrigger, ScheduledJob
from bpm_orchestrator.tasks import TaskStatus


@pytest.fixture
def runs(handlers) -> list[TaskInput]:
    seen: list[TaskInput] = []

    def report(task_input: TaskInput) -> dict[str, Any]:
        seen.append(task_input)
        return {"rows": 3}

    handlers.register("report", report)
    return seen


def _job(**fields: Any) -> ScheduledJob:
    defaults: dict[str, Any] = {
        "name": "nightly-report",
        "job_type": "interval",
        "schedule_expression": "10m",
        "action_type": "function",
        "action_config": {"function": "report"},
    }
    return ScheduledJob.model_validate({**defaults, **fields})


def test_cron_job_runs_in_its_timezone(engine: AutomationEngine, clock, runs) -> None:
    job = engine.scheduler.create_job(
        _job(job_type="cron", schedule_expression="0 8 * * *", timezone="Europe/Berlin")
    )
    # 08:00 in Berlin during winter is 07:00 UTC.
    assert job.next_run_at == datetime(2026, 1, 15, 7, 0, tzinfo=UTC)

    assert engine.tick(clock.advance(minutes=30)).jobs_fired == []
    report = engine.tick(clock.advance(minutes=30))

    [execution] = report.jobs_fired
    job = engine.scheduler.get_job(job.id)
    assert job.run_count == 1
    assert job.last_run_status is JobRunStatus.COMPLETED
    assert job.next_run_at == datetime(2026, 1, 16, 7, 0, tzinfo=UTC)
    [history] = engine.scheduler.get_job_history(job.id)
    assert history.id == execution.id
    assert history.status is JobRunStatus.COMPLETED
    assert history.scheduled_for == datetime(2026, 1, 15, 7, 0, tzinfo=UTC)
    assert history.output == {"rows": 3}
    assert runs[0].config["function"] == "report"


def test_missed_interval_runs_are_coalesced(engine: AutomationEngine, clock, runs) -> None:
    job = engine.scheduler.create_job(_job())

    report = engine.tick(clock.advance(hours=1))

    assert len(report.jobs_fired) == 1
    assert len(runs) == 1
    assert engine.scheduler.get_job(job.id).next_run_at == clock.now + timedelta(minutes=10)


def test_one_time_job_fires_once(engine: AutomationEngine, clock, runs) -> None:
    job = engine.scheduler.create_job(
        _job(job_type="one_time", schedule_expression="2026-01-15T06:05:00Z")
    )

    engine.tick(clock.advance(minutes=5))
    engine.tick(clock.advance(hours=1))

    job = engine.scheduler.get_job(job.id)
    assert len(runs) == 1
    assert job.is_active is False
    assert job.next_run_at is None


def test_max_runs_deactivates_recurring_job(engine: AutomationEngine, clock, runs) -> None:
    job = engine.scheduler.create_job(_job(job_type="recurring", max_runs=2))

    for _ in range(3):
        engine.tick(clock.advance(minutes=10))

    assert len(runs) == 2
    assert engine.scheduler.get_job(job.id).is_active is False


def test_repeated_failures_pause_job(
    engine: AutomationEngine, clock, handlers, notifier
) -> None:
    def broken(task_input: TaskInput) -> None:
        raise HandlerError("warehouse offline")

    handlers.register("broken", broken)
    job = engine.scheduler.create_job(
        _job(action_config={"function": "broken"}, failure_threshold=3)
    )

    for _ in range(3):
        engine.tick(clock.advance(minutes=10))

    job = engine.scheduler.get_job(job.id)
    assert job.is_active is False
    assert job.needs_attention is True
    assert "warehouse offline" in job.attention_reason
    assert job.failure_count == 3
    [sent] = notifier.sent
    assert sent.recipients == ["operators"]
    assert engine.tick(clock.advance(minutes=10)).jobs_fired == []

    resumed = engine.scheduler.toggle_job(job.id, True)
    assert resumed.needs_attention is False
    assert resumed.failure_count == 0
    assert resumed.next_run_at == clock.now + timedelta(minutes=10)


def test_success_resets_failure_count(engine: AutomationEngine, clock, handlers) -> None:
    outcomes = iter([False, True])

    def flaky(task_input: TaskInput) -> None:
        if not next(outcomes):
            raise HandlerError("flaky")

    handlers.register("flaky", flaky)
    job = engine.scheduler.create_job(_job(action_config={"function": "flaky"}))

    engine.tick(clock.advance(minutes=10))
    assert engine.scheduler.get_job(job.id).failure_count == 1
    engine.tick(clock.advance(minutes=10))
    assert engine.scheduler.get_job(job.id).failure_count == 0


def test_run_job_now_is_idempotent(engine: AutomationEngine, runs) -> None:
    job = engine.scheduler.create_job(_job())

    first = engine.scheduler.run_job_now(job.id, idempotency_key="ops-1")
    second = engine.scheduler.run_job_now(job.id, idempotency_key="ops-1")
    engine.run_pending()

    assert first.id == second.id
    assert first.trigger is JobTrigger.MANUAL
    assert len(runs) == 1
    assert engine.scheduler.get_job(job.id).next_run_at == job.next_run_at


def test_job_timeout_cancels_its_task(engine: AutomationEngine, clock, runs) -> None:
    job = engine.scheduler.create_job(_job(schedule_expression="1h", timeout_seconds=30))
    execution = engine.scheduler.run_job_now(job.id)

    report = engine.tick(clock.advance(seconds=31), drain=False)

    [timed_out] = report.jobs_timed_out
    assert timed_out.id == execution.id
    assert timed_out.status is JobRunStatus.TIMEOUT
    assert engine.orchestrator.get_task(execution.task_id).status is TaskStatus.CANCELLED
    assert engine.scheduler.get_job(job.id).last_run_status is JobRunStatus.TIMEOUT
    engine.run_pending()
    assert runs == []


def test_update_job_reschedules(engine: AutomationEngine, clock) -> None:
    job = engine.scheduler.create_job(_job(action_config={"function": "report"}))

    updated = engine.scheduler.update_job(job.id, {"schedule_expression": "1h", "run_count": 99})

    assert updated.next_run_at == clock.now + timedelta(hours=1)
    assert updated.run_count == 0
    with pytest.raises(ValidationError):
        engine.scheduler.update_job(job.id, {"no_such_field": 1})


def test_deactivated_job_does_not_fire(engine: AutomationEngine, clock, runs) -> None:
    job = engine.scheduler.create_job(_job())
    engine.scheduler.toggle_job(job.id, False)

    assert engine.tick(clock.advance(hours=1)).jobs_fired == []
    assert engine.scheduler.delete_job(job.id) is True
    assert engine.scheduler.delete_job(job.id) is False


@pytest.mark.parametrize(
    "fields",
    [
        {"job_type": "cron", "schedule_expression": "not a cron"},
        {"job_type": "interval", "schedule_expression": "soon"},
        {"job_type": "interval", "schedule_expression": "0m"},
        {"job_type": "one_time", "schedule_expression": "tomorrow"},
        {"timezone": "Mars/Olympus"},
        {"action_config": {}},
    ],
)
def test_invalid_jobs_are_rejected(engine: AutomationEngine, fields: dict) -> None:
    with pytest.raises(ValidationError):
        engine.scheduler.create_job(_job(**fields))
