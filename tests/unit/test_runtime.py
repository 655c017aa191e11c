from __future__ import annotations

import logging

from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.events import EventDefinition, EventHandler, EventStatus
from bpm_orchestrator.runtime import AutomationEngine
from bpm_orchestrator.scheduler import JobRunStatus, ScheduledJob
from bpm_orchestrator.state import StateStore


def test_tick_report_is_json_ready(engine: AutomationEngine, deploy, linear) -> None:
    deploy(linear())
    engine.workflows.execute_workflow("onboarding")

    report = engine.tick()

    payload = report.to_json()
    assert list(payload["tasks_run"].values()) == ["completed"]
    assert payload["jobs_fired"] == []
    assert payload["sla_updates"] == 0


def test_start_survives_unavailable_store(
    settings: OrchestratorSettings, store: StateStore, notifier, handlers, caplog
) -> None:
    (store.root / "executions.json").write_text("{not json", encoding="utf-8")
    fast = settings.model_copy(
        update={
            "scheduler_poll_seconds": 0.01,
            "supervisor_poll_seconds": 0.01,
            "worker_poll_seconds": 0.01,
            "store_backoff_max_seconds": 0.05,
        }
    )
    engine = AutomationEngine(fast, store=store, notifier=notifier, handlers=handlers)

    with caplog.at_level(logging.WARNING, logger="bpm_orchestrator.runtime"):
        engine.start()
        engine.stop()

    assert not engine.workers.running
    assert any("Store unavailable" in r.getMessage() for r in caplog.records)


def test_reconcile_applies_outcomes_the_change_feed_missed(
    engine: AutomationEngine, clock, monkeypatch
) -> None:
    engine.events.register_event(
        EventDefinition(
            event_name="invoice.paid",
            handlers=[EventHandler(handler_id="totals", handler_type="aggregation")],
        )
    )
    job = engine.scheduler.create_job(
        ScheduledJob(
            name="cleanup",
            job_type="interval",
            schedule_expression="5m",
            action_type="aggregation",
        )
    )

    with monkeypatch.context() as m:
        m.setattr(engine.orchestrator.changes, "publish", lambda record: None)
        event = engine.events.publish_event("invoice.paid", {"amount": 3})
        [fired] = engine.scheduler.tick(clock.advance(minutes=5))
        engine.run_pending()

    assert engine.events.get_event(event.event_id).status is EventStatus.PROCESSING
    assert engine.store.job_executions.require(fired.id).status is JobRunStatus.RUNNING

    assert engine.reconcile() == 2

    assert engine.events.get_event(event.event_id).status is EventStatus.PROCESSED
    [run] = engine.scheduler.get_job_history(job.id)
    assert run.status is JobRunStatus.COMPLETED
    assert engine.scheduler.get_job(job.id).last_run_status is JobRunStatus.COMPLETED
    assert engine.reconcile() == 0
