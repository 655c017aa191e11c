"""The on-disk state directory: one JSON collection per record type."""

from __future__ import annotations

from pathlib import Path

from bpm_orchestrator.definitions.models import ProcessDefinition
from bpm_orchestrator.events.models import AggregateRecord, EventDefinition, ProcessedEvent
from bpm_orchestrator.scheduler.models import JobExecution, ScheduledJob
from bpm_orchestrator.store import JsonCollection, SequenceCounter
from bpm_orchestrator.tasks.models import OrchestratedTask, TaskQueue
from bpm_orchestrator.workflow.models import WorkflowExecution


class StateStore:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.definitions: JsonCollection[ProcessDefinition] = JsonCollection(
            root / "definitions.json", ProcessDefinition, key=lambda d: d.key
        )
        self.executions: JsonCollection[WorkflowExecution] = JsonCollection(
            root / "executions.json", WorkflowExecution
        )
        self.tasks: JsonCollection[OrchestratedTask] = JsonCollection(
            root / "tasks.json", OrchestratedTask
        )
        self.queues: JsonCollection[TaskQueue] = JsonCollection(
            root / "queues.json", TaskQueue, key=lambda q: q.queue_name
        )
        self.event_definitions: JsonCollection[EventDefinition] = JsonCollection(
            root / "event_definitions.json", EventDefinition, key=lambda e: e.event_name
        )
        self.events: JsonCollection[ProcessedEvent] = JsonCollection(
            root / "events.json", ProcessedEvent, key=lambda e: e.event_id
        )
        self.jobs: JsonCollection[ScheduledJob] = JsonCollection(root / "jobs.json", ScheduledJob)
        self.job_executions: JsonCollection[JobExecution] = JsonCollection(
            root / "job_executions.json", JobExecution
        )
        self.aggregates: JsonCollection[AggregateRecord] = JsonCollection(
            root / "aggregates.json", AggregateRecord, key=lambda a: a.name
        )
        self.sequences = SequenceCounter(root / "meta.json")
