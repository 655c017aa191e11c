"""Composition root: wires the services together and runs their drivers.

Services only talk to each other through the store and the task change feed.
Background drivers are daemon threads with their own poll intervals; each one
pauses with exponential backoff while the store is unavailable.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from bpm_orchestrator.actions import register_builtin_actions
from bpm_orchestrator.conditions import ConditionEvaluator
from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.definitions.registry import DefinitionStore
from bpm_orchestrator.errors import StoreUnavailableError
from bpm_orchestrator.events.processor import EventProcessor
from bpm_orchestrator.handlers import HandlerRegistry
from bpm_orchestrator.monitoring import MonitoringOverview, build_overview
from bpm_orchestrator.notifications import Notifier, build_notifier
from bpm_orchestrator.scheduler.models import JobExecution
from bpm_orchestrator.scheduler.service import Scheduler
from bpm_orchestrator.state import StateStore
from bpm_orchestrator.store import utc_now
from bpm_orchestrator.tasks.models import OrchestratedTask, OriginKind
from bpm_orchestrator.tasks.orchestrator import TaskOrchestrator
from bpm_orchestrator.tasks.workers import WorkerPool
from bpm_orchestrator.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickReport:
    jobs_fired: list[JobExecution] = field(default_factory=list)
    tasks_timed_out: list[OrchestratedTask] = field(default_factory=list)
    jobs_timed_out: list[JobExecution] = field(default_factory=list)
    sla_updates: int = 0
    repairs: int = 0
    tasks_run: list[OrchestratedTask] = field(default_factory=list)

    def to_json(self) -> dict[str, object]:
        return {
            "jobs_fired": [e.id for e in self.jobs_fired],
            "tasks_timed_out": [t.id for t in self.tasks_timed_out],
            "jobs_timed_out": [e.id for e in self.jobs_timed_out],
            "sla_updates": self.sla_updates,
            "repairs": self.repairs,
            "tasks_run": {t.id: t.status.value for t in self.tasks_run},
        }


class AutomationEngine:
    def __init__(
        self,
        settings: OrchestratorSettings | None = None,
        *,
        store: StateStore | None = None,
        notifier: Notifier | None = None,
        handlers: HandlerRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.store = store or StateStore(self.settings.state_path)
        self.notifier = notifier or build_notifier(self.settings)
        self.handlers = handlers or HandlerRegistry()
        self._clock = clock

        evaluator = ConditionEvaluator()
        self.definitions = DefinitionStore(self.store.definitions, evaluator)
        self.orchestrator = TaskOrchestrator(self.store, self.settings, clock=clock)
        self.workflows = WorkflowEngine(
            self.store,
            self.definitions,
            self.orchestrator,
            self.settings,
            notifier=self.notifier,
            evaluator=evaluator,
            clock=clock,
        )
        self.events = EventProcessor(
            self.store, self.orchestrator, evaluator=evaluator, clock=clock
        )
        self.scheduler = Scheduler(
            self.store, self.orchestrator, self.settings, notifier=self.notifier, clock=clock
        )
        self.workers = WorkerPool(
            self.orchestrator,
            self.handlers,
            queues=self.settings.parsed_worker_queues(),
            size=self.settings.worker_count,
            poll_interval=self.settings.worker_poll_seconds,
            backoff_max_seconds=self.settings.store_backoff_max_seconds,
        )
        register_builtin_actions(
            self.handlers,
            engine=lambda: self.workflows,
            notifier=self.notifier,
            aggregates=self.store.aggregates,
            webhook_timeout=self.settings.webhook_timeout_seconds,
        )
        self.orchestrator.changes.subscribe(self._route_task_outcome)

        self._stop = threading.Event()
        self._drivers: list[threading.Thread] = []

    def _route_task_outcome(self, task: OrchestratedTask) -> None:
        kind = task.origin.kind
        if kind is OriginKind.WORKFLOW_STEP:
            self.workflows.on_task_finished(task)
        elif kind is OriginKind.EVENT_HANDLER:
            self.events.on_task_finished(task)
        elif kind is OriginKind.SCHEDULED_JOB:
            self.scheduler.on_task_finished(task)

    # -- synchronous driving -------------------------------------------------------

    def tick(self, now: datetime | None = None, *, drain: bool = True) -> TickReport:
        """One pass of every driver; with ``drain`` also run all ready tasks."""

        now = now or self._clock()
        report = TickReport()
        report.jobs_fired = self.scheduler.tick(now)
        report.tasks_timed_out = self.orchestrator.check_timeouts(now)
        report.jobs_timed_out = self.scheduler.check_timeouts(now)
        report.sla_updates = self.workflows.check_slas(now)
        report.repairs = self.reconcile()
        if drain:
            report.tasks_run = self.workers.run_pending()
        return report

    def run_pending(self) -> list[OrchestratedTask]:
        return self.workers.run_pending()

    def reconcile(self) -> int:
        """Re-apply task outcomes the change feed never delivered."""

        return (
            self.workflows.reconcile() + self.events.reconcile() + self.scheduler.reconcile()
        )

    def overview(self) -> MonitoringOverview:
        return build_overview(self.store)

    # -- background drivers --------------------------------------------------------

    def start(self) -> None:
        if self._drivers:
            return
        self._stop.clear()
        self._run_guarded("reconcile", self.reconcile)
        self._spawn("scheduler", self.scheduler.tick, self.settings.scheduler_poll_seconds)
        self._spawn("supervisor", self._supervise, self.settings.supervisor_poll_seconds)
        self.workers.start()
        logger.info("Automation engine started", extra={"state_path": str(self.store.root)})

    def stop(self) -> None:
        self._stop.set()
        self.workers.stop()
        for thread in self._drivers:
            thread.join(timeout=5.0)
        self._drivers.clear()
        logger.info("Automation engine stopped")

    def _supervise(self) -> None:
        now = self._clock()
        self.orchestrator.check_timeouts(now)
        self.scheduler.check_timeouts(now)
        self.workflows.check_slas(now)
        self.reconcile()

    def _spawn(self, name: str, fn: Callable[[], object], interval: float) -> None:
        thread = threading.Thread(
            target=self._driver_loop,
            name=f"driver-{name}",
            daemon=True,
            kwargs={"name": name, "fn": fn, "interval": interval},
        )
        thread.start()
        self._drivers.append(thread)

    def _driver_loop(self, *, name: str, fn: Callable[[], object], interval: float) -> None:
        delay = interval
        while not self._stop.is_set():
            ok = self._run_guarded(name, fn)
            if ok:
                delay = interval
            else:
                delay = min(delay * 2, self.settings.store_backoff_max_seconds)
            self._stop.wait(delay)

    def _run_guarded(self, name: str, fn: Callable[[], object]) -> bool:
        """Run one driver pass. Returns False when the store was unavailable."""

        try:
            fn()
        except StoreUnavailableError as e:
            logger.warning(
                "Store unavailable; driver backing off", extra={"driver": name, "error": str(e)}
            )
            return False
        except Exception:
            logger.exception("Driver pass failed", extra={"driver": name})
        return True
