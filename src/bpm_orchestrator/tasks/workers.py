"""Worker pool that pulls ready tasks and runs their action handlers."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Sequence

from bpm_orchestrator.errors import StoreUnavailableError
from bpm_orchestrator.handlers import HandlerRegistry, TaskInput
from bpm_orchestrator.logging import task_log_context
from bpm_orchestrator.tasks.models import OrchestratedTask
from bpm_orchestrator.tasks.orchestrator import TaskOrchestrator

logger = logging.getLogger(__name__)


class WorkerPool:
    """N daemon threads per queue, each claiming one task at a time.

    Running tasks are never preempted. Cancellation is cooperative: the flag is
    checked before the handler starts and again before its result is stored.
    """

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        handlers: HandlerRegistry,
        *,
        queues: Sequence[str] = ("default",),
        size: int = 4,
        poll_interval: float = 0.5,
        backoff_max_seconds: float = 60.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._handlers = handlers
        self._queues = list(queues)
        self._size = size
        self._poll_interval = poll_interval
        self._backoff_max = backoff_max_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self.worker_id = f"pool-{uuid.uuid4().hex[:8]}"

    def execute(self, task: OrchestratedTask, worker_id: str | None = None) -> OrchestratedTask:
        """Run one claimed task and record its outcome."""

        worker_id = worker_id or self.worker_id
        if self._orchestrator.is_cancelled(task.id):
            logger.info("Skipping cancelled task", extra={"task_id": task.id})
            return self._orchestrator.get_task(task.id)

        try:
            handler = self._handlers.resolve(task.action)
            with task_log_context(
                task_id=task.id,
                action=task.action,
                worker_id=worker_id,
                reference_id=task.origin.reference_id,
            ):
                output = handler(TaskInput.from_task(task))
        except Exception as e:
            logger.exception(
                "Task handler failed",
                extra={"task_id": task.id, "action": task.action, "worker_id": worker_id},
            )
            return self._orchestrator.fail_task(
                task.id, e, worker_id=worker_id, claim_id=task.claim_id
            )

        if self._orchestrator.is_cancelled(task.id):
            logger.info("Discarding result of cancelled task", extra={"task_id": task.id})
            return self._orchestrator.get_task(task.id)
        if output is not None and not isinstance(output, dict):
            output = {"result": output}
        return self._orchestrator.complete_task(task.id, output, claim_id=task.claim_id)

    def run_pending(
        self, queue_name: str | None = None, *, max_tasks: int | None = None
    ) -> list[OrchestratedTask]:
        """Synchronously drain ready work (one task at a time) and return the outcomes."""

        queue_names = [queue_name] if queue_name else None
        finished: list[OrchestratedTask] = []
        while max_tasks is None or len(finished) < max_tasks:
            names = queue_names or sorted(
                {t.queue_name for t in self._orchestrator.ready_tasks()}
            )
            claimed = None
            for name in names:
                claimed = self._orchestrator.claim_next(name, self.worker_id)
                if claimed is not None:
                    break
            if claimed is None:
                break
            finished.append(self.execute(claimed))
        return finished

    # -- background threads ------------------------------------------------------

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for queue_name in self._queues:
            for index in range(self._size):
                thread = threading.Thread(
                    target=self._run,
                    name=f"worker-{queue_name}-{index}",
                    daemon=True,
                    kwargs={"queue_name": queue_name, "worker_id": f"{queue_name}-{index}"},
                )
                thread.start()
                self._threads.append(thread)
        logger.info(
            "Worker pool started", extra={"queues": self._queues, "size": self._size}
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads.clear()
        logger.info("Worker pool stopped")

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    def _run(self, *, queue_name: str, worker_id: str) -> None:
        delay = self._poll_interval
        while not self._stop.is_set():
            try:
                task = self._orchestrator.claim_next(queue_name, worker_id)
                delay = self._poll_interval
            except StoreUnavailableError:
                delay = min(max(delay * 2, self._poll_interval), self._backoff_max)
                logger.warning(
                    "Store unavailable; worker backing off",
                    extra={"queue_name": queue_name, "worker_id": worker_id, "delay": delay},
                )
                self._stop.wait(delay)
                continue
            if task is None:
                self._stop.wait(self._poll_interval)
                continue
            try:
                self.execute(task, worker_id)
            except StoreUnavailableError:
                logger.warning(
                    "Store unavailable while recording task outcome",
                    extra={"task_id": task.id, "worker_id": worker_id},
                )
                self._stop.wait(delay)
