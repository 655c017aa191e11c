"""Workflow engine: interprets process graphs one step at a time.

An execution's cursors are durable state on the :class:`WorkflowExecution`
record: task steps parked in ``active_steps`` and partial joins in
``join_arrivals``. Every change to an execution is computed on a copy and
committed with a revision check; side effects (enqueueing step tasks,
cancelling tasks, notifications) happen only after the commit succeeded.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from bpm_orchestrator.conditions import ConditionEvaluator
from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.definitions.models import NodeKind, ProcessDefinition, ProcessNode
from bpm_orchestrator.definitions.registry import DefinitionStore
from bpm_orchestrator.errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from bpm_orchestrator.notifications import LoggingNotifier, Notification, Notifier
from bpm_orchestrator.store import DEFAULT_MUTATE_ATTEMPTS, utc_now
from bpm_orchestrator.tasks.models import (
    OrchestratedTask,
    OriginKind,
    TaskOrigin,
    TaskRequest,
    TaskStatus,
)
from bpm_orchestrator.tasks.orchestrator import TaskOrchestrator
from bpm_orchestrator.workflow.models import (
    ActiveStep,
    ExecutionStatus,
    ExecutionTrigger,
    WorkflowExecution,
)
from bpm_orchestrator.workflow.sla import evaluate_sla
from bpm_orchestrator.workflow.state_machine import transition

if TYPE_CHECKING:
    from bpm_orchestrator.state import StateStore

logger = logging.getLogger(__name__)

Arrival = tuple[str, str | None]


@dataclass(slots=True)
class _Plan:
    """Side effects to carry out once an execution change is committed."""

    tasks: list[TaskRequest] = field(default_factory=list)
    cancel: list[str] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)
    warnings: list[tuple[str, dict[str, Any]]] = field(default_factory=list)


StepFn = Callable[[WorkflowExecution, ProcessDefinition, _Plan], bool]


class WorkflowEngine:
    def __init__(
        self,
        store: StateStore,
        definitions: DefinitionStore,
        orchestrator: TaskOrchestrator,
        settings: OrchestratorSettings,
        *,
        notifier: Notifier | None = None,
        evaluator: ConditionEvaluator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._executions = store.executions
        self._tasks = store.tasks
        self._definitions = definitions
        self._orchestrator = orchestrator
        self._settings = settings
        self._notifier = notifier or LoggingNotifier()
        self._evaluator = evaluator or ConditionEvaluator()
        self._clock = clock
        self._definition_cache: dict[str, ProcessDefinition] = {}

    # -- public API --------------------------------------------------------------

    def execute_workflow(
        self,
        definition_id: str,
        input_data: dict[str, Any] | None = None,
        *,
        trigger: ExecutionTrigger | str = ExecutionTrigger.MANUAL,
        idempotency_key: str | None = None,
    ) -> WorkflowExecution:
        """Start a new execution of the active version of a definition."""

        if idempotency_key:
            existing = self._executions.find_one(lambda e: e.idempotency_key == idempotency_key)
            if existing is not None:
                return existing

        definition = self._definitions.get_active(definition_id)
        if definition is None:
            raise NotFoundError(f"definition {definition_id!r} has no active version")

        execution = WorkflowExecution(
            definition_id=definition.id,
            definition_version=definition.version,
            variables=dict(input_data or {}),
            trigger=ExecutionTrigger(trigger),
            idempotency_key=idempotency_key,
            total_steps=len(definition.task_nodes()),
            created_at=self._clock(),
        )
        execution, created = self._executions.insert_if_absent(
            execution,
            lambda e: idempotency_key is not None and e.idempotency_key == idempotency_key,
        )
        if not created:
            return execution

        logger.info(
            "Workflow execution created",
            extra={
                "execution_id": execution.id,
                "definition_id": definition.id,
                "version": definition.version,
            },
        )
        return self._apply(execution.id, self._start)

    def complete_step(
        self, execution_id: str, node_id: str, output: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        """Finish a manual (``auto_advance=false``) step and move the cursor on."""

        def step_fn(ex: WorkflowExecution, d: ProcessDefinition, plan: _Plan) -> bool:
            if ex.is_terminal:
                raise IllegalTransitionError(f"execution {ex.id} is already {ex.status.value}")
            step = ex.step_for_node(node_id)
            if step is None:
                raise NotFoundError(f"execution {ex.id} has no active step at {node_id!r}")
            if not step.awaiting_completion:
                raise IllegalTransitionError(
                    f"step {node_id!r} of execution {ex.id} is still running"
                )
            merged = {**(step.pending_output or {}), **(output or {})}
            return self._finish_step(ex, d, plan, step, merged)

        return self._apply(execution_id, step_fn)

    def cancel_execution(self, execution_id: str, reason: str | None = None) -> WorkflowExecution:
        def step_fn(ex: WorkflowExecution, d: ProcessDefinition, plan: _Plan) -> bool:
            if ex.status is ExecutionStatus.CANCELLED:
                return False
            transition(ex, ExecutionStatus.CANCELLED)
            ex.completed_at = self._clock()
            ex.error_message = reason
            plan.cancel.extend(step.task_id for step in ex.active_steps)
            where = ex.current_node_ids[0] if ex.current_node_ids else ex.definition_id
            ex.log(where, "cancelled", self._clock(), message=reason)
            ex.active_steps = []
            ex.join_arrivals = {}
            ex.current_node_ids = []
            return True

        return self._apply(execution_id, step_fn)

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        return self._executions.require(execution_id)

    def get_execution_history(
        self,
        definition_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int | None = None,
    ) -> list[WorkflowExecution]:
        def matches(e: WorkflowExecution) -> bool:
            if definition_id is not None and e.definition_id != definition_id:
                return False
            return status is None or e.status is status

        found = sorted(self._executions.list(matches), key=lambda e: e.created_at, reverse=True)
        return found[:limit] if limit is not None else found

    def purge_executions(self, older_than: datetime | None = None) -> int:
        """Delete terminal executions (and their step tasks) that finished before the cutoff."""

        cutoff = older_than or (
            self._clock() - timedelta(days=self._settings.execution_retention_days)
        )
        doomed = {
            e.id
            for e in self._executions.list(
                lambda e: e.is_terminal and (e.completed_at or e.created_at) < cutoff
            )
        }
        if not doomed:
            return 0
        self._tasks.delete_where(
            lambda t: t.origin.kind is OriginKind.WORKFLOW_STEP
            and t.origin.reference_id in doomed
            and t.is_terminal
        )
        removed = self._executions.delete_where(lambda e: e.id in doomed)
        logger.info("Purged executions", extra={"count": removed, "cutoff": cutoff})
        return removed

    # -- task outcomes -------------------------------------------------------------

    def on_task_finished(self, task: OrchestratedTask) -> WorkflowExecution | None:
        """Route the terminal outcome of a step task back into its execution."""

        if task.origin.kind is not OriginKind.WORKFLOW_STEP or not task.origin.reference_id:
            return None
        if not task.is_terminal:
            return None

        def step_fn(ex: WorkflowExecution, d: ProcessDefinition, plan: _Plan) -> bool:
            if ex.is_terminal:
                return False
            step = ex.step_for_task(task.id)
            if step is None:
                return False
            if task.status is TaskStatus.COMPLETED:
                node = d.node(step.node_id)
                if node is not None and not node.task_config().auto_advance:
                    if step.awaiting_completion:
                        return False
                    step.awaiting_completion = True
                    step.pending_output = task.output_data or {}
                    ex.log(
                        step.node_id,
                        "awaiting_completion",
                        self._clock(),
                        output=step.pending_output,
                    )
                    return True
                return self._finish_step(
                    ex, d, plan, step, task.output_data or {}, duration_ms=task.duration_ms
                )
            if task.status is TaskStatus.FAILED:
                reason = task.last_error or "task failed"
                self._fail(ex, plan, f"step {step.node_id!r} failed: {reason}", step.node_id)
            else:
                self._fail(ex, plan, f"step {step.node_id!r} was cancelled", step.node_id)
            return True

        try:
            return self._apply(task.origin.reference_id, step_fn)
        except NotFoundError:
            logger.warning(
                "Step task belongs to an unknown execution",
                extra={"task_id": task.id, "execution_id": task.origin.reference_id},
            )
            return None

    def reconcile(self) -> int:
        """Repair executions after a restart.

        Re-creates step tasks that were committed on the execution but never
        enqueued, and re-applies outcomes of step tasks that finished while
        nobody was listening. Returns the number of repairs.
        """

        repaired = 0
        for ex in self._executions.list(lambda e: not e.is_terminal):
            if ex.status is ExecutionStatus.PENDING:
                self._apply(ex.id, self._start)
                repaired += 1
                continue
            definition = self._definition_for(ex)
            for step in list(ex.active_steps):
                task = self._tasks.get(step.task_id)
                if task is None:
                    node = definition.node(step.node_id)
                    if node is None:
                        continue
                    request = self._step_request(ex, definition, node, step.task_id)
                    self._orchestrator.create_task(request)
                    repaired += 1
                elif task.is_terminal and not step.awaiting_completion:
                    self.on_task_finished(task)
                    repaired += 1
        if repaired:
            logger.info("Reconciled executions", extra={"repairs": repaired})
        return repaired

    def check_slas(self, now: datetime | None = None) -> int:
        """Fire SLA warnings, breaches and escalations for active steps.

        Never changes execution status and never cancels the step task.
        Returns the number of executions with new SLA signals.
        """

        now = now or self._clock()
        default_pct = self._settings.sla_warning_percent
        touched = 0
        for ex in self._executions.list(
            lambda e: e.status is ExecutionStatus.RUNNING and bool(e.active_steps)
        ):

            def step_fn(ex: WorkflowExecution, d: ProcessDefinition, plan: _Plan) -> bool:
                changed = False
                for step in ex.active_steps:
                    sla = d.sla_for(step.node_id)
                    if sla is None:
                        continue
                    signals = evaluate_sla(step, sla, now, default_pct)
                    if not signals.any:
                        continue
                    changed = True
                    context = {
                        "execution_id": ex.id,
                        "node_id": step.node_id,
                        "task_id": step.task_id,
                        "elapsed_hours": round(signals.elapsed_hours, 2),
                        "max_duration_hours": sla.max_duration_hours,
                    }
                    if signals.warn:
                        step.sla_warned = True
                        used = f"{signals.percent_used:.0f}% of SLA used"
                        ex.log(step.node_id, "sla_warning", now, message=used)
                        plan.warnings.append(("SLA warning", context))
                    if signals.breach:
                        step.sla_breached = True
                        ex.log(step.node_id, "sla_breached", now, message="SLA exceeded")
                        plan.warnings.append(("SLA breached", context))
                    if signals.escalate:
                        step.escalated = True
                        ex.log(step.node_id, "escalated", now)
                        plan.notifications.extend(self._escalations(d, step.node_id, context))
                return changed

            try:
                saved = self._apply(ex.id, step_fn)
            except ConflictError:
                logger.info("SLA check lost a race", extra={"execution_id": ex.id})
                continue
            if saved.revision != ex.revision:
                touched += 1
        return touched

    # -- interpretation ----------------------------------------------------------------

    def _start(self, ex: WorkflowExecution, d: ProcessDefinition, plan: _Plan) -> bool:
        if ex.status is not ExecutionStatus.PENDING:
            return False
        start = d.start_node()
        if start is None:
            raise ValidationError(f"definition {d.key} has no start node")
        transition(ex, ExecutionStatus.RUNNING)
        ex.started_at = self._clock()
        ex.log(start.id, "started", ex.started_at)
        self._run(ex, d, plan, [(start.id, None)])
        return True

    def _finish_step(
        self,
        ex: WorkflowExecution,
        d: ProcessDefinition,
        plan: _Plan,
        step: ActiveStep,
        output: dict[str, Any],
        duration_ms: int | None = None,
    ) -> bool:
        now = self._clock()
        if duration_ms is None:
            duration_ms = int((now - step.entered_at).total_seconds() * 1000)
        ex.active_steps = [s for s in ex.active_steps if s.task_id != step.task_id]
        ex.variables.update(output)
        ex.steps_completed += 1
        ex.log(step.node_id, "completed", now, output=output, duration_ms=duration_ms)

        arrivals = [
            (e.target, e.id)
            for e in d.outgoing(step.node_id)
            if self._evaluator.holds(e.condition, ex.variables)
        ]
        if not arrivals:
            self._fail(ex, plan, f"no viable branch after {step.node_id!r}", step.node_id)
            return True
        self._run(ex, d, plan, arrivals)
        return True

    def _run(
        self,
        ex: WorkflowExecution,
        d: ProcessDefinition,
        plan: _Plan,
        arrivals: list[Arrival],
    ) -> None:
        worklist: deque[Arrival] = deque(arrivals)
        while not ex.is_terminal:
            while worklist and not ex.is_terminal:
                node_id, edge_id = worklist.popleft()
                self._enter(ex, d, plan, node_id, edge_id, worklist)
            if ex.is_terminal or not self._fire_or_joins(ex, d, plan, worklist):
                break

        if ex.is_terminal:
            return
        live = [s.node_id for s in ex.active_steps] + list(ex.join_arrivals)
        ex.current_node_ids = sorted(set(live))
        if ex.active_steps:
            return
        if ex.join_arrivals:
            waiting = ", ".join(sorted(ex.join_arrivals))
            self._fail(ex, plan, f"deadlocked at join {waiting}", next(iter(ex.join_arrivals)))
            return
        transition(ex, ExecutionStatus.COMPLETED)
        ex.completed_at = self._clock()

    def _enter(
        self,
        ex: WorkflowExecution,
        d: ProcessDefinition,
        plan: _Plan,
        node_id: str,
        edge_id: str | None,
        worklist: deque[Arrival],
    ) -> None:
        node = d.node(node_id)
        if node is None:
            self._fail(ex, plan, f"edge {edge_id!r} leads to unknown node {node_id!r}", node_id)
            return

        kind = node.kind
        if kind is NodeKind.START:
            self._follow(worklist, [
                e for e in d.outgoing(node_id) if self._evaluator.holds(e.condition, ex.variables)
            ])
        elif kind is NodeKind.TASK:
            task_id = uuid.uuid4().hex
            ex.active_steps.append(
                ActiveStep(
                    task_id=task_id, node_id=node_id, entered_at=self._clock(), via_edge_id=edge_id
                )
            )
            plan.tasks.append(self._step_request(ex, d, node, task_id))
            ex.log(node_id, "entered", self._clock())
        elif kind is NodeKind.GATEWAY_XOR:
            self._exclusive(ex, d, plan, node, worklist)
        elif kind is NodeKind.GATEWAY_AND:
            if d.is_join(node_id):
                arrived = ex.join_arrivals.setdefault(node_id, [])
                if edge_id is not None and edge_id not in arrived:
                    arrived.append(edge_id)
                expected = {e.id for e in d.incoming(node_id)}
                if not expected.issubset(arrived):
                    return
                del ex.join_arrivals[node_id]
                ex.log(node_id, "joined", self._clock())
            self._follow(worklist, d.outgoing(node_id))
        elif kind is NodeKind.GATEWAY_OR:
            if d.is_join(node_id):
                arrived = ex.join_arrivals.setdefault(node_id, [])
                if edge_id is not None and edge_id not in arrived:
                    arrived.append(edge_id)
                # Fired by _fire_or_joins once no other cursor can still arrive.
                return
            self._inclusive(ex, d, plan, node, worklist)
        elif kind is NodeKind.END:
            ex.log(node_id, "end", self._clock())

    def _exclusive(
        self,
        ex: WorkflowExecution,
        d: ProcessDefinition,
        plan: _Plan,
        node: ProcessNode,
        worklist: deque[Arrival],
    ) -> None:
        edges = d.outgoing(node.id)
        chosen = next(
            (
                e
                for e in edges
                if e.is_conditional and self._evaluator.holds(e.condition, ex.variables)
            ),
            None,
        )
        if chosen is None:
            chosen = next((e for e in edges if not e.is_conditional), None)
        if chosen is None:
            self._fail(ex, plan, f"no viable branch at {node.id!r}", node.id)
            return
        taken = f"took {chosen.id} -> {chosen.target}"
        ex.log(node.id, "branch", self._clock(), message=taken)
        self._follow(worklist, [chosen])

    def _inclusive(
        self,
        ex: WorkflowExecution,
        d: ProcessDefinition,
        plan: _Plan,
        node: ProcessNode,
        worklist: deque[Arrival],
    ) -> None:
        chosen = [
            e for e in d.outgoing(node.id) if self._evaluator.holds(e.condition, ex.variables)
        ]
        if not chosen:
            self._fail(ex, plan, f"no viable branch at {node.id!r}", node.id)
            return
        taken = "took " + ", ".join(e.id for e in chosen)
        ex.log(node.id, "branch", self._clock(), message=taken)
        self._follow(worklist, chosen)

    def _fire_or_joins(
        self,
        ex: WorkflowExecution,
        d: ProcessDefinition,
        plan: _Plan,
        worklist: deque[Arrival],
    ) -> bool:
        """Fire every inclusive join that no live cursor can still reach."""

        fired = False
        for node_id in list(ex.join_arrivals):
            node = d.node(node_id)
            if node is None or node.kind is not NodeKind.GATEWAY_OR:
                continue
            if self._reachable_from_live(ex, d, node_id):
                continue
            del ex.join_arrivals[node_id]
            ex.log(node_id, "joined", self._clock())
            self._inclusive(ex, d, plan, node, worklist)
            fired = True
            if ex.is_terminal:
                break
        return fired

    def _reachable_from_live(
        self, ex: WorkflowExecution, d: ProcessDefinition, target: str
    ) -> bool:
        sources = [s.node_id for s in ex.active_steps]
        sources += [n for n in ex.join_arrivals if n != target]
        seen: set[str] = set()
        queue = deque(sources)
        while queue:
            current = queue.popleft()
            for edge in d.outgoing(current):
                if edge.target == target:
                    return True
                if edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return False

    @staticmethod
    def _follow(worklist: deque[Arrival], edges: list) -> None:
        for edge in edges:
            worklist.append((edge.target, edge.id))

    def _fail(self, ex: WorkflowExecution, plan: _Plan, message: str, node_id: str) -> None:
        transition(ex, ExecutionStatus.FAILED)
        ex.error_message = message
        ex.completed_at = self._clock()
        ex.log(node_id, "failed", self._clock(), message=message)
        plan.cancel.extend(step.task_id for step in ex.active_steps)
        ex.active_steps = []
        ex.join_arrivals = {}
        ex.current_node_ids = []

    def _step_request(
        self, ex: WorkflowExecution, d: ProcessDefinition, node: ProcessNode, task_id: str
    ) -> TaskRequest:
        cfg = node.task_config()
        return TaskRequest(
            task_id=task_id,
            task_name=f"{d.name}: {node.label or node.id}",
            priority=cfg.priority,
            queue_name=cfg.queue_name,
            action=cfg.action,
            max_retries=cfg.max_retries,
            timeout_seconds=cfg.timeout_seconds,
            input_data={
                "config": dict(cfg.input),
                "payload": dict(ex.variables),
                "execution_id": ex.id,
                "node_id": node.id,
            },
            origin=TaskOrigin(kind=OriginKind.WORKFLOW_STEP, reference_id=ex.id, node_id=node.id),
        )

    def _escalations(
        self, d: ProcessDefinition, node_id: str, context: dict[str, Any]
    ) -> list[Notification]:
        out: list[Notification] = []
        for rule in d.escalation_rules:
            if rule.condition != "sla_breach" or not rule.matches(node_id):
                continue
            for channel in rule.notify_via or ["log"]:
                out.append(
                    Notification(
                        channel=channel,
                        recipients=list(rule.escalate_to),
                        subject=f"SLA escalation: {d.name} / {node_id}",
                        body=f"Step {node_id!r} exceeded its escalation threshold.",
                        context=context,
                    )
                )
        return out

    # -- commit ----------------------------------------------------------------------

    def _definition_for(self, ex: WorkflowExecution) -> ProcessDefinition:
        key = f"{ex.definition_id}@{ex.definition_version}"
        cached = self._definition_cache.get(key)
        if cached is None:
            cached = self._definitions.get(ex.definition_id, ex.definition_version)
            if cached.activated_at is not None:
                self._definition_cache[key] = cached
        return cached

    def _apply(self, execution_id: str, step_fn: StepFn) -> WorkflowExecution:
        for _ in range(DEFAULT_MUTATE_ATTEMPTS):
            current = self._executions.require(execution_id)
            working = current.model_copy(deep=True)
            plan = _Plan()
            if not step_fn(working, self._definition_for(current), plan):
                return current
            try:
                saved = self._executions.replace(working, expected_revision=current.revision)
            except ConflictError:
                logger.debug(
                    "Execution changed concurrently; retrying",
                    extra={"execution_id": execution_id},
                )
                continue
            self._carry_out(current, saved, plan)
            return saved
        raise ConflictError(f"execution {execution_id!r}: too many concurrent updates")

    def _carry_out(
        self, before: WorkflowExecution, saved: WorkflowExecution, plan: _Plan
    ) -> None:
        if before.status is not saved.status:
            log = logger.warning if saved.status is ExecutionStatus.FAILED else logger.info
            log(
                "Workflow execution status changed",
                extra={
                    "execution_id": saved.id,
                    "from": before.status.value,
                    "to": saved.status.value,
                    "error": saved.error_message,
                },
            )
        for message, context in plan.warnings:
            logger.warning(message, extra=context)
        for request in plan.tasks:
            self._orchestrator.create_task(request)
        for task_id in plan.cancel:
            try:
                self._orchestrator.cancel_task(task_id, reason=f"execution {saved.id} ended")
            except (IllegalTransitionError, NotFoundError):
                continue
        for notification in plan.notifications:
            self._notifier.notify(notification)
