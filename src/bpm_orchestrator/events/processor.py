"""Event processor: turns published events into handler tasks.

Each matching handler of an event becomes one orchestrated task. The event's
status is derived from its handler tasks as they finish; a required handler
that ends failed or cancelled moves the event to the dead-letter state, from
where an operator can replay it.
"""

from __future__ import annotations

import graphlib
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import jsonschema

from bpm_orchestrator.conditions import ConditionEvaluator
from bpm_orchestrator.errors import (
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
    ValidationIssue,
)
from bpm_orchestrator.events.models import (
    EventDefinition,
    EventHandler,
    EventStatus,
    ProcessedEvent,
)
from bpm_orchestrator.handlers import resolve_action
from bpm_orchestrator.store import utc_now
from bpm_orchestrator.tasks.models import (
    OrchestratedTask,
    OriginKind,
    TaskOrigin,
    TaskPriority,
    TaskRequest,
    TaskStatus,
)
from bpm_orchestrator.tasks.orchestrator import TaskOrchestrator

if TYPE_CHECKING:
    from bpm_orchestrator.state import StateStore

logger = logging.getLogger(__name__)

_FINAL_EVENT_STATUSES = {EventStatus.PROCESSED, EventStatus.FAILED}


class EventProcessor:
    def __init__(
        self,
        store: StateStore,
        orchestrator: TaskOrchestrator,
        *,
        evaluator: ConditionEvaluator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._definitions = store.event_definitions
        self._events = store.events
        self._tasks = store.tasks
        self._orchestrator = orchestrator
        self._evaluator = evaluator or ConditionEvaluator()
        self._clock = clock

    # -- registration ------------------------------------------------------------

    def register_event(self, definition: EventDefinition) -> EventDefinition:
        """Create or replace an event definition."""

        if not definition.event_name.strip():
            raise ValidationError("event_name is required")
        if definition.payload_schema:
            try:
                jsonschema.Draft202012Validator.check_schema(definition.payload_schema)
            except jsonschema.SchemaError as e:
                raise ValidationError(f"invalid payload schema: {e.message}") from e
        self._check_handlers(definition.handlers)

        existing = self._definitions.get(definition.event_name)
        if existing is None:
            saved = self._definitions.insert(definition)
        else:
            saved = self._definitions.replace(
                definition.model_copy(update={"created_at": existing.created_at}),
                expected_revision=existing.revision,
            )
        logger.info(
            "Event registered",
            extra={"event_name": saved.event_name, "handlers": len(saved.handlers)},
        )
        return saved

    def register_handler(self, event_name: str, handler: EventHandler) -> EventDefinition:
        def change(d: EventDefinition) -> bool:
            d.handlers = [h for h in d.handlers if h.handler_id != handler.handler_id]
            d.handlers.append(handler)
            self._check_handlers(d.handlers)
            return True

        definition, _ = self._definitions.mutate(event_name, change)
        return definition

    def unregister_handler(self, event_name: str, handler_id: str) -> EventDefinition:
        def change(d: EventDefinition) -> bool:
            if d.handler(handler_id) is None:
                raise NotFoundError(f"event {event_name!r} has no handler {handler_id!r}")
            d.handlers = [h for h in d.handlers if h.handler_id != handler_id]
            for h in d.handlers:
                if handler_id in h.depends_on:
                    raise ValidationError(
                        f"handler {h.handler_id!r} depends on {handler_id!r}"
                    )
            return True

        definition, _ = self._definitions.mutate(event_name, change)
        return definition

    def get_event_definition(self, event_name: str) -> EventDefinition:
        return self._definitions.require(event_name)

    def list_event_definitions(self) -> list[EventDefinition]:
        return sorted(self._definitions.list(), key=lambda d: d.event_name)

    def _check_handlers(self, handlers: list[EventHandler]) -> None:
        issues: list[ValidationIssue] = []
        ids = [h.handler_id for h in handlers]
        if len(ids) != len(set(ids)):
            issues.append(
                ValidationIssue(code="duplicate_handler", message="handler ids must be unique")
            )
        for h in handlers:
            try:
                resolve_action(h.handler_type, h.config)
            except ValidationError as e:
                issues.extend(e.issues)
            if h.filter is not None:
                problem = self._evaluator.check_syntax(h.filter)
                if problem:
                    issues.append(
                        ValidationIssue(code="bad_filter", message=f"{h.handler_id}: {problem}")
                    )
            for dependency in h.depends_on:
                if dependency not in ids or dependency == h.handler_id:
                    issues.append(
                        ValidationIssue(
                            code="bad_dependency",
                            message=f"{h.handler_id}: unknown dependency {dependency!r}",
                        )
                    )
        if not issues:
            try:
                _dependency_order(handlers)
            except graphlib.CycleError as e:
                issues.append(
                    ValidationIssue(
                        code="dependency_cycle",
                        message=f"handler dependencies form a cycle: {e.args[1]}",
                    )
                )
        if issues:
            raise ValidationError(issues)

    # -- publishing ----------------------------------------------------------------

    def publish_event(
        self,
        event_name: str,
        payload: dict[str, Any] | None = None,
        *,
        source: str | None = None,
        idempotency_key: str | None = None,
    ) -> ProcessedEvent:
        if idempotency_key:
            existing = self._events.find_one(lambda e: e.idempotency_key == idempotency_key)
            if existing is not None:
                return existing

        payload = dict(payload or {})
        event = ProcessedEvent(
            event_name=event_name,
            source=source,
            payload=payload,
            idempotency_key=idempotency_key,
            received_at=self._clock(),
        )

        definition = self._definitions.get(event_name)
        problem = self._rejection(definition, payload)
        if problem is not None:
            event.status = EventStatus.FAILED
            event.error_message = problem
            event.completed_at = self._clock()
            saved, _ = self._events.insert_if_absent(event, self._same_key(idempotency_key))
            logger.warning(
                "Event rejected",
                extra={"event_id": saved.event_id, "event_name": event_name, "error": problem},
            )
            return saved

        handlers = definition.handlers if definition is not None else []
        matching = [h for h in handlers if self._evaluator.holds(h.filter, payload)]
        # Task ids are reserved up front so depends_on can reference siblings.
        plan: list[tuple[EventHandler, TaskRequest]] = []
        for handler in matching:
            plan.append((handler, self._handler_request(event, handler)))
        reserved = {h.handler_id: request.task_id for h, request in plan}
        for handler, request in plan:
            request.dependencies = [
                reserved[d] for d in handler.depends_on if d in reserved
            ]
        event.handler_tasks = {h: str(task_id) for h, task_id in reserved.items()}
        event.required_handlers = [h.handler_id for h in matching if not h.is_optional]
        event.status = EventStatus.PROCESSING if matching else EventStatus.PROCESSED
        if not matching:
            event.completed_at = self._clock()
            event.processing_time_ms = 0

        saved, created = self._events.insert_if_absent(event, self._same_key(idempotency_key))
        if not created:
            return saved
        logger.info(
            "Event received",
            extra={
                "event_id": saved.event_id,
                "event_name": event_name,
                "handlers": list(saved.handler_tasks),
            },
        )
        requests = {h.handler_id: request for h, request in plan}
        for handler in _dependency_order([h for h, _ in plan]):
            self._orchestrator.create_task(requests[handler.handler_id])
        return self._events.require(saved.event_id)

    def _rejection(
        self, definition: EventDefinition | None, payload: dict[str, Any]
    ) -> str | None:
        if definition is None:
            return "unknown event"
        if not definition.is_active:
            return "event is not active"
        if definition.payload_schema:
            try:
                jsonschema.validate(payload, definition.payload_schema)
            except jsonschema.ValidationError as e:
                return f"payload does not match schema: {e.message}"
        return None

    @staticmethod
    def _same_key(idempotency_key: str | None) -> Callable[[ProcessedEvent], bool]:
        return lambda e: idempotency_key is not None and e.idempotency_key == idempotency_key

    def _handler_request(self, event: ProcessedEvent, handler: EventHandler) -> TaskRequest:
        policy = handler.retry_policy
        return TaskRequest(
            task_id=uuid.uuid4().hex,
            task_name=f"{event.event_name}:{handler.handler_id}",
            priority=TaskPriority.MEDIUM if handler.is_async else TaskPriority.HIGH,
            queue_name=handler.queue_name,
            action=resolve_action(handler.handler_type, handler.config),
            max_retries=policy.max_retries,
            backoff_seconds=policy.backoff_ms / 1000,
            timeout_seconds=handler.timeout_ms / 1000 if handler.timeout_ms else None,
            input_data={
                "config": dict(handler.config),
                "payload": dict(event.payload),
                "event_id": event.event_id,
                "event_name": event.event_name,
            },
            origin=TaskOrigin(
                kind=OriginKind.EVENT_HANDLER,
                reference_id=event.event_id,
                handler_id=handler.handler_id,
            ),
        )

    # -- outcomes --------------------------------------------------------------------

    def on_task_finished(self, task: OrchestratedTask) -> ProcessedEvent | None:
        if task.origin.kind is not OriginKind.EVENT_HANDLER or not task.origin.reference_id:
            return None
        event_id = task.origin.reference_id
        if self._events.get(event_id) is None:
            logger.warning("Handler task for unknown event", extra={"task_id": task.id})
            return None
        return self._refresh_status(event_id)

    def _refresh_status(self, event_id: str) -> ProcessedEvent:
        now = self._clock()

        def change(e: ProcessedEvent) -> bool:
            if e.status in _FINAL_EVENT_STATUSES:
                return False
            tasks_by_handler = {h: self._tasks.get(t) for h, t in e.handler_tasks.items()}
            required = set(e.required_handlers)
            lost = [
                h
                for h, t in tasks_by_handler.items()
                if h in required
                and t is not None
                and t.status in (TaskStatus.FAILED, TaskStatus.CANCELLED)
            ]
            done = [h for h, t in tasks_by_handler.items() if t is not None and t.is_terminal]
            processed_by = sorted(
                h
                for h, t in tasks_by_handler.items()
                if t is not None and t.status is TaskStatus.COMPLETED
            )

            if lost:
                if e.status is EventStatus.DEAD_LETTER:
                    return False
                first = tasks_by_handler[lost[0]]
                e.status = EventStatus.DEAD_LETTER
                e.error_message = (
                    f"handler {lost[0]!r} did not complete: {first.last_error or 'cancelled'}"
                    if first is not None
                    else f"handler {lost[0]!r} did not complete"
                )
            elif len(done) == len(tasks_by_handler):
                e.status = EventStatus.PROCESSED
                e.error_message = None
            elif e.processed_by == processed_by:
                return False
            e.processed_by = processed_by
            if e.status in (EventStatus.PROCESSED, EventStatus.DEAD_LETTER):
                e.completed_at = now
                e.processing_time_ms = int((now - e.received_at) / timedelta(milliseconds=1))
            return True

        event, changed = self._events.mutate(event_id, change)
        if changed and event.status is EventStatus.DEAD_LETTER:
            logger.warning(
                "Event moved to dead letter",
                extra={"event_id": event.event_id, "error": event.error_message},
            )
        elif changed and event.status is EventStatus.PROCESSED:
            logger.info(
                "Event processed",
                extra={"event_id": event.event_id, "duration_ms": event.processing_time_ms},
            )
        return event

    def reconcile(self) -> int:
        """Repair events still ``processing`` after a restart.

        Handler tasks reserved on the event but never enqueued are created, and
        the status is re-derived from tasks that finished while nobody was
        listening. Returns the number of repaired events.
        """

        repaired = 0
        for event in self._events.list(lambda e: e.status is EventStatus.PROCESSING):
            missing = [
                handler_id
                for handler_id, task_id in event.handler_tasks.items()
                if self._tasks.get(task_id) is None
            ]
            if missing:
                self._enqueue_missing(event, missing)
            refreshed = self._refresh_status(event.event_id)
            if missing or refreshed.revision != event.revision:
                repaired += 1
        if repaired:
            logger.info("Reconciled events", extra={"repairs": repaired})
        return repaired

    def _enqueue_missing(self, event: ProcessedEvent, handler_ids: list[str]) -> None:
        definition = self._definitions.get(event.event_name)
        handlers = [
            h
            for h in (definition.handlers if definition is not None else [])
            if h.handler_id in handler_ids
        ]
        if len(handlers) != len(handler_ids):
            logger.warning(
                "Handlers of an in-flight event are no longer registered",
                extra={"event_id": event.event_id, "handlers": handler_ids},
            )
        for handler in _dependency_order(handlers):
            request = self._handler_request(event, handler)
            request.task_id = event.handler_tasks[handler.handler_id]
            request.dependencies = [
                event.handler_tasks[d] for d in handler.depends_on if d in event.handler_tasks
            ]
            self._orchestrator.create_task(request)

    def reprocess_dead_letter(self, event_id: str) -> ProcessedEvent:
        """Re-queue the failed handler tasks (same ids, fresh retry budget)."""

        event = self._events.require(event_id)
        if event.status is not EventStatus.DEAD_LETTER:
            raise IllegalTransitionError(
                f"only dead-lettered events can be reprocessed (event is {event.status.value})"
            )
        now = self._clock()

        def change(e: ProcessedEvent) -> bool:
            if e.status is not EventStatus.DEAD_LETTER:
                raise IllegalTransitionError(f"event {e.event_id} is {e.status.value}")
            e.status = EventStatus.PROCESSING
            e.error_message = None
            e.completed_at = None
            e.processing_time_ms = None
            e.reprocess_count += 1
            e.received_at = now
            return True

        event, _ = self._events.mutate(event_id, change)
        for task_id in event.handler_tasks.values():
            task = self._tasks.get(task_id)
            if task is not None and task.status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
                self._orchestrator.retry_task(task_id)
        logger.info("Dead-lettered event re-queued", extra={"event_id": event_id})
        return self._events.require(event_id)

    # -- queries ---------------------------------------------------------------------

    def get_event(self, event_id: str) -> ProcessedEvent:
        return self._events.require(event_id)

    def get_processed_events(
        self,
        event_name: str | None = None,
        status: EventStatus | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ProcessedEvent]:
        def matches(e: ProcessedEvent) -> bool:
            if event_name is not None and e.event_name != event_name:
                return False
            if status is not None and e.status is not status:
                return False
            return since is None or e.received_at >= since

        found = sorted(self._events.list(matches), key=lambda e: e.received_at, reverse=True)
        return found[:limit] if limit is not None else found


def _dependency_order(handlers: list[EventHandler]) -> list[EventHandler]:
    """Handlers sorted so every handler comes after the ones it depends on."""

    by_id = {h.handler_id: h for h in handlers}
    graph = {h.handler_id: [d for d in h.depends_on if d in by_id] for h in handlers}
    return [by_id[handler_id] for handler_id in graphlib.TopologicalSorter(graph).static_order()]
