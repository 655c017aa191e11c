"""Action handler contract and registry.

An action handler is an opaque unit of business logic. It receives a
:class:`TaskInput`, returns a JSON-serialisable dict (or ``None``) and signals
failure by raising :class:`~bpm_orchestrator.errors.HandlerError` or any other
exception. Handlers should be idempotent: a task may run more than once.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from bpm_orchestrator.errors import HandlerError, ValidationError

if TYPE_CHECKING:
    from bpm_orchestrator.tasks.models import OrchestratedTask

logger = logging.getLogger(__name__)

NOOP_ACTION = "noop"
WORKFLOW_ACTION = "workflow.execute"
NOTIFICATION_ACTION = "notification.send"
WEBHOOK_ACTION = "webhook.post"
AGGREGATION_ACTION = "event.aggregate"


class ActionKind(str, Enum):
    """What an event handler or scheduled job does when it fires."""

    FUNCTION = "function"
    WORKFLOW = "workflow"
    NOTIFICATION = "notification"
    WEBHOOK = "webhook"
    AGGREGATION = "aggregation"


def resolve_action(kind: ActionKind, config: dict[str, Any]) -> str:
    """Map an action kind to the registered handler name that implements it."""

    if kind is ActionKind.FUNCTION:
        name = config.get("function")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("function actions need a 'function' name in their config")
        return name.strip()
    if kind is ActionKind.WORKFLOW:
        return WORKFLOW_ACTION
    if kind is ActionKind.NOTIFICATION:
        return NOTIFICATION_ACTION
    if kind is ActionKind.WEBHOOK:
        return WEBHOOK_ACTION
    if kind is ActionKind.AGGREGATION:
        return AGGREGATION_ACTION
    raise ValidationError(f"unsupported action kind {kind!r}")


@dataclass(frozen=True, slots=True)
class TaskInput:
    """What a handler sees of the task it runs for."""

    task_id: str
    task_name: str
    action: str
    attempt: int
    data: dict[str, Any] = field(default_factory=dict)
    origin_kind: str = "direct"
    reference_id: str | None = None
    node_id: str | None = None

    @property
    def config(self) -> dict[str, Any]:
        value = self.data.get("config")
        return value if isinstance(value, dict) else {}

    @property
    def payload(self) -> dict[str, Any]:
        value = self.data.get("payload")
        return value if isinstance(value, dict) else {}

    @staticmethod
    def from_task(task: OrchestratedTask) -> TaskInput:
        return TaskInput(
            task_id=task.id,
            task_name=task.task_name,
            action=task.action,
            attempt=task.retry_count + 1,
            data=dict(task.input_data),
            origin_kind=task.origin.kind.value,
            reference_id=task.origin.reference_id,
            node_id=task.origin.node_id,
        )


class ActionHandler(Protocol):
    def __call__(self, task_input: TaskInput) -> dict[str, Any] | None: ...


def noop_handler(task_input: TaskInput) -> dict[str, Any] | None:
    return None


class HandlerRegistry:
    """Thread-safe name -> handler lookup used by the worker pool."""

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {NOOP_ACTION: noop_handler}
        self._lock = threading.Lock()

    def register(self, name: str, handler: ActionHandler, *, replace: bool = False) -> None:
        with self._lock:
            if name in self._handlers and not replace and name != NOOP_ACTION:
                raise ValidationError(f"handler {name!r} is already registered")
            self._handlers[name] = handler
        logger.debug("Handler registered", extra={"action": name})

    def handler(self, name: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of :meth:`register`."""

        def decorate(fn: ActionHandler) -> ActionHandler:
            self.register(name, fn)
            return fn

        return decorate

    def resolve(self, name: str) -> ActionHandler:
        with self._lock:
            found = self._handlers.get(name)
        if found is None:
            raise HandlerError(f"no handler registered for action {name!r}")
        return found

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._handlers

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)
