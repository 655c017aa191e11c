"""Built-in action handlers.

Each handler is small, deterministic given its input, and idempotent where the
side effect allows it: re-running the same task must not start a second
workflow or count the same event twice.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import requests

from bpm_orchestrator.errors import HandlerError
from bpm_orchestrator.events.models import AggregateRecord
from bpm_orchestrator.handlers import (
    AGGREGATION_ACTION,
    NOTIFICATION_ACTION,
    WEBHOOK_ACTION,
    WORKFLOW_ACTION,
    HandlerRegistry,
    TaskInput,
)
from bpm_orchestrator.notifications import Notification, Notifier
from bpm_orchestrator.store import JsonCollection, utc_now
from bpm_orchestrator.workflow.models import ExecutionTrigger

if TYPE_CHECKING:
    from bpm_orchestrator.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)

_TRIGGER_BY_ORIGIN = {
    "event_handler": ExecutionTrigger.EVENT,
    "scheduled_job": ExecutionTrigger.SCHEDULE,
}


def _require(config: dict[str, Any], key: str) -> Any:
    value = config.get(key)
    if value in (None, ""):
        raise HandlerError(f"action config is missing {key!r}")
    return value


@dataclass(frozen=True, slots=True)
class ExecuteWorkflowAction:
    """Start a workflow; the task id doubles as the idempotency key."""

    engine: Callable[[], WorkflowEngine]

    def __call__(self, task_input: TaskInput) -> dict[str, Any]:
        config = task_input.config
        definition_id = _require(config, "definition_id")
        variables = {**config.get("input", {}), **task_input.payload}
        execution = self.engine().execute_workflow(
            definition_id,
            variables,
            trigger=_TRIGGER_BY_ORIGIN.get(task_input.origin_kind, ExecutionTrigger.MANUAL),
            idempotency_key=f"task:{task_input.task_id}",
        )
        return {"execution_id": execution.id, "status": execution.status.value}


@dataclass(frozen=True, slots=True)
class SendNotificationAction:
    notifier: Notifier

    def __call__(self, task_input: TaskInput) -> dict[str, Any]:
        config = task_input.config
        recipients = config.get("recipients") or []
        if isinstance(recipients, str):
            recipients = [recipients]
        try:
            body = str(config.get("body", "")).format_map(_Defaulting(task_input.payload))
        except (ValueError, IndexError) as e:
            raise HandlerError(f"bad notification body template: {e}") from e
        self.notifier.notify(
            Notification(
                channel=str(config.get("channel", "log")),
                recipients=[str(r) for r in recipients],
                subject=str(config.get("subject") or task_input.task_name),
                body=body,
                context={"task_id": task_input.task_id, "reference_id": task_input.reference_id},
            )
        )
        return {"notified": len(recipients)}


class _Defaulting(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


@dataclass(slots=True)
class PostWebhookAction:
    timeout: float = 10.0
    session: requests.Session = field(default_factory=requests.Session)

    def __call__(self, task_input: TaskInput) -> dict[str, Any]:
        config = task_input.config
        url = _require(config, "url")
        method = str(config.get("method", "POST")).upper()
        headers = config.get("headers") or {}
        body = {**config.get("body", {}), **task_input.payload}
        try:
            resp = self.session.request(
                method, url, json=body, headers=headers, timeout=self.timeout
            )
            resp.raise_for_status()
        except requests.HTTPError as e:
            code = e.response.status_code if e.response is not None else "?"
            raise HandlerError(
                f"webhook returned HTTP {code}",
                details={"url": url},
            ) from e
        except requests.RequestException as e:
            raise HandlerError(f"webhook request failed: {e}", details={"url": url}) from e
        logger.info("Webhook delivered", extra={"url": url, "status_code": resp.status_code})
        return {"status_code": resp.status_code}


@dataclass(frozen=True, slots=True)
class AggregateEventAction:
    """Count events and sum numeric payload fields into a named aggregate."""

    aggregates: JsonCollection[AggregateRecord]

    def __call__(self, task_input: TaskInput) -> dict[str, Any]:
        config = task_input.config
        name = str(config.get("aggregate") or task_input.task_name)
        fields = config.get("sum_fields") or []
        marker = task_input.reference_id or task_input.task_id
        payload = task_input.payload

        self.aggregates.insert_if_absent(AggregateRecord(name=name), lambda a: a.name == name)

        def change(record: AggregateRecord) -> bool:
            if record.last_event_id == marker:
                return False
            record.count += 1
            for f in fields:
                value = payload.get(f)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    record.sums[f] = record.sums.get(f, 0.0) + float(value)
            record.last_event_id = marker
            record.updated_at = utc_now()
            return True

        record, _ = self.aggregates.mutate(name, change)
        return {"aggregate": name, "count": record.count, "sums": dict(record.sums)}


def register_builtin_actions(
    registry: HandlerRegistry,
    *,
    engine: Callable[[], WorkflowEngine],
    notifier: Notifier,
    aggregates: JsonCollection[AggregateRecord],
    webhook_timeout: float = 10.0,
) -> None:
    registry.register(WORKFLOW_ACTION, ExecuteWorkflowAction(engine), replace=True)
    registry.register(NOTIFICATION_ACTION, SendNotificationAction(notifier), replace=True)
    registry.register(WEBHOOK_ACTION, PostWebhookAction(timeout=webhook_timeout), replace=True)
    registry.register(AGGREGATION_ACTION, AggregateEventAction(aggregates), replace=True)
