from __future__ import annotations

from unittest.mock import Mock

import pytest
import requests

from bpm_orchestrator.actions import PostWebhookAction
from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.errors import HandlerError
from bpm_orchestrator.handlers import WEBHOOK_ACTION, TaskInput
from bpm_orchestrator.notifications import (
    CompositeNotifier,
    LoggingNotifier,
    Notification,
    WebhookNotifier,
    build_notifier,
)


def _session(status_code: int = 200) -> Mock:
    session = Mock(spec=requests.Session)
    session.headers = {}
    resp = Mock(status_code=status_code)
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(response=resp)
    session.post.return_value = resp
    session.request.return_value = resp
    return session


def _notification() -> Notification:
    return Notification(
        channel="webhook",
        recipients=["ops"],
        subject="SLA breached",
        body="review is late",
        context={"execution_id": "x1"},
    )


def test_webhook_notifier_posts_json() -> None:
    session = _session()
    notifier = WebhookNotifier("https://hooks.example/ops", timeout=3, session=session)

    notifier.notify(_notification())

    [call] = session.post.call_args_list
    assert call.args == ("https://hooks.example/ops",)
    assert call.kwargs["timeout"] == 3
    body = call.kwargs["json"]
    assert body["subject"] == "SLA breached"
    assert body["recipients"] == ["ops"]
    assert body["context"] == {"execution_id": "x1"}


def test_webhook_notifier_does_not_raise_on_delivery_failure() -> None:
    session = _session()
    session.post.side_effect = requests.ConnectionError("refused")

    WebhookNotifier("https://hooks.example/ops", session=session).notify(_notification())


def test_build_notifier_adds_webhook_when_configured(tmp_path) -> None:
    plain = OrchestratorSettings(_env_file=None, state_path=tmp_path)
    assert isinstance(build_notifier(plain), LoggingNotifier)

    hooked = plain.model_copy(update={"notify_webhook_url": "https://hooks.example/ops"})
    assert isinstance(build_notifier(hooked), CompositeNotifier)


def _webhook_input(**config: object) -> TaskInput:
    return TaskInput(
        task_id="t1",
        task_name="order.created:hook",
        action=WEBHOOK_ACTION,
        attempt=1,
        data={"config": config, "payload": {"order_id": "A-1"}},
    )


def test_webhook_action_merges_body_and_payload() -> None:
    session = _session()
    action = PostWebhookAction(timeout=5, session=session)

    result = action(_webhook_input(url="https://erp.example/orders", body={"source": "bpm"}))

    assert result == {"status_code": 200}
    session.request.assert_called_once_with(
        "POST",
        "https://erp.example/orders",
        json={"source": "bpm", "order_id": "A-1"},
        headers={},
        timeout=5,
    )


def test_webhook_action_raises_handler_error_on_http_failure() -> None:
    action = PostWebhookAction(session=_session(502))

    with pytest.raises(HandlerError, match="HTTP 502"):
        action(_webhook_input(url="https://erp.example/orders"))


def test_webhook_action_requires_url() -> None:
    with pytest.raises(HandlerError, match="url"):
        PostWebhookAction(session=_session())(_webhook_input())
