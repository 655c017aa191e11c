"""Operator notifications (SLA escalations, paused jobs, notification actions)."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.store import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Notification:
    channel: str
    recipients: list[str]
    subject: str
    body: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, object]:
        return {
            "channel": self.channel,
            "recipients": list(self.recipients),
            "subject": self.subject,
            "body": self.body,
            "context": dict(self.context),
            "sent_at": utc_now().isoformat(),
        }


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LoggingNotifier:
    """Default notifier: writes every notification to the log."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.sent.append(notification)
        logger.warning(
            notification.subject,
            extra={
                "channel": notification.channel,
                "recipients": notification.recipients,
                "notification": notification.context,
            },
        )


class WebhookNotifier:
    """POSTs notifications as JSON. Delivery problems are logged, never raised."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        if not url:
            raise ValueError("webhook url is required")
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "bpm-orchestrator"})

    def notify(self, notification: Notification) -> None:
        try:
            resp = self._session.post(self._url, json=notification.to_json(), timeout=self._timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error(
                "Notification webhook failed",
                extra={"url": self._url, "subject": notification.subject, "error": str(e)},
            )

    def close(self) -> None:
        self._session.close()


class CompositeNotifier:
    def __init__(self, notifiers: Sequence[Notifier]) -> None:
        self._notifiers = list(notifiers)

    def notify(self, notification: Notification) -> None:
        for notifier in self._notifiers:
            notifier.notify(notification)


def build_notifier(settings: OrchestratorSettings) -> Notifier:
    if not settings.notify_webhook_url:
        return LoggingNotifier()
    return CompositeNotifier(
        [
            LoggingNotifier(),
            WebhookNotifier(
                settings.notify_webhook_url, timeout=settings.webhook_timeout_seconds
            ),
        ]
    )
