"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Services attach context
(task_id, execution_id, event_id, job_id, queue_name) through ``extra``; while
a worker runs a handler, :func:`task_log_context` stamps the same ids onto
every record the handler emits.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

_RESERVED_LOG_RECORD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}

_task_context: ContextVar[dict[str, Any] | None] = ContextVar("task_log_context", default=None)


@contextmanager
def task_log_context(**fields: Any) -> Iterator[None]:
    """Bind ``fields`` to every record logged in this context (``None`` values are dropped)."""

    outer = _task_context.get() or {}
    token = _task_context.set({**outer, **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _task_context.reset(token)


class TaskContextFilter(logging.Filter):
    """Copies the active task context onto records that do not set the same keys."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in (_task_context.get() or {}).items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are nested under ``"extra"``."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str) -> None:
    """Route the root logger to stdout as JSON at ``level``."""

    root = logging.getLogger()

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(TaskContextFilter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    # Request logs and HTTP client chatter stay at INFO or above.
    for noisy in ("urllib3", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(max(root.level, logging.INFO))
