from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from bpm_orchestrator.handlers import ActionKind
from bpm_orchestrator.store import StoredRecord, utc_now


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    backoff_ms: int = Field(default=1000, ge=0)


class EventHandler(BaseModel):
    handler_id: str
    handler_type: ActionKind = ActionKind.FUNCTION
    is_async: bool = True
    timeout_ms: int | None = Field(default=None, gt=0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    filter: str | None = None
    is_optional: bool = False
    depends_on: list[str] = Field(default_factory=list)
    queue_name: str = "default"
    config: dict[str, Any] = Field(default_factory=dict)


class EventDefinition(StoredRecord):
    event_name: str
    source: str = ""
    description: str = ""
    payload_schema: dict[str, Any] = Field(default_factory=dict)
    handlers: list[EventHandler] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)

    def handler(self, handler_id: str) -> EventHandler | None:
        for h in self.handlers:
            if h.handler_id == handler_id:
                return h
        return None


class EventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class ProcessedEvent(StoredRecord):
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event_name: str
    source: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    status: EventStatus = EventStatus.RECEIVED

    handler_tasks: dict[str, str] = Field(default_factory=dict)
    required_handlers: list[str] = Field(default_factory=list)
    processed_by: list[str] = Field(default_factory=list)
    processing_time_ms: int | None = None
    error_message: str | None = None
    reprocess_count: int = 0

    idempotency_key: str | None = None
    received_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


class AggregateRecord(StoredRecord):
    """Running counters kept by the ``aggregation`` handler type."""

    name: str
    count: int = 0
    sums: dict[str, float] = Field(default_factory=dict)
    last_event_id: str | None = None
    updated_at: datetime = Field(default_factory=utc_now)
