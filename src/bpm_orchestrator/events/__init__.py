from bpm_orchestrator.events.models import (
    AggregateRecord,
    EventDefinition,
    EventHandler,
    EventStatus,
    ProcessedEvent,
    RetryPolicy,
)
from bpm_orchestrator.events.processor import EventProcessor

__all__ = [
    "AggregateRecord",
    "EventDefinition",
    "EventHandler",
    "EventProcessor",
    "EventStatus",
    "ProcessedEvent",
    "RetryPolicy",
]
