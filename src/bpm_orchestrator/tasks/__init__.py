from bpm_orchestrator.tasks.models import (
    OrchestratedTask,
    OriginKind,
    QueueHealth,
    TaskOrigin,
    TaskPriority,
    TaskQueue,
    TaskRequest,
    TaskStatus,
    TaskType,
)
from bpm_orchestrator.tasks.orchestrator import TaskOrchestrator
from bpm_orchestrator.tasks.workers import WorkerPool

__all__ = [
    "OrchestratedTask",
    "OriginKind",
    "QueueHealth",
    "TaskOrchestrator",
    "TaskOrigin",
    "TaskPriority",
    "TaskQueue",
    "TaskRequest",
    "TaskStatus",
    "TaskType",
    "WorkerPool",
]
