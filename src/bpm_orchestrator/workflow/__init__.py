from bpm_orchestrator.workflow.engine import WorkflowEngine
from bpm_orchestrator.workflow.models import (
    ActiveStep,
    ExecutionStatus,
    ExecutionTrigger,
    WorkflowExecution,
)

__all__ = [
    "ActiveStep",
    "ExecutionStatus",
    "ExecutionTrigger",
    "WorkflowEngine",
    "WorkflowExecution",
]
