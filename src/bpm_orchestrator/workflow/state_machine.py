from __future__ import annotations

from bpm_orchestrator.errors import IllegalTransitionError
from bpm_orchestrator.workflow.models import ExecutionStatus, WorkflowExecution

ALLOWED_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
}


def can_transition(current: ExecutionStatus, to: ExecutionStatus) -> bool:
    return to in ALLOWED_TRANSITIONS.get(current, set())


def transition(execution: WorkflowExecution, to: ExecutionStatus) -> WorkflowExecution:
    """Move ``execution`` to ``to`` in place. Raises :class:`IllegalTransitionError`."""

    if not can_transition(execution.status, to):
        raise IllegalTransitionError(
            f"Illegal transition: {execution.status.value} -> {to.value}"
        )
    execution.status = to
    return execution
