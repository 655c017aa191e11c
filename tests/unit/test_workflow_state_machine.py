"""Unit tests for the execution state machine.

These tests assert that illegal transitions fail loudly and that terminal
states are final.
"""

from __future__ import annotations

import pytest

from bpm_orchestrator.errors import IllegalTransitionError
from bpm_orchestrator.workflow.models import ExecutionStatus, WorkflowExecution
from bpm_orchestrator.workflow.state_machine import can_transition, transition


def _execution(status: ExecutionStatus) -> WorkflowExecution:
    return WorkflowExecution(definition_id="d", definition_version=1, status=status)


def test_transition_moves_execution_in_place() -> None:
    execution = _execution(ExecutionStatus.PENDING)

    assert transition(execution, ExecutionStatus.RUNNING) is execution
    assert execution.status is ExecutionStatus.RUNNING


def test_transition_rejects_illegal_transitions() -> None:
    execution = _execution(ExecutionStatus.PENDING)
    with pytest.raises(IllegalTransitionError):
        transition(execution, ExecutionStatus.COMPLETED)
    assert execution.status is ExecutionStatus.PENDING


@pytest.mark.parametrize(
    "terminal",
    [ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED],
)
def test_terminal_states_are_final(terminal: ExecutionStatus) -> None:
    assert not any(can_transition(terminal, to) for to in ExecutionStatus)
