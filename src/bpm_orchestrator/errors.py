"""Error taxonomy shared by every service.

Only store unavailability is allowed to stop a background driver, and even then
the driver pauses instead of crashing. Handler failures are captured and stored
on the owning record; they never cross the orchestrator boundary as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """A single problem found while validating a definition or request."""

    code: str
    message: str
    severity: Literal["error", "warning"] = "error"
    node_id: str | None = None
    edge_id: str | None = None

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
        }
        if self.node_id is not None:
            out["node_id"] = self.node_id
        if self.edge_id is not None:
            out["edge_id"] = self.edge_id
        return out


class ValidationError(OrchestratorError):
    """Malformed definition, job, event schema or request. Nothing is scheduled."""

    def __init__(self, issues: list[ValidationIssue] | str) -> None:
        if isinstance(issues, str):
            issues = [ValidationIssue(code="invalid", message=issues)]
        self.issues = issues
        super().__init__("; ".join(issue.message for issue in issues) or "validation failed")


class HandlerError(OrchestratorError):
    """Raised by action handlers to signal a (possibly retryable) failure."""

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class TaskTimeoutError(OrchestratorError):
    """A task or job exceeded its declared timeout."""


class NotFoundError(OrchestratorError):
    """A record referenced by id does not exist."""


class IllegalTransitionError(OrchestratorError, ValueError):
    """A status change that the state machine does not allow."""


class ConflictError(OrchestratorError):
    """An optimistic compare-and-swap lost against a concurrent writer."""


class StoreUnavailableError(OrchestratorError):
    """The persistent store cannot be read or written."""


def describe_error(error: BaseException) -> str:
    """Human-readable one-liner for an error; never a stack trace."""

    message = str(error).strip()
    name = type(error).__name__
    if not message:
        return name
    if isinstance(error, OrchestratorError):
        return message
    return f"{name}: {message}"
