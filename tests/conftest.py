"""Test configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from collections.abc import Callable
from typing import Any

import pytest

from bpm_orchestrator.config import OrchestratorSettings
from bpm_orchestrator.definitions.models import ProcessDefinition
from bpm_orchestrator.handlers import HandlerRegistry
from bpm_orchestrator.notifications import LoggingNotifier
from bpm_orchestrator.runtime import AutomationEngine
from bpm_orchestrator.state import StateStore


class FakeClock:
    """A settable clock; call it like :func:`bpm_orchestrator.store.utc_now`."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 15, 6, 0, tzinfo=UTC))


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def settings(state_dir: Path) -> OrchestratorSettings:
    return OrchestratorSettings(
        _env_file=None,
        state_path=state_dir,
        log_level="DEBUG",
        worker_count=1,
        retry_backoff_seconds=0,
        default_max_retries=0,
        default_queue_capacity=10,
    )


@pytest.fixture
def store(state_dir: Path) -> StateStore:
    return StateStore(state_dir)


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def handlers() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def engine(
    settings: OrchestratorSettings,
    store: StateStore,
    notifier: LoggingNotifier,
    handlers: HandlerRegistry,
    clock: FakeClock,
) -> AutomationEngine:
    return AutomationEngine(
        settings, store=store, notifier=notifier, handlers=handlers, clock=clock
    )


def linear_definition(definition_id: str = "onboarding", **task_config: Any) -> dict[str, Any]:
    """start -> review -> end, as raw JSON. Also exposed as the ``linear`` fixture."""

    return {
        "id": definition_id,
        "name": "Onboarding",
        "nodes": [
            {"id": "start", "kind": "start"},
            {"id": "review", "kind": "task", "label": "Review", "config": dict(task_config)},
            {"id": "end", "kind": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "review"},
            {"id": "e2", "source": "review", "target": "end"},
        ],
    }


@pytest.fixture
def deploy(engine: AutomationEngine) -> Callable[[dict[str, Any]], ProcessDefinition]:
    """Store and activate a raw definition."""

    def _deploy(raw: dict[str, Any]) -> ProcessDefinition:
        created = engine.definitions.create(ProcessDefinition.model_validate(raw))
        return engine.definitions.activate(created.id)

    return _deploy


@pytest.fixture
def linear() -> Callable[..., dict[str, Any]]:
    return linear_definition
