"""Unit tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from bpm_orchestrator.config import OrchestratorSettings

_ENV_VARS = (
    "LOG_LEVEL",
    "ORCHESTRATOR_STATE_PATH",
    "ORCHESTRATOR_WORKER_QUEUES",
    "ORCHESTRATOR_RETRY_BACKOFF_SECONDS",
    "ORCHESTRATOR_RETRY_BACKOFF_MAX_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_settings_defaults() -> None:
    settings = OrchestratorSettings()

    assert settings.log_level == "INFO"
    assert settings.state_path == Path("orchestrator_state")
    assert settings.parsed_worker_queues() == ["default"]
    assert settings.scheduler_failure_threshold == 3
    assert settings.sla_warning_percent == 80.0


def test_settings_loads_from_dotenv(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        "\n".join(
            [
                "LOG_LEVEL=DEBUG",
                f"ORCHESTRATOR_STATE_PATH={tmp_path / 'state'}",
                "ORCHESTRATOR_WORKER_QUEUES=default, billing ,,",
                "",
            ]
        ),
        encoding="utf-8",
    )

    settings = OrchestratorSettings()

    assert settings.log_level == "DEBUG"
    assert settings.state_path == tmp_path / "state"
    assert settings.parsed_worker_queues() == ["default", "billing"]


def test_environment_overrides_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text("LOG_LEVEL=DEBUG\n", encoding="utf-8")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")

    assert OrchestratorSettings().log_level == "WARNING"


def test_backoff_cap_must_not_be_below_base(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_RETRY_BACKOFF_SECONDS", "60")
    monkeypatch.setenv("ORCHESTRATOR_RETRY_BACKOFF_MAX_SECONDS", "10")

    with pytest.raises(ValidationError):
        OrchestratorSettings()


def test_cors_origins_are_split() -> None:
    settings = OrchestratorSettings(cors_origins="http://a.test, http://b.test")
    assert settings.parsed_cors_origins() == ["http://a.test", "http://b.test"]
