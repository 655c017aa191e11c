from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from bpm_orchestrator.main import main


@pytest.fixture(autouse=True)
def _cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    state = tmp_path / "state"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ORCHESTRATOR_STATE_PATH", str(state))
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    monkeypatch.delenv("ORCHESTRATOR_WORKER_COUNT", raising=False)

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield state
    root.handlers[:] = handlers
    root.setLevel(level)


def _write(path: Path, data: Any) -> Path:
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def definition_file(tmp_path: Path, linear) -> Path:
    return _write(tmp_path / "onboarding.json", linear())


def test_validate_reports_ok(definition_file: Path, capsys) -> None:
    assert main(["validate", str(definition_file)]) == 0
    assert json.loads(capsys.readouterr().out)["ok"] is True


def test_validate_rejects_broken_definition(tmp_path: Path, linear, capsys) -> None:
    raw = linear()
    raw["edges"] = []
    path = _write(tmp_path / "broken.json", raw)

    assert main(["validate", str(path)]) == 3
    report = json.loads(capsys.readouterr().out)
    assert report["ok"] is False


def test_load_start_and_drain(definition_file: Path, capsys) -> None:
    assert main(["load-definition", str(definition_file), "--activate"]) == 0
    assert "Stored onboarding v1 (active=True)" in capsys.readouterr().out

    code = main(["start-workflow", "onboarding", "--input", '{"customer": "acme"}', "--drain"])

    assert code == 0
    execution = json.loads(capsys.readouterr().out)
    assert execution["status"] == "completed"
    assert execution["variables"] == {"customer": "acme"}


def test_unknown_definition_is_an_error(capsys) -> None:
    assert main(["start-workflow", "ghost"]) == 3
    assert "no active version" in capsys.readouterr().err


def test_missing_file_is_rejected(tmp_path: Path, capsys) -> None:
    assert main(["load-definition", str(tmp_path / "missing.json")]) == 3
    assert capsys.readouterr().err.startswith("Rejected:")


def test_bad_configuration_exits_2(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setenv("ORCHESTRATOR_WORKER_COUNT", "0")

    assert main(["overview"]) == 2
    assert "Configuration error" in capsys.readouterr().err


def test_input_must_be_a_json_object() -> None:
    with pytest.raises(SystemExit) as exc:
        main(["start-workflow", "onboarding", "--input", "[1, 2]"])
    assert exc.value.code == 2


def test_events_from_the_command_line(tmp_path: Path, capsys) -> None:
    path = _write(
        tmp_path / "event.json",
        {
            "event_name": "invoice.paid",
            "handlers": [{"handler_id": "totals", "handler_type": "aggregation"}],
        },
    )
    assert main(["register-event", str(path)]) == 0
    assert "Registered event invoice.paid (1 handlers)" in capsys.readouterr().out

    code = main(["publish-event", "invoice.paid", "--payload", '{"amount": 10}', "--drain"])

    assert code == 0
    assert json.loads(capsys.readouterr().out)["status"] == "processed"


def test_jobs_from_the_command_line(tmp_path: Path, capsys) -> None:
    path = _write(
        tmp_path / "job.json",
        {
            "id": "cleanup",
            "name": "cleanup",
            "job_type": "interval",
            "schedule_expression": "1h",
            "action_type": "aggregation",
        },
    )
    assert main(["create-job", str(path)]) == 0
    assert "Created job cleanup" in capsys.readouterr().out

    assert main(["run-job", "cleanup", "--drain"]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "completed"

    assert main(["overview"]) == 0
    overview = json.loads(capsys.readouterr().out)
    assert overview["active_jobs"] == 1


def test_tick_prints_a_report(capsys) -> None:
    assert main(["tick"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["jobs_fired"] == []
