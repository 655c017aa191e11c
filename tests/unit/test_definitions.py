"""Versioned definition storage."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from bpm_orchestrator.definitions.models import ProcessDefinition
from bpm_orchestrator.definitions.registry import DefinitionStore, load_definition_file
from bpm_orchestrator.errors import NotFoundError, ValidationError
from bpm_orchestrator.state import StateStore


@pytest.fixture
def definitions(store: StateStore) -> DefinitionStore:
    return DefinitionStore(store.definitions)


def test_create_rejects_invalid_graph(definitions: DefinitionStore) -> None:
    broken = ProcessDefinition(id="p", name="P")
    with pytest.raises(ValidationError) as exc_info:
        definitions.create(broken)
    assert {issue.code for issue in exc_info.value.issues} >= {"start_count", "no_end"}
    assert definitions.list() == []


def test_create_then_duplicate(definitions: DefinitionStore, linear) -> None:
    created = definitions.create(ProcessDefinition.model_validate(linear()))
    assert created.version == 1
    assert created.is_active is False

    with pytest.raises(ValidationError):
        definitions.create(ProcessDefinition.model_validate(linear()))


def test_unactivated_version_is_edited_in_place(definitions: DefinitionStore, linear) -> None:
    definitions.create(ProcessDefinition.model_validate(linear()))

    updated = definitions.update("onboarding", {"description": "v1 draft"})

    assert updated.version == 1
    assert [d.version for d in definitions.versions("onboarding")] == [1]
    assert definitions.get("onboarding").description == "v1 draft"


def test_activated_version_is_frozen(definitions: DefinitionStore, linear) -> None:
    definitions.create(ProcessDefinition.model_validate(linear()))
    definitions.activate("onboarding")

    updated = definitions.update("onboarding", {"name": "Onboarding v2"})

    assert updated.version == 2
    assert updated.is_active is False
    assert definitions.get("onboarding", 1).name == "Onboarding"
    assert definitions.get_active("onboarding").version == 1


def test_activation_is_exclusive(definitions: DefinitionStore, linear) -> None:
    definitions.create(ProcessDefinition.model_validate(linear()))
    definitions.activate("onboarding")
    definitions.update("onboarding", {"name": "v2"})

    definitions.activate("onboarding", 2)

    active = [d.version for d in definitions.versions("onboarding") if d.is_active]
    assert active == [2]
    assert [d.version for d in definitions.list(active_only=True)] == [2]


def test_update_rejects_unknown_fields_and_invalid_graphs(
    definitions: DefinitionStore, linear
) -> None:
    definitions.create(ProcessDefinition.model_validate(linear()))

    with pytest.raises(ValidationError):
        definitions.update("onboarding", {"colour": "blue"})
    with pytest.raises(ValidationError):
        definitions.update("onboarding", {"edges": []})


def test_deactivate_and_lookups(definitions: DefinitionStore, linear) -> None:
    definitions.create(ProcessDefinition.model_validate(linear()))
    with pytest.raises(NotFoundError):
        definitions.deactivate("onboarding")
    with pytest.raises(NotFoundError):
        definitions.get("nope")

    definitions.activate("onboarding")
    assert definitions.deactivate("onboarding").is_active is False
    assert definitions.get_active("onboarding") is None


def test_load_definition_file(tmp_path: Path, linear) -> None:
    path = tmp_path / "process.json"
    path.write_text(json.dumps(linear()), encoding="utf-8")
    assert load_definition_file(path).id == "onboarding"

    path.write_text("{", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_definition_file(path)

    path.write_text(json.dumps({"id": "x"}), encoding="utf-8")
    with pytest.raises(ValidationError) as exc_info:
        load_definition_file(path)
    assert exc_info.value.issues[0].code == "schema"
