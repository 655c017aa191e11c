from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from bpm_orchestrator.conditions import ConditionEvaluator
from bpm_orchestrator.definitions.models import ProcessDefinition, definition_key
from bpm_orchestrator.definitions.validator import ValidationReport, validate
from bpm_orchestrator.errors import NotFoundError, ValidationError, ValidationIssue
from bpm_orchestrator.store import JsonCollection, utc_now

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = {"id", "version", "is_active", "activated_at", "created_at", "revision"}


def load_definition_file(path: Path) -> ProcessDefinition:
    """Parse a definition from a JSON file. Raises :class:`ValidationError`."""

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ValidationError(f"cannot read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path} is not valid JSON: {e}") from e
    return parse_definition(raw)


def parse_definition(raw: Any) -> ProcessDefinition:
    try:
        return ProcessDefinition.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            [
                ValidationIssue(
                    code="schema",
                    message=f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}",
                )
                for err in e.errors()
            ]
        ) from e


class DefinitionStore:
    """Versioned storage of process definitions.

    A version that has never been activated may be edited in place. Once a
    version has been activated it is frozen and edits produce version N+1.
    """

    def __init__(
        self,
        collection: JsonCollection[ProcessDefinition],
        evaluator: ConditionEvaluator | None = None,
    ) -> None:
        self._definitions = collection
        self._evaluator = evaluator or ConditionEvaluator()

    def validate(self, definition: ProcessDefinition) -> ValidationReport:
        return validate(definition, self._evaluator)

    def create(self, definition: ProcessDefinition) -> ProcessDefinition:
        self.validate(definition).raise_for_errors()
        if self.versions(definition.id):
            raise ValidationError(f"definition {definition.id!r} already exists")
        record = definition.model_copy(
            update={"version": 1, "is_active": False, "activated_at": None, "created_at": utc_now()}
        )
        self._definitions.insert(record)
        logger.info("Definition created", extra={"definition_id": record.id})
        return record

    def update(self, definition_id: str, changes: dict[str, Any]) -> ProcessDefinition:
        current = self.get(definition_id)
        unknown = set(changes) - set(ProcessDefinition.model_fields)
        if unknown:
            raise ValidationError(f"unknown definition fields: {', '.join(sorted(unknown))}")
        editable = {k: v for k, v in changes.items() if k not in _IMMUTABLE_FIELDS}
        candidate = parse_definition({**current.model_dump(mode="json"), **editable})
        self.validate(candidate).raise_for_errors()

        ever_activated = any(d.activated_at is not None for d in self.versions(definition_id))
        if current.activated_at is None and not ever_activated:
            saved = self._definitions.replace(candidate, expected_revision=current.revision)
            logger.info(
                "Definition updated in place",
                extra={"definition_id": definition_id, "version": saved.version},
            )
            return saved

        new_version = candidate.model_copy(
            update={
                "version": current.version + 1,
                "is_active": False,
                "activated_at": None,
                "created_at": utc_now(),
                "revision": 0,
            }
        )
        self._definitions.insert(new_version)
        logger.info(
            "Definition version created",
            extra={"definition_id": definition_id, "version": new_version.version},
        )
        return new_version

    def activate(self, definition_id: str, version: int | None = None) -> ProcessDefinition:
        target = self.get(definition_id, version)
        self.validate(target).raise_for_errors()
        for other in self.versions(definition_id):
            if other.version != target.version and other.is_active:
                self._definitions.update(
                    other.key, expected_revision=other.revision, is_active=False
                )
        activated = self._definitions.update(
            target.key,
            expected_revision=target.revision,
            is_active=True,
            activated_at=target.activated_at or utc_now(),
        )
        logger.info(
            "Definition activated",
            extra={"definition_id": definition_id, "version": activated.version},
        )
        return activated

    def deactivate(self, definition_id: str) -> ProcessDefinition:
        active = self.get_active(definition_id)
        if active is None:
            raise NotFoundError(f"definition {definition_id!r} has no active version")
        return self._definitions.update(
            active.key, expected_revision=active.revision, is_active=False
        )

    def get(self, definition_id: str, version: int | None = None) -> ProcessDefinition:
        if version is not None:
            return self._definitions.require(definition_key(definition_id, version))
        versions = self.versions(definition_id)
        if not versions:
            raise NotFoundError(f"definition {definition_id!r} not found")
        return versions[-1]

    def get_active(self, definition_id: str) -> ProcessDefinition | None:
        for definition in self.versions(definition_id):
            if definition.is_active:
                return definition
        return None

    def versions(self, definition_id: str) -> list[ProcessDefinition]:
        found = self._definitions.list(lambda d: d.id == definition_id)
        return sorted(found, key=lambda d: d.version)

    def list(self, *, active_only: bool = False) -> list[ProcessDefinition]:
        """Latest version of every definition (or only active versions)."""

        latest: dict[str, ProcessDefinition] = {}
        for definition in self._definitions.list():
            if active_only:
                if definition.is_active:
                    latest[definition.id] = definition
                continue
            seen = latest.get(definition.id)
            if seen is None or definition.version > seen.version:
                latest[definition.id] = definition
        return sorted(latest.values(), key=lambda d: d.id)
