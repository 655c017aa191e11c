"""JSON-file backed record collections.

Each collection is one JSON file holding a list of records. Writes go through a
temporary file and an atomic rename so a crash never leaves a half-written file.

Every record carries a ``revision`` counter. State transitions that matter for
correctness go through :meth:`JsonCollection.update` / :meth:`replace` with the
revision the caller read; a concurrent writer makes the call fail with
:class:`ConflictError` and the caller reloads and retries. No global lock is
held across a read-modify-write cycle.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel

from bpm_orchestrator.errors import ConflictError, NotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class StoredRecord(BaseModel):
    """Base for every persisted record."""

    revision: int = 0


R = TypeVar("R", bound=StoredRecord)

DEFAULT_MUTATE_ATTEMPTS = 8


class JsonCollection(Generic[R]):
    """A list of pydantic records persisted to a single JSON file."""

    def __init__(
        self,
        path: Path,
        model: type[R],
        *,
        key: Callable[[R], str] | None = None,
    ) -> None:
        self.path = path
        self._model = model
        self._key: Callable[[R], str] = key or (lambda record: str(getattr(record, "id")))
        self._lock = threading.RLock()

    # -- raw file access -------------------------------------------------

    def _load_unlocked(self) -> dict[str, R]:
        if not self.path.exists():
            return {}
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoreUnavailableError(f"cannot read {self.path}: {e}") from e
        if not text.strip():
            return {}
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            # Refuse to treat a corrupt file as empty: the next write would lose data.
            logger.error("State file is not valid JSON", extra={"path": str(self.path)})
            raise StoreUnavailableError(f"state file {self.path} is corrupt: {e}") from e
        if not isinstance(raw, list):
            raise StoreUnavailableError(f"state file {self.path} has unexpected shape")
        records: dict[str, R] = {}
        for item in raw:
            record = self._model.model_validate(item)
            records[self._key(record)] = record
        return records

    def _save_unlocked(self, records: dict[str, R]) -> None:
        payload = [r.model_dump(mode="json") for r in records.values()]
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(
                json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
            )
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreUnavailableError(f"cannot write {self.path}: {e}") from e

    # -- reads -------------------------------------------------------------

    def key_of(self, record: R) -> str:
        return self._key(record)

    def get(self, key: str) -> R | None:
        with self._lock:
            return self._load_unlocked().get(key)

    def require(self, key: str) -> R:
        record = self.get(key)
        if record is None:
            raise NotFoundError(f"{self._model.__name__} {key!r} not found")
        return record

    def list(self, predicate: Callable[[R], bool] | None = None) -> list[R]:
        with self._lock:
            records = list(self._load_unlocked().values())
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    def find_one(self, predicate: Callable[[R], bool]) -> R | None:
        for record in self.list():
            if predicate(record):
                return record
        return None

    # -- writes ------------------------------------------------------------

    def insert(self, record: R) -> R:
        with self._lock:
            records = self._load_unlocked()
            key = self._key(record)
            if key in records:
                raise ConflictError(f"{self._model.__name__} {key!r} already exists")
            records[key] = record
            self._save_unlocked(records)
            return record

    def insert_if_absent(self, record: R, match: Callable[[R], bool]) -> tuple[R, bool]:
        """Insert unless a record matching ``match`` exists (idempotency keys).

        Returns ``(record, created)``.
        """

        with self._lock:
            records = self._load_unlocked()
            for existing in records.values():
                if match(existing):
                    return existing, False
            key = self._key(record)
            if key in records:
                return records[key], False
            records[key] = record
            self._save_unlocked(records)
            return record, True

    def replace(self, record: R, *, expected_revision: int) -> R:
        """Write ``record`` if the stored revision still equals ``expected_revision``."""

        with self._lock:
            records = self._load_unlocked()
            key = self._key(record)
            current = records.get(key)
            if current is None:
                raise NotFoundError(f"{self._model.__name__} {key!r} not found")
            if current.revision != expected_revision:
                raise ConflictError(
                    f"{self._model.__name__} {key!r} changed concurrently "
                    f"(expected revision {expected_revision}, found {current.revision})"
                )
            saved = record.model_copy(update={"revision": expected_revision + 1})
            records[key] = saved
            self._save_unlocked(records)
            return saved

    def update(self, key: str, *, expected_revision: int | None = None, **changes: object) -> R:
        """Conditional field update. ``expected_revision=None`` means unconditional."""

        with self._lock:
            current = self.require(key)
            revision = current.revision if expected_revision is None else expected_revision
            merged = current.model_copy(update=changes)
            return self.replace(merged, expected_revision=revision)

    def mutate(
        self,
        key: str,
        change: Callable[[R], bool],
        *,
        attempts: int = DEFAULT_MUTATE_ATTEMPTS,
    ) -> tuple[R, bool]:
        """Read-modify-write with optimistic retries.

        ``change`` receives a deep copy and returns True when it modified it.
        It may run more than once, so it must not have side effects outside
        the record. Returns ``(record, changed)``.
        """

        for _ in range(attempts):
            current = self.require(key)
            working = current.model_copy(deep=True)
            if not change(working):
                return current, False
            try:
                return self.replace(working, expected_revision=current.revision), True
            except ConflictError:
                logger.debug(
                    "Revision conflict; retrying",
                    extra={"collection": self.path.name, "key": key},
                )
        raise ConflictError(f"{self._model.__name__} {key!r}: too many concurrent updates")

    def delete(self, key: str) -> bool:
        with self._lock:
            records = self._load_unlocked()
            if key not in records:
                return False
            del records[key]
            self._save_unlocked(records)
            return True

    def delete_where(self, predicate: Callable[[R], bool]) -> int:
        with self._lock:
            records = self._load_unlocked()
            doomed = [k for k, r in records.items() if predicate(r)]
            for k in doomed:
                del records[k]
            if doomed:
                self._save_unlocked(records)
            return len(doomed)


class SequenceCounter:
    """Named monotonic counters persisted to a small JSON object."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def next(self, name: str) -> int:
        with self._lock:
            data: dict[str, int] = {}
            try:
                if self._path.exists():
                    raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
                    if isinstance(raw, dict):
                        data = {k: int(v) for k, v in raw.items()}
                value = data.get(name, 0) + 1
                data[name] = value
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp = self._path.with_suffix(".tmp")
                tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
                os.replace(tmp, self._path)
            except (OSError, json.JSONDecodeError, ValueError) as e:
                raise StoreUnavailableError(f"cannot update counter file {self._path}: {e}") from e
            return value
