"""Unit tests for the JSON record store: revisions, idempotent inserts, corruption."""

from __future__ import annotations

from pathlib import Path

import pytest

from bpm_orchestrator.errors import ConflictError, NotFoundError, StoreUnavailableError
from bpm_orchestrator.store import JsonCollection, SequenceCounter, StoredRecord


class Note(StoredRecord):
    id: str
    text: str = ""


def _notes(tmp_path: Path) -> JsonCollection[Note]:
    return JsonCollection(tmp_path / "notes.json", Note)


def test_insert_get_and_persist(tmp_path: Path) -> None:
    notes = _notes(tmp_path)
    notes.insert(Note(id="a", text="hello"))

    reopened = _notes(tmp_path)
    assert reopened.require("a").text == "hello"
    assert reopened.get("missing") is None
    with pytest.raises(NotFoundError):
        reopened.require("missing")


def test_insert_rejects_duplicate_key(tmp_path: Path) -> None:
    notes = _notes(tmp_path)
    notes.insert(Note(id="a"))
    with pytest.raises(ConflictError):
        notes.insert(Note(id="a"))


def test_insert_if_absent_returns_existing_match(tmp_path: Path) -> None:
    notes = _notes(tmp_path)
    first, created = notes.insert_if_absent(Note(id="a", text="k1"), lambda n: n.text == "k1")
    second, created_again = notes.insert_if_absent(
        Note(id="b", text="k1"), lambda n: n.text == "k1"
    )

    assert created is True
    assert created_again is False
    assert second.id == first.id == "a"
    assert len(notes.list()) == 1


def test_replace_bumps_revision_and_detects_stale_writers(tmp_path: Path) -> None:
    notes = _notes(tmp_path)
    notes.insert(Note(id="a"))

    saved = notes.update("a", expected_revision=0, text="one")
    assert saved.revision == 1

    with pytest.raises(ConflictError):
        notes.update("a", expected_revision=0, text="stale")
    assert notes.require("a").text == "one"


def test_mutate_reports_whether_anything_changed(tmp_path: Path) -> None:
    notes = _notes(tmp_path)
    notes.insert(Note(id="a", text="x"))

    def append_y(n: Note) -> bool:
        n.text += "y"
        return True

    record, changed = notes.mutate("a", append_y)
    assert changed and record.text == "xy"

    record, changed = notes.mutate("a", lambda n: False)
    assert not changed and record.revision == 1


def test_delete_where(tmp_path: Path) -> None:
    notes = _notes(tmp_path)
    for key in ("a", "b", "c"):
        notes.insert(Note(id=key, text=key))

    assert notes.delete_where(lambda n: n.text in {"a", "c"}) == 2
    assert [n.id for n in notes.list()] == ["b"]
    assert notes.delete("b") is True
    assert notes.delete("b") is False


def test_corrupt_file_is_reported_not_overwritten(tmp_path: Path) -> None:
    path = tmp_path / "notes.json"
    path.write_text("{not json", encoding="utf-8")
    notes = JsonCollection(path, Note)

    with pytest.raises(StoreUnavailableError):
        notes.list()
    with pytest.raises(StoreUnavailableError):
        notes.insert(Note(id="a"))
    assert path.read_text(encoding="utf-8") == "{not json"


def test_sequence_counter_is_monotonic_and_persistent(tmp_path: Path) -> None:
    counter = SequenceCounter(tmp_path / "meta.json")
    assert [counter.next("task"), counter.next("task"), counter.next("other")] == [1, 2, 1]
    assert SequenceCounter(tmp_path / "meta.json").next("task") == 3
