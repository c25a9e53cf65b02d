from __future__ import annotations

import json
from pathlib import Path

import pytest

from clihub.shared.models.message import Message, MessageRole
from clihub.shared.services.durable_write import append_lines, atomic_write_text
from clihub.shared.services.transcripts.store import JsonlTranscriptStore, SessionStateStore, is_safe_id


def _messages(prefix: str) -> list[Message]:
    return [
        Message(role=MessageRole.USER, content="hi", id=f"{prefix}-user"),
        Message(role=MessageRole.ASSISTANT, content="hello", id=f"{prefix}-assistant"),
    ]


def test_append_is_idempotent_per_message_id(tmp_path: Path) -> None:
    store = JsonlTranscriptStore(tmp_path)

    assert store.append("proj-a", "sess-1", _messages("r1")) == 2
    assert store.append("proj-a", "sess-1", _messages("r1")) == 0
    assert store.append("proj-a", "sess-1", _messages("r2")) == 2

    path = store.path_for("proj-a", "sess-1")
    assert path == tmp_path / "proj-a" / "sess-1.jsonl"
    assert len(path.read_text(encoding="utf-8").splitlines()) == 4
    assert [m.id for m in store.read("proj-a", "sess-1").messages] == [
        "r1-user", "r1-assistant", "r2-user", "r2-assistant",
    ]


def test_duplicate_ids_within_one_batch_are_written_once(tmp_path: Path) -> None:
    store = JsonlTranscriptStore(tmp_path)
    message = Message(role=MessageRole.USER, content="hi", id="same")
    assert store.append("proj-a", "sess-1", [message, message]) == 1


def test_read_missing_session_is_empty(tmp_path: Path) -> None:
    assert JsonlTranscriptStore(tmp_path).read("proj-a", "nope").messages == []


@pytest.mark.parametrize("bad", ["", ".", "..", "a/b", "../x", "sp ace"])
def test_unsafe_ids_are_rejected(tmp_path: Path, bad: str) -> None:
    store = JsonlTranscriptStore(tmp_path)
    with pytest.raises(ValueError):
        store.path_for(bad, "sess-1")
    with pytest.raises(ValueError):
        store.path_for("proj-a", bad)


@pytest.mark.parametrize("good", ["a", "sess-1", "ses_01H.x", "user@host", "k=v+1"])
def test_safe_ids_are_accepted(tmp_path: Path, good: str) -> None:
    assert is_safe_id(good)
    assert JsonlTranscriptStore(tmp_path).path_for("proj-a", good).name == f"{good}.jsonl"


def test_non_string_ids_are_not_safe() -> None:
    assert not is_safe_id(5)
    assert not is_safe_id(None)
    assert not is_safe_id("a\nb")


def test_state_store_persists_flags(tmp_path: Path) -> None:
    path = tmp_path / "state" / "sessions.json"
    store = SessionStateStore(path)
    store.set_archived("proj-a", "s1", True)
    store.mark_deleted("proj-a", "s2")

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {"archived": ["proj-a/s1"], "deleted": ["proj-a/s2"]}

    reloaded = SessionStateStore(path)
    assert reloaded.is_archived("proj-a", "s1")
    assert reloaded.is_deleted("proj-a", "s2")
    assert not reloaded.is_archived("proj-a", "s2")

    reloaded.set_archived("proj-a", "s1", False)
    assert not SessionStateStore(path).is_archived("proj-a", "s1")


def test_corrupt_state_file_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "sessions.json"
    path.write_text("{not json", encoding="utf-8")

    store = SessionStateStore(path)
    assert not store.is_archived("proj-a", "s1")
    store.set_archived("proj-a", "s1", True)
    assert json.loads(path.read_text(encoding="utf-8"))["archived"] == ["proj-a/s1"]


def test_memory_state_store_writes_nothing(tmp_path: Path) -> None:
    store = SessionStateStore()
    store.set_archived("proj-a", "s1", True)
    assert store.is_archived("proj-a", "s1")
    assert list(tmp_path.iterdir()) == []


def test_atomic_write_replaces_without_temp_leftovers(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "file.json"
    atomic_write_text(target, "one")
    atomic_write_text(target, "two")

    assert target.read_text(encoding="utf-8") == "two"
    assert [p.name for p in target.parent.iterdir()] == ["file.json"]


def test_append_lines_terminates_each_line(tmp_path: Path) -> None:
    target = tmp_path / "log" / "rows.jsonl"
    assert append_lines(target, ["a", "b\n"]) == 2
    assert append_lines(target, []) == 0
    assert append_lines(target, ["c"]) == 1
    assert target.read_text(encoding="utf-8") == "a\nb\nc\n"
