from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from clihub import app
from clihub.shared.models.message import Message, MessageRole
from clihub.shared.services.transcripts.store import JsonlTranscriptStore


@pytest.fixture
def isolated_env(monkeypatch, tmp_path: Path) -> Path:
    for key in list(os.environ):
        if key.startswith("CLIHUB_"):
            monkeypatch.delenv(key, raising=False)
    data = tmp_path / "data"
    monkeypatch.setenv("CLIHUB_STORAGE_URL", str(data))
    monkeypatch.setenv("CLIHUB_CLAUDE_ROOT", str(tmp_path / "none" / "claude"))
    monkeypatch.setenv("CLIHUB_OPENCODE_ROOT", str(tmp_path / "none" / "opencode"))
    monkeypatch.setenv("CLIHUB_GEMINI_ROOT", str(tmp_path / "none" / "gemini"))
    JsonlTranscriptStore(data / "transcripts").append("proj-a", "sess-1", [
        Message(role=MessageRole.USER, content="Fix the flaky build", id="m1"),
        Message(role=MessageRole.ASSISTANT, content="Pinned the cache key.", id="m2"),
    ])
    return data


def _run(monkeypatch, *argv: str) -> int:
    monkeypatch.setattr(sys, "argv", ["clihub", *argv])
    with pytest.raises(SystemExit) as exc_info:
        app.main()
    return exc_info.value.code


def test_list_projects(monkeypatch, capsys, isolated_env) -> None:
    assert _run(monkeypatch, "--list") == 0
    out = capsys.readouterr().out
    assert "proj-a" in out
    assert "(1 sessions)" in out


def test_list_project_sessions_grouped(monkeypatch, capsys, isolated_env) -> None:
    assert _run(monkeypatch, "--list", "proj-a") == 0
    out = capsys.readouterr().out
    assert out.splitlines()[0] == "Today:"
    assert "sess-1  Fix the flaky build" in out


def test_search(monkeypatch, capsys, isolated_env) -> None:
    assert _run(monkeypatch, "--search", "cache") == 0
    out = capsys.readouterr().out
    assert "proj-a/sess-1 [assistant]" in out

    assert _run(monkeypatch, "--search", "nowhere") == 0
    assert "No matches." in capsys.readouterr().out


def test_bad_config_exits_2(monkeypatch, capsys, isolated_env, tmp_path: Path) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("engine: [oops\n", encoding="utf-8")
    assert _run(monkeypatch, "--config", str(bad), "--list") == 2
    assert capsys.readouterr().err.startswith("clihub: ")


def test_no_mode_prints_help(monkeypatch, capsys, isolated_env) -> None:
    assert _run(monkeypatch) == 1
    assert "--server" in capsys.readouterr().out
