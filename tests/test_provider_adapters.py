"""Provider adapters: argument building, image handling and line parsing."""
from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest

from clihub.adapters.events import (
    ImageAttached,
    SessionStarted,
    StreamError,
    TextDelta,
    ToolCallResult,
    ToolCallStarted,
    TurnResult,
)
from clihub.engine.config import ProviderConfig
from clihub.engine.errors import (
    InvalidAttachmentError,
    UnknownProviderError,
    UnsupportedCapabilityError,
)
from clihub.engine.providers.base import (
    MAX_IMAGE_BYTES,
    MAX_IMAGES_PER_MESSAGE,
    Attachment,
    ProviderKind,
    SessionContext,
)
from clihub.engine.providers.claude_provider import claude_adapter, parse_claude_line
from clihub.engine.providers.gemini_provider import gemini_adapter, parse_gemini_line
from clihub.engine.providers.opencode_provider import opencode_adapter, parse_opencode_line
from clihub.engine.providers.registry import build_provider_registry

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def _ctx(**kwargs) -> SessionContext:
    return SessionContext(project_id="proj-a", session_id="sess-1", **kwargs)


# ── invocation ──


def test_claude_args_put_message_after_separator() -> None:
    spec = claude_adapter().build_invocation(
        _ctx(model="sonnet", resume_id="prev", permission_mode="plan", allowed_tools=["Read"]),
        "--help me",
    )
    assert spec.argv[:5] == ["claude", "-p", "--output-format", "stream-json", "--verbose"]
    assert spec.argv[-2:] == ["--", "--help me"]
    assert "--resume" in spec.argv and "prev" in spec.argv
    assert spec.argv[spec.argv.index("--permission-mode") + 1] == "plan"
    assert spec.argv[spec.argv.index("--allowedTools") + 1] == "Read"
    assert spec.stdin is None


def test_claude_rejects_unknown_permission_mode() -> None:
    with pytest.raises(UnsupportedCapabilityError):
        claude_adapter().build_invocation(_ctx(permission_mode="anything"), "hi")


def test_claude_images_go_to_stdin() -> None:
    att = Attachment(filename="shot.png", media_type="image/png", data=PNG)
    spec = claude_adapter().build_invocation(_ctx(), "", [att])

    assert "--input-format" in spec.argv
    assert "--" not in spec.argv
    payload = json.loads(spec.stdin.decode("utf-8"))
    blocks = payload["message"]["content"]
    assert blocks[0]["source"]["data"] == base64.b64encode(PNG).decode("ascii")
    assert blocks[-1] == {"type": "text", "text": "Describe this image"}
    assert spec.temp_paths == []


def test_opencode_images_are_written_to_temp_files_and_cleaned_up() -> None:
    att = Attachment(filename="my shot.png", media_type="image/png", data=PNG)
    spec = opencode_adapter().build_invocation(_ctx(resume_id="ses_1"), "look", [att])

    refs = [Path(spec.argv[i + 1]) for i, arg in enumerate(spec.argv) if arg == "--file"]
    assert len(refs) == 1
    assert refs[0].read_bytes() == PNG
    assert refs[0].name == "00-my_shot.png"
    assert spec.argv[:4] == ["opencode", "run", "--format", "json"]
    assert spec.argv[spec.argv.index("--session") + 1] == "ses_1"
    assert spec.argv[-2:] == ["--", "look"]

    spec.cleanup()
    assert not refs[0].exists()
    assert not refs[0].parent.exists()
    spec.cleanup()


def test_gemini_rejects_images_and_maps_approval_mode() -> None:
    att = Attachment(filename="a.png", media_type="image/png", data=PNG)
    with pytest.raises(UnsupportedCapabilityError):
        gemini_adapter().build_invocation(_ctx(), "hi", [att])

    spec = gemini_adapter().build_invocation(_ctx(permission_mode="bypassPermissions"), "hi")
    assert spec.argv == ["gemini", "--output-format=stream-json", "--approval-mode=yolo", "--prompt=hi"]


@pytest.mark.parametrize(
    "attachments",
    [
        [Attachment(filename="a.bmp", media_type="image/bmp", data=b"x")],
        [Attachment(filename="big.png", media_type="image/png", data=b"x" * (MAX_IMAGE_BYTES + 1))],
        [Attachment(filename=f"{i}.png", media_type="image/png", data=b"x")
         for i in range(MAX_IMAGES_PER_MESSAGE + 1)],
    ],
)
def test_invalid_attachments_rejected_before_anything_is_written(attachments) -> None:
    with pytest.raises(InvalidAttachmentError):
        opencode_adapter().build_invocation(_ctx(), "hi", attachments)


def test_missing_attachment_path_is_invalid(tmp_path: Path) -> None:
    att = Attachment(filename="gone.png", media_type="image/png", path=tmp_path / "gone.png")
    with pytest.raises(InvalidAttachmentError):
        claude_adapter().build_invocation(_ctx(), "hi", [att])


def test_overrides_replace_command_and_model() -> None:
    adapter = claude_adapter().with_overrides(command="/opt/bin/claude --debug", model="opus")
    spec = adapter.build_invocation(_ctx(), "hi")
    assert spec.argv[:2] == ["/opt/bin/claude", "--debug"]
    assert spec.argv[spec.argv.index("--model") + 1] == "opus"


def test_provider_kind_parse_is_case_insensitive() -> None:
    assert ProviderKind.parse(" Claude ") is ProviderKind.CLAUDE
    with pytest.raises(UnknownProviderError):
        ProviderKind.parse("codex")


def test_registry_applies_config_and_disables_providers() -> None:
    registry = build_provider_registry({
        "gemini": ProviderConfig(enabled=False),
        "opencode": ProviderConfig(command="oc"),
    })
    assert registry.list_names() == ["claude", "opencode"]
    assert registry.get_or_raise("opencode").command == "oc"
    assert registry.get("gemini") is None
    with pytest.raises(UnknownProviderError):
        registry.get_or_raise("gemini")
    assert registry.default_kind("OpenCode") is ProviderKind.OPENCODE


def test_registry_default_falls_back_to_claude(monkeypatch) -> None:
    monkeypatch.setattr("shutil.which", lambda _name: None)
    registry = build_provider_registry()
    assert registry.default_kind() is ProviderKind.CLAUDE
    assert registry.list_available() == []


# ── line parsing ──


def test_parse_claude_stream() -> None:
    assert parse_claude_line({"type": "system", "subtype": "init", "session_id": "s1"}) == [
        SessionStarted(provider_session_id="s1"),
    ]
    events = parse_claude_line({
        "type": "assistant",
        "message": {"content": [
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "Running it"},
            {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}},
        ]},
    })
    assert events == [
        TextDelta(text="Running it"),
        ToolCallStarted(tool_id="t1", tool_name="Bash", arguments='{"command": "ls"}'),
    ]
    results = parse_claude_line({
        "type": "user",
        "message": {"content": [
            {"type": "tool_result", "tool_use_id": "t1", "content": [{"type": "text", "text": "a.txt"}], "is_error": True},
        ]},
    })
    assert results == [ToolCallResult(tool_id="t1", result="a.txt", is_error=True)]


def test_parse_claude_result_carries_usage_and_errors() -> None:
    [ok] = parse_claude_line({
        "type": "result", "subtype": "success", "result": "done",
        "session_id": "s1", "usage": {"input_tokens": 3}, "total_cost_usd": 0.01,
    })
    assert isinstance(ok, TurnResult)
    assert ok.is_error is False
    assert ok.provider_session_id == "s1"
    assert ok.usage == {"input_tokens": 3, "total_cost_usd": 0.01}

    [bad] = parse_claude_line({"type": "result", "subtype": "error_max_turns"})
    assert bad.is_error is True
    assert bad.result == "error_max_turns"


def test_parse_opencode_events() -> None:
    assert parse_opencode_line({"type": "step_start", "sessionID": "ses_9", "part": {}}) == [
        SessionStarted(provider_session_id="ses_9"),
    ]
    assert parse_opencode_line({"type": "text", "part": {"text": "hi"}}) == [TextDelta(text="hi")]
    events = parse_opencode_line({
        "type": "tool_use",
        "part": {"callID": "c1", "tool": "bash", "state": {
            "status": "error", "input": {"cmd": "x"}, "error": "boom",
        }},
    })
    assert events == [
        ToolCallStarted(tool_id="c1", tool_name="bash", arguments='{"cmd": "x"}'),
        ToolCallResult(tool_id="c1", result="boom", is_error=True),
    ]
    running = parse_opencode_line({
        "type": "tool_use", "part": {"callID": "c2", "tool": "read", "state": {"status": "running"}},
    })
    assert len(running) == 1
    assert parse_opencode_line({"type": "file", "part": {"mime": "image/png", "filename": "a.png"}}) == [
        ImageAttached(media_type="image/png", source="a.png"),
    ]
    assert parse_opencode_line({"type": "error", "error": {"name": "X", "data": {"message": "quota"}}}) == [
        StreamError(message="quota"),
    ]
    assert parse_opencode_line({"type": "step_finish", "part": {}}) == []


def test_parse_gemini_events() -> None:
    assert parse_gemini_line({"type": "init", "session_id": "g1", "model": "flash"}) == [
        SessionStarted(provider_session_id="g1", model="flash"),
    ]
    assert parse_gemini_line({"type": "message", "role": "user", "content": "echo"}) == []
    assert parse_gemini_line({"type": "message", "role": "assistant", "content": "hey"}) == [
        TextDelta(text="hey"),
    ]
    [started] = parse_gemini_line({
        "type": "tool_use", "tool_name": "run_shell_command", "tool_id": "t", "parameters": {"command": "ls"},
    })
    assert started.tool_name == "Bash"
    [result] = parse_gemini_line({"type": "tool_result", "tool_id": "t", "status": "error", "error": "nope"})
    assert result.is_error is True
    assert result.result == "nope"
    [final] = parse_gemini_line({"type": "result", "status": "error", "error": {"message": "quota"}})
    assert final.is_error is True
    assert final.result == "quota"
