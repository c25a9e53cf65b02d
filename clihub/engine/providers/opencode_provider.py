"""OpenCode CLI adapter.

Invocation:
    opencode run --format json [--model M] [--session SID]
        [--file PATH ...] -- <message>

Images are written to a private temp directory and passed by path.
OpenCode prints no final result line; a clean exit ends the turn.
"""
from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path

from ...adapters.events import (
    ImageAttached,
    SessionStarted,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallResult,
    ToolCallStarted,
)
from .base import (
    Attachment,
    ImageMode,
    ProviderAdapter,
    ProviderKind,
    SessionContext,
    text_of,
)

_FINISHED_STATES = {"completed", "error"}


def build_opencode_args(
    ctx: SessionContext,
    message: str,
    attachments: Sequence[Attachment],
    file_refs: Sequence[Path],
) -> list[str]:
    args = ["run", "--format", "json"]
    if ctx.model:
        args += ["--model", ctx.model]
    if ctx.resume_id:
        args += ["--session", ctx.resume_id]
    for ref in file_refs:
        args += ["--file", str(ref)]
    args += ["--", message]
    return args


def _error_message(error: object) -> str:
    if isinstance(error, dict):
        data = error.get("data") if isinstance(error.get("data"), dict) else {}
        return str(data.get("message") or error.get("message") or error.get("name") or "error")
    return text_of(error) or "error"


def parse_opencode_line(obj: dict) -> list[StreamEvent]:
    """Map one ``opencode run --format json`` event to stream events."""
    kind = obj.get("type")
    part = obj.get("part") if isinstance(obj.get("part"), dict) else {}

    if kind == "step_start":
        session_id = obj.get("sessionID") or part.get("sessionID")
        return [SessionStarted(provider_session_id=str(session_id))] if session_id else []

    if kind == "text":
        text = part.get("text")
        return [TextDelta(text=text)] if isinstance(text, str) and text else []

    if kind == "tool_use":
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        tool_id = str(part.get("callID") or part.get("id") or "")
        events: list[StreamEvent] = [ToolCallStarted(
            tool_id=tool_id,
            tool_name=str(part.get("tool") or "tool"),
            arguments=json.dumps(state.get("input") or {}),
        )]
        status = state.get("status")
        if status in _FINISHED_STATES:
            is_error = status == "error"
            output = state.get("error") if is_error else state.get("output")
            events.append(ToolCallResult(
                tool_id=tool_id, result=text_of(output), is_error=is_error,
            ))
        return events

    if kind == "file":
        mime = str(part.get("mime") or "")
        if mime.startswith("image/"):
            return [ImageAttached(media_type=mime, source=str(part.get("filename") or part.get("url") or ""))]
        return []

    if kind == "error":
        return [StreamError(message=_error_message(obj.get("error")))]

    return []


def opencode_adapter(command: str = "opencode") -> ProviderAdapter:
    return ProviderAdapter(
        kind=ProviderKind.OPENCODE,
        command=command,
        image_mode=ImageMode.FILE_REFERENCE,
        build_args=build_opencode_args,
        parse_line=parse_opencode_line,
        emits_result=False,
    )
