"""Claude Code CLI adapter.

Invocation:
    claude -p --output-format stream-json --verbose [--model M]
        [--resume SID] [--permission-mode MODE] [--allowedTools T ...]
        -- <message>

With images the prompt moves to stdin as a single stream-json user
message holding base64 image blocks followed by the text block.
"""
from __future__ import annotations

import base64
import json
from collections.abc import Sequence
from pathlib import Path

from ...adapters.events import (
    ImageAttached,
    SessionStarted,
    StreamEvent,
    TextDelta,
    ToolCallResult,
    ToolCallStarted,
    TurnResult,
)
from ..errors import UnsupportedCapabilityError
from .base import (
    Attachment,
    ImageMode,
    ProviderAdapter,
    ProviderKind,
    SessionContext,
    content_blocks,
    text_of,
)

PERMISSION_MODES = {"default", "plan", "acceptEdits", "bypassPermissions"}
DEFAULT_IMAGE_PROMPT = "Describe this image"


def build_claude_args(
    ctx: SessionContext,
    message: str,
    attachments: Sequence[Attachment],
    file_refs: Sequence[Path],
) -> list[str]:
    args = ["-p", "--output-format", "stream-json", "--verbose"]
    if ctx.model:
        args += ["--model", ctx.model]
    if ctx.resume_id:
        args += ["--resume", ctx.resume_id]
    mode = ctx.permission_mode
    if mode and mode != "default":
        if mode not in PERMISSION_MODES:
            raise UnsupportedCapabilityError("claude", f"permission mode {mode!r}")
        args += ["--permission-mode", mode]
    for tool in ctx.allowed_tools:
        args += ["--allowedTools", tool]
    if attachments:
        args += ["--input-format", "stream-json"]
    else:
        args += ["--", message]
    return args


def build_claude_stdin(
    ctx: SessionContext,
    message: str,
    attachments: Sequence[Attachment],
) -> bytes | None:
    if not attachments:
        return None
    blocks: list[dict] = [
        {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": att.media_type,
                "data": base64.b64encode(att.read_bytes()).decode("ascii"),
            },
        }
        for att in attachments
    ]
    blocks.append({"type": "text", "text": message.strip() or DEFAULT_IMAGE_PROMPT})
    payload = {"type": "user", "message": {"role": "user", "content": blocks}}
    return (json.dumps(payload) + "\n").encode("utf-8")


def parse_claude_line(obj: dict) -> list[StreamEvent]:
    """Map one Claude stream-json object to stream events.

    Claude stream-json message types:
      system    subtype "init" carries session_id and model
      assistant message.content blocks: text / tool_use / thinking / image
      user      message.content tool_result blocks
      result    final summary (subtype success or error_*)
    """
    kind = obj.get("type")

    if kind == "system":
        session_id = obj.get("session_id")
        if obj.get("subtype") == "init" and session_id:
            return [SessionStarted(provider_session_id=str(session_id), model=obj.get("model"))]
        return []

    message = obj.get("message") if isinstance(obj.get("message"), dict) else {}

    if kind == "assistant":
        events: list[StreamEvent] = []
        for block in content_blocks(message.get("content")):
            btype = block.get("type")
            if btype == "text" and block.get("text"):
                events.append(TextDelta(text=block["text"]))
            elif btype == "tool_use":
                events.append(ToolCallStarted(
                    tool_id=str(block.get("id") or ""),
                    tool_name=str(block.get("name") or "tool"),
                    arguments=json.dumps(block.get("input") or {}),
                ))
            elif btype == "image":
                source = block.get("source")
                if not isinstance(source, dict):
                    source = {}
                events.append(ImageAttached(
                    media_type=str(source.get("media_type") or ""),
                    source=str(source.get("type") or "inline"),
                ))
        return events

    if kind == "user":
        return [
            ToolCallResult(
                tool_id=str(block.get("tool_use_id") or ""),
                result=text_of(block.get("content")),
                is_error=bool(block.get("is_error")),
            )
            for block in content_blocks(message.get("content"))
            if block.get("type") == "tool_result"
        ]

    if kind == "result":
        subtype = str(obj.get("subtype") or "")
        usage = obj.get("usage")
        usage = dict(usage) if isinstance(usage, dict) else {}
        for key in ("total_cost_usd", "duration_ms", "num_turns"):
            if key in obj:
                usage[key] = obj[key]
        return [TurnResult(
            is_error=bool(obj.get("is_error")) or subtype.startswith("error"),
            result=text_of(obj.get("result")) or subtype,
            provider_session_id=obj.get("session_id"),
            usage=usage,
        )]

    return []


def claude_adapter(command: str = "claude") -> ProviderAdapter:
    return ProviderAdapter(
        kind=ProviderKind.CLAUDE,
        command=command,
        image_mode=ImageMode.INLINE,
        build_args=build_claude_args,
        build_stdin=build_claude_stdin,
        parse_line=parse_claude_line,
        emits_result=True,
    )
