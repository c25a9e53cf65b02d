"""Gemini CLI adapter (text only).

Invocation:
    gemini --output-format=stream-json [--model M] [--resume SID]
        [--approval-mode MODE] --prompt=<message>

Gemini stream-json event types:
  init        session metadata
  message     text content (role=user or assistant)
  tool_use    tool call started
  tool_result tool call completed
  error       non-fatal warning or error
  result      final status and stats
"""
from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path

from ...adapters.events import (
    SessionStarted,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallResult,
    ToolCallStarted,
    TurnResult,
)
from .base import (
    Attachment,
    ImageMode,
    ProviderAdapter,
    ProviderKind,
    SessionContext,
    text_of,
)

# Gemini tool names mapped to the names the other CLIs use
GEMINI_TOOL_MAP = {
    "run_shell_command": "Bash",
    "read_file": "Read",
    "write_file": "Write",
    "edit_file": "Edit",
    "replace": "Edit",
    "list_directory": "Glob",
    "glob": "Glob",
    "search_file_content": "Grep",
    "search_files": "Grep",
    "web_search": "WebSearch",
    "google_web_search": "WebSearch",
    "web_fetch": "WebFetch",
}

_APPROVAL_MODES = {
    "default": None,
    "plan": None,
    "acceptEdits": "auto_edit",
    "bypassPermissions": "yolo",
}


def build_gemini_args(
    ctx: SessionContext,
    message: str,
    attachments: Sequence[Attachment],
    file_refs: Sequence[Path],
) -> list[str]:
    args = ["--output-format=stream-json"]
    if ctx.model:
        args += ["--model", ctx.model]
    if ctx.resume_id:
        args += ["--resume", ctx.resume_id]
    approval = _APPROVAL_MODES.get(ctx.permission_mode or "default")
    if approval:
        args.append(f"--approval-mode={approval}")
    args.append(f"--prompt={message}")
    return args


def parse_gemini_line(obj: dict) -> list[StreamEvent]:
    """Map one Gemini stream-json object to stream events."""
    kind = obj.get("type", "")

    if kind == "init":
        session_id = obj.get("session_id")
        if session_id:
            return [SessionStarted(provider_session_id=str(session_id), model=obj.get("model"))]
        return []

    if kind == "message":
        if obj.get("role") != "assistant":
            return []
        text = obj.get("content", "")
        return [TextDelta(text=text)] if isinstance(text, str) and text else []

    if kind == "tool_use":
        raw_name = str(obj.get("tool_name") or "")
        params = obj.get("parameters", {})
        return [ToolCallStarted(
            tool_id=str(obj.get("tool_id") or ""),
            tool_name=GEMINI_TOOL_MAP.get(raw_name, raw_name),
            arguments=json.dumps(params) if isinstance(params, dict) else text_of(params),
        )]

    if kind == "tool_result":
        status = obj.get("status", "")
        is_error = status != "success"
        output = obj.get("output")
        if is_error and output is None:
            output = obj.get("error")
        return [ToolCallResult(
            tool_id=str(obj.get("tool_id") or ""),
            result=text_of(output),
            is_error=is_error,
        )]

    if kind == "error":
        return [StreamError(message=text_of(obj.get("message")) or "error")]

    if kind == "result":
        status = obj.get("status", "success")
        error = obj.get("error")
        stats = obj.get("stats")
        return [TurnResult(
            is_error=status != "success",
            result=text_of(error.get("message") if isinstance(error, dict) else error) or str(status),
            usage=dict(stats) if isinstance(stats, dict) else {},
        )]

    return []


def gemini_adapter(command: str = "gemini") -> ProviderAdapter:
    return ProviderAdapter(
        kind=ProviderKind.GEMINI,
        command=command,
        image_mode=ImageMode.NONE,
        build_args=build_gemini_args,
        parse_line=parse_gemini_line,
        emits_result=True,
        ignored_prefixes=("Loaded cached credentials", "Data collection is disabled"),
    )
