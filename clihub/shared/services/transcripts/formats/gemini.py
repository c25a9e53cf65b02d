"""Gemini CLI chat transcripts.

Gemini writes one JSON document per session::

    {"sessionId": ..., "projectHash": ..., "startTime": ...,
     "lastUpdated": ..., "messages": [{"id", "timestamp", "type",
     "content", "toolCalls": [...], ...}]}

A stream of message objects (one per line) is accepted as well.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any

from clihub.engine.errors import MalformedTranscriptError
from clihub.shared.models.message import Message, MessageRole, ToolCall

from ..normalize import (
    PRIVATE_KEY,
    coerce_text,
    deep_merge,
    load_arguments,
    parse_timestamp,
    split_fields,
    to_iso,
)
from .base import Record, TranscriptFormat, iter_jsonl

_MESSAGE_KEYS = {"id", "timestamp", "type", "content", "toolCalls"}
_ROLE_BY_TYPE = {
    "user": MessageRole.USER,
    "gemini": MessageRole.ASSISTANT,
    "assistant": MessageRole.ASSISTANT,
    "model": MessageRole.ASSISTANT,
    "info": MessageRole.SYSTEM,
    "error": MessageRole.SYSTEM,
    "warning": MessageRole.SYSTEM,
}
_TYPE_BY_ROLE = {
    MessageRole.USER: "user",
    MessageRole.ASSISTANT: "gemini",
    MessageRole.TOOL: "gemini",
    MessageRole.SYSTEM: "info",
}


def _iter_messages(messages: list, source: str | None) -> Iterator[Record]:
    for pos, msg in enumerate(messages, start=1):
        if isinstance(msg, dict):
            yield pos, msg
        else:
            yield pos, MalformedTranscriptError(pos, "message is not a JSON object", source)


def load_document(content: str, source: str | None = None) -> tuple[dict, Iterator[Record]]:
    stripped = content.strip()
    if not stripped:
        return {}, iter(())
    try:
        doc = json.loads(stripped)
    except json.JSONDecodeError as exc:
        first = stripped.split("\n", 1)[0].strip()
        if first == "{" or "\n" not in stripped:
            # a single (pretty-printed) document, truncated or corrupt
            return {}, iter([(exc.lineno, MalformedTranscriptError(
                exc.lineno, f"invalid json: {exc.msg}", source,
            ))])
        return {}, iter_jsonl(content, source)
    if isinstance(doc, dict) and isinstance(doc.get("messages"), list):
        header = {k: v for k, v in doc.items() if k != "messages"}
        return header, _iter_messages(doc["messages"], source)
    if isinstance(doc, dict):
        # one-line JSONL stream holding a single message
        return {}, iter([(1, doc)])
    return {}, iter([(1, MalformedTranscriptError(1, "expected a JSON object", source))])


def dump_document(rows: list[dict], metadata: dict[str, Any]) -> str:
    doc = dict(metadata)
    doc["messages"] = rows
    return json.dumps(doc, ensure_ascii=False, indent=2) + "\n"


def _decode_tool(call: dict) -> tuple[ToolCall, dict, str | None]:
    # resultDisplay is the text shown to the user; the raw result then stays a leftover
    if "resultDisplay" in call:
        result_key = "resultDisplay"
    elif "result" in call:
        result_key = "result"
    else:
        result_key = None
    known = {"id", "name", "args"} | ({result_key} if result_key else set())
    _, leftover = split_fields(call, known)
    result = call.get(result_key) if result_key else None
    tool = ToolCall(
        id=str(call.get("id") or ""),
        name=str(call.get("name") or "tool"),
        arguments=json.dumps(call.get("args") or {}, ensure_ascii=False),
        result=coerce_text(result) if result is not None else None,
        success=str(call.get("status") or "success") not in {"error", "cancelled"},
    )
    return tool, leftover, result_key


def decode_message(row: dict, pos: int) -> Message | None:
    msg_type = str(row.get("type") or "").lower()
    role = _ROLE_BY_TYPE.get(msg_type)
    if role is None:
        return None

    _, extra = split_fields(row, _MESSAGE_KEYS)
    private: dict[str, Any] = {}
    if msg_type not in ("user", "gemini", "info"):
        private["type"] = msg_type

    content = row.get("content")
    if isinstance(content, list):
        private["content_parts"] = True
    tools: list[ToolCall] = []
    tool_layout: list[dict] = []
    for call in row.get("toolCalls") or []:
        if not isinstance(call, dict):
            continue
        tool, leftover, result_key = _decode_tool(call)
        tools.append(tool)
        tool_layout.append({"extra": leftover, "result_key": result_key})
    if tool_layout:
        private["tools"] = tool_layout
    if private:
        extra[PRIVATE_KEY] = private

    return Message(
        role=role,
        content=coerce_text(content),
        id=str(row.get("id") or f"msg-{pos}"),
        timestamp=parse_timestamp(row.get("timestamp")),
        tool_calls=tuple(tools),
        extra=extra,
    )


def encode_message(message: Message) -> dict:
    private = message.extra.get(PRIVATE_KEY) or {}
    tool_layout = private.get("tools") or []
    row: dict[str, Any] = {
        "id": message.id,
        "timestamp": to_iso(message.timestamp),
        "type": private.get("type") or _TYPE_BY_ROLE[message.role],
        "content": [{"text": message.content}] if private.get("content_parts") else message.content,
    }
    if message.tool_calls:
        calls = []
        for idx, tool in enumerate(message.tool_calls):
            entry = tool_layout[idx] if idx < len(tool_layout) else {}
            leftover = entry.get("extra") or {}
            call: dict[str, Any] = {
                "id": tool.id,
                "name": tool.name,
                "args": load_arguments(tool.arguments),
            }
            if "status" not in leftover and not tool.success:
                call["status"] = "error"
            if tool.result is not None:
                call[entry.get("result_key") or "result"] = tool.result
            calls.append(deep_merge(call, leftover))
        row["toolCalls"] = calls
    return deep_merge(row, message.extra)


def collect_metadata(row: dict, metadata: dict[str, Any]) -> None:
    for key in ("sessionId", "projectHash"):
        value = row.get(key)
        if isinstance(value, str) and value and key not in metadata:
            metadata[key] = value


GEMINI_FORMAT = TranscriptFormat(
    name="gemini",
    decode=decode_message,
    encode=encode_message,
    load=load_document,
    dump=dump_document,
    collect_metadata=collect_metadata,
)
