"""Claude Code JSONL transcript rows.

Each line is one event. ``user`` / ``assistant`` rows carry a
``message`` whose ``content`` is a string or a list of blocks; a user
row holding only ``tool_result`` blocks becomes a TOOL message. Other
row types (summary, file-history-snapshot, ...) are not messages.

Block order is kept in the message's private layout so thinking and
other unmapped blocks are written back where they were.
"""

from __future__ import annotations

import json
from typing import Any

from clihub.shared.models.message import ImageAttachment, Message, MessageRole, ToolCall

from ..normalize import (
    PRIVATE_KEY,
    coerce_text,
    deep_merge,
    load_arguments,
    parse_timestamp,
    split_fields,
    to_iso,
)
from .base import TranscriptFormat

_ROW_KEYS = {"type", "uuid", "timestamp", "message"}
_SYSTEM_ROW_KEYS = {"type", "uuid", "timestamp", "content"}
_MESSAGE_KEYS = {"role", "content"}
_TEXT_KEYS = {"type", "text"}
_IMAGE_KEYS = {"type", "source"}
_TOOL_USE_KEYS = {"type", "id", "name", "input"}
_TOOL_RESULT_KEYS = {"type", "tool_use_id", "content", "is_error"}
_METADATA_KEYS = ("sessionId", "cwd", "version", "gitBranch")
_TEXT_SEPARATOR = "\n\n"


class _Blocks:
    """Accumulates one message's content blocks."""

    def __init__(self) -> None:
        self.texts: list[str] = []
        self.images: list[ImageAttachment] = []
        self.tools: list[ToolCall] = []
        self.layout: list[dict] = []
        self.has_results = False

    def add(self, block: Any) -> None:
        if not isinstance(block, dict):
            self.layout.append({"kind": "raw", "block": block})
            return
        btype = block.get("type")
        if btype == "text" and isinstance(block.get("text"), str):
            self.texts.append(block["text"])
            self._entry("text", block, _TEXT_KEYS)
        elif btype == "image" and isinstance(block.get("source"), dict):
            self._add_image(block)
        elif btype == "tool_use":
            self.tools.append(ToolCall(
                id=str(block.get("id") or ""),
                name=str(block.get("name") or "tool"),
                arguments=json.dumps(block.get("input") or {}, ensure_ascii=False),
            ))
            self._entry("tool", block, _TOOL_USE_KEYS)
        elif btype == "tool_result":
            self.has_results = True
            self.tools.append(ToolCall(
                id=str(block.get("tool_use_id") or ""),
                name="",
                arguments="",
                result=coerce_text(block.get("content")),
                success=not bool(block.get("is_error")),
            ))
            self._entry("tool", block, _TOOL_RESULT_KEYS)
        else:
            self.layout.append({"kind": "raw", "block": block})

    def _add_image(self, block: dict) -> None:
        source = block["source"]
        inline = source.get("type") == "base64"
        source_known = {"type", "data", "url"} | ({"media_type"} if inline else set())
        _, source_extra = split_fields(source, source_known)
        self.images.append(ImageAttachment(
            media_type=str(source.get("media_type") or "image/png"),
            data=source.get("data") if inline else None,
            path=None if inline else source.get("url"),
        ))
        entry = self._entry("image", block, _IMAGE_KEYS)
        if source_extra:
            entry["extra"]["source"] = source_extra

    def _entry(self, kind: str, block: dict, known: set[str]) -> dict:
        _, leftover = split_fields(block, known)
        entry = {"kind": kind, "extra": leftover}
        self.layout.append(entry)
        return entry

    def private(self) -> dict[str, Any]:
        private: dict[str, Any] = {"layout": self.layout}
        if len(self.texts) > 1:
            private["texts"] = self.texts
        return private


def decode_row(row: dict, line_no: int) -> Message | None:
    row_type = row.get("type")
    timestamp = parse_timestamp(row.get("timestamp"))

    if row_type == "system":
        content = row.get("content")
        if not isinstance(content, str) or not content:
            return None
        _, extra = split_fields(row, _SYSTEM_ROW_KEYS)
        return Message(
            role=MessageRole.SYSTEM,
            content=content,
            id=str(row.get("uuid") or f"line-{line_no}"),
            timestamp=timestamp,
            extra=extra,
        )

    if row_type not in ("user", "assistant"):
        return None
    message = row.get("message")
    if not isinstance(message, dict):
        return None

    _, extra = split_fields(row, _ROW_KEYS)
    _, message_extra = split_fields(message, _MESSAGE_KEYS)
    if message_extra:
        extra["message"] = message_extra

    content = message.get("content")
    blocks = _Blocks()
    if isinstance(content, str):
        text = content
        extra[PRIVATE_KEY] = {"content_str": True}
    elif isinstance(content, list):
        for block in content:
            blocks.add(block)
        text = _TEXT_SEPARATOR.join(blocks.texts)
        extra[PRIVATE_KEY] = blocks.private()
    else:
        text = coerce_text(content)

    if row_type == "assistant":
        role = MessageRole.ASSISTANT
    elif blocks.has_results and not text and not blocks.images:
        role = MessageRole.TOOL
    else:
        role = MessageRole.USER

    return Message(
        role=role,
        content=text,
        id=str(row.get("uuid") or message.get("id") or f"line-{line_no}"),
        timestamp=timestamp,
        tool_calls=tuple(blocks.tools),
        images=tuple(blocks.images),
        extra=extra,
    )


def _encode_image(image: ImageAttachment) -> dict:
    if image.data is not None:
        source = {"type": "base64", "media_type": image.media_type, "data": image.data}
    else:
        source = {"type": "url", "url": image.path}
    return {"type": "image", "source": source}


def _encode_tool(message: Message, tool: ToolCall) -> dict:
    if message.role is MessageRole.TOOL or (tool.result is not None and not tool.name):
        return {
            "type": "tool_result",
            "tool_use_id": tool.id,
            "content": tool.result or "",
            "is_error": not tool.success,
        }
    return {
        "type": "tool_use",
        "id": tool.id,
        "name": tool.name,
        "input": load_arguments(tool.arguments),
    }


def _encode_blocks(message: Message, private: dict[str, Any]) -> list[Any]:
    layout = private.get("layout")
    if layout is None:
        layout = [{"kind": "text"}] if message.content else []
        layout.extend({"kind": "image"} for _ in message.images)
        layout.extend({"kind": "tool"} for _ in message.tool_calls)

    texts = private.get("texts")
    if not texts or _TEXT_SEPARATOR.join(texts) != message.content:
        texts = [message.content]
    text_parts = iter(texts)
    images = iter(message.images)
    tools = iter(message.tool_calls)
    text_written = False

    blocks: list[Any] = []
    for entry in layout:
        kind = entry.get("kind")
        extra = entry.get("extra") or {}
        if kind == "raw":
            blocks.append(entry.get("block"))
        elif kind == "text":
            text_written = True
            blocks.append(deep_merge({"type": "text", "text": next(text_parts, "")}, extra))
        elif kind == "image":
            image = next(images, None)
            if image is not None:
                blocks.append(deep_merge(_encode_image(image), extra))
        elif kind == "tool":
            tool = next(tools, None)
            if tool is not None:
                blocks.append(deep_merge(_encode_tool(message, tool), extra))

    if not text_written and message.content:
        blocks.insert(0, {"type": "text", "text": message.content})
    blocks.extend(_encode_image(image) for image in images)
    blocks.extend(_encode_tool(message, tool) for tool in tools)
    return blocks


def encode_message(message: Message) -> dict:
    if message.role is MessageRole.SYSTEM:
        row = {
            "type": "system",
            "uuid": message.id,
            "timestamp": to_iso(message.timestamp),
            "content": message.content,
        }
        return deep_merge(row, message.extra)

    private = message.extra.get(PRIVATE_KEY) or {}
    content: Any
    if private.get("content_str") and not message.tool_calls and not message.images:
        content = message.content
    else:
        content = _encode_blocks(message, private)

    role = "assistant" if message.role is MessageRole.ASSISTANT else "user"
    row = {
        "type": role,
        "uuid": message.id,
        "timestamp": to_iso(message.timestamp),
        "message": {"role": role, "content": content},
    }
    return deep_merge(row, message.extra)


def collect_metadata(row: dict, metadata: dict[str, Any]) -> None:
    for key in _METADATA_KEYS:
        value = row.get(key)
        if isinstance(value, str) and value and key not in metadata:
            metadata[key] = value


CLAUDE_FORMAT = TranscriptFormat(
    name="claude",
    decode=decode_row,
    encode=encode_message,
    collect_metadata=collect_metadata,
)
