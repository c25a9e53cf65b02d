"""OpenCode message rows.

OpenCode keeps a session as a tree of small JSON files (session, messages,
parts). The session sources assemble it into one message object per line
with its parts inlined::

    {"id": "msg_...", "sessionID": "ses_...", "role": "assistant",
     "time": {"created": 1718000000000}, "parts": [{"type": "text", ...}]}
"""

from __future__ import annotations

import json
from typing import Any

from clihub.shared.models.message import ImageAttachment, Message, MessageRole, ToolCall

from ..normalize import (
    PRIVATE_KEY,
    coerce_text,
    deep_merge,
    from_epoch_ms,
    load_arguments,
    split_fields,
    to_epoch_ms,
)
from .base import TranscriptFormat

_ROW_KEYS = {"id", "role", "time", "parts"}
_TEXT_KEYS = {"type", "text"}
_TOOL_KEYS = {"type", "callID", "tool", "state"}
_FILE_KEYS = {"type", "mime", "url", "filename"}


def _decode_image(part: dict) -> ImageAttachment:
    url = str(part.get("url") or "")
    data = None
    path = None
    if url.startswith("data:") and ";base64," in url:
        data = url.split(";base64,", 1)[1]
    elif url:
        path = url
    return ImageAttachment(
        media_type=str(part.get("mime")),
        data=data,
        path=path,
        filename=part.get("filename"),
    )


def _decode_tool(part: dict) -> tuple[ToolCall, dict, str | None]:
    state = part.get("state") if isinstance(part.get("state"), dict) else {}
    result_key = None
    if "output" in state:
        result_key = "output"
    elif "error" in state:
        result_key = "error"
    state_known = {"input"} | ({result_key} if result_key else set())
    _, state_leftover = split_fields(state, state_known)
    _, leftover = split_fields(part, _TOOL_KEYS)
    if state_leftover:
        leftover["state"] = state_leftover
    result = state.get(result_key) if result_key else None
    tool = ToolCall(
        id=str(part.get("callID") or part.get("id") or ""),
        name=str(part.get("tool") or "tool"),
        arguments=json.dumps(state.get("input") or {}, ensure_ascii=False),
        result=coerce_text(result) if result is not None else None,
        success=state.get("status") != "error" and result_key != "error",
    )
    return tool, leftover, result_key


def decode_row(row: dict, line_no: int) -> Message | None:
    raw_role = row.get("role")
    if not isinstance(raw_role, str) or not raw_role:
        return None
    role = MessageRole.parse(raw_role)

    _, extra = split_fields(row, _ROW_KEYS)
    time = row.get("time") if isinstance(row.get("time"), dict) else {}
    _, time_extra = split_fields(time, {"created"})
    if time_extra:
        extra["time"] = time_extra

    private: dict[str, Any] = {}
    if raw_role != role.value:
        private["role"] = raw_role

    texts: list[str] = []
    tools: list[ToolCall] = []
    images: list[ImageAttachment] = []
    layout: list[dict] = []
    for part in row.get("parts") or []:
        if not isinstance(part, dict):
            layout.append({"kind": "raw", "part": part})
            continue
        ptype = part.get("type")
        if ptype == "text" and isinstance(part.get("text"), str):
            if part["text"]:
                texts.append(part["text"])
            _, leftover = split_fields(part, _TEXT_KEYS)
            layout.append({"kind": "text", "extra": leftover})
        elif ptype == "tool":
            tool, leftover, result_key = _decode_tool(part)
            tools.append(tool)
            layout.append({"kind": "tool", "extra": leftover, "result_key": result_key})
        elif ptype == "file" and str(part.get("mime") or "").startswith("image/"):
            images.append(_decode_image(part))
            _, leftover = split_fields(part, _FILE_KEYS)
            layout.append({"kind": "image", "extra": leftover})
        else:
            layout.append({"kind": "raw", "part": part})

    content = "\n".join(texts)
    if not content and role is MessageRole.USER:
        summary = row.get("summary") if isinstance(row.get("summary"), dict) else {}
        fallback = summary.get("body") or summary.get("title")
        if isinstance(fallback, str) and fallback:
            content = fallback
            private["from_summary"] = True

    if layout:
        private["parts"] = layout
    if private:
        extra[PRIVATE_KEY] = private

    return Message(
        role=role,
        content=content,
        id=str(row.get("id") or f"line-{line_no}"),
        timestamp=from_epoch_ms(time.get("created")) if time.get("created") is not None else None,
        tool_calls=tuple(tools),
        images=tuple(images),
        extra=extra,
    )


def _encode_tool(tool: ToolCall, leftover: dict, result_key: str | None) -> dict:
    state: dict[str, Any] = {"input": load_arguments(tool.arguments)}
    if tool.result is not None:
        state[result_key or ("output" if tool.success else "error")] = tool.result
    state_leftover = leftover.get("state") or {}
    if "status" not in state_leftover:
        state["status"] = "completed" if tool.success else "error"
    part = {"type": "tool", "callID": tool.id, "tool": tool.name, "state": state}
    return deep_merge(part, leftover)


def _encode_image(image: ImageAttachment) -> dict:
    if image.data is not None:
        url = f"data:{image.media_type};base64,{image.data}"
    else:
        url = image.path or ""
    part: dict[str, Any] = {"type": "file", "mime": image.media_type, "url": url}
    if image.filename is not None:
        part["filename"] = image.filename
    return part


def encode_message(message: Message) -> dict:
    private = message.extra.get(PRIVATE_KEY) or {}
    layout = private.get("parts")
    if layout is None:
        layout = []
        if message.content:
            layout.append({"kind": "text", "extra": {}})
        layout.extend({"kind": "tool", "extra": {}} for _ in message.tool_calls)
        layout.extend({"kind": "image", "extra": {}} for _ in message.images)

    tools = iter(message.tool_calls)
    images = iter(message.images)
    text_written = bool(private.get("from_summary"))
    parts: list[Any] = []
    for entry in layout:
        kind = entry.get("kind")
        if kind == "raw":
            parts.append(entry.get("part"))
        elif kind == "text":
            # the joined text goes into the first text part
            text = "" if text_written else message.content
            text_written = True
            parts.append(deep_merge({"type": "text", "text": text}, entry.get("extra") or {}))
        elif kind == "tool":
            tool = next(tools, None)
            if tool is not None:
                parts.append(_encode_tool(tool, entry.get("extra") or {}, entry.get("result_key")))
        elif kind == "image":
            image = next(images, None)
            if image is not None:
                parts.append(deep_merge(_encode_image(image), entry.get("extra") or {}))
    if not text_written and message.content:
        parts.insert(0, {"type": "text", "text": message.content})
    parts.extend(_encode_tool(tool, {}, None) for tool in tools)
    parts.extend(_encode_image(image) for image in images)

    row: dict[str, Any] = {
        "id": message.id,
        "role": private.get("role") or message.role.value,
        "time": {"created": to_epoch_ms(message.timestamp)},
        "parts": parts,
    }
    if message.timestamp is None:
        row["time"] = {}
    return deep_merge(row, message.extra)


def collect_metadata(row: dict, metadata: dict[str, Any]) -> None:
    session_id = row.get("sessionID")
    if isinstance(session_id, str) and session_id and "sessionId" not in metadata:
        metadata["sessionId"] = session_id
    path = row.get("path")
    if isinstance(path, dict) and isinstance(path.get("cwd"), str) and "cwd" not in metadata:
        metadata["cwd"] = path["cwd"]


OPENCODE_FORMAT = TranscriptFormat(
    name="opencode",
    decode=decode_row,
    encode=encode_message,
    collect_metadata=collect_metadata,
)
