"""Message, tool call and image attachment models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"

    @classmethod
    def parse(cls, value: str) -> MessageRole:
        normalized = (value or "").lower().strip()
        for role in cls:
            if role.value == normalized:
                return role
        return cls.SYSTEM


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str
    result: str | None = None
    success: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "result": self.result,
            "success": self.success,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            arguments=str(data.get("arguments") or ""),
            result=data.get("result"),
            success=bool(data.get("success", True)),
        )


@dataclass(frozen=True)
class ImageAttachment:
    """An image inside a message: inline base64 data or a file reference."""
    media_type: str
    data: str | None = None  # base64
    path: str | None = None
    filename: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = {"media_type": self.media_type}
        for key in ("data", "path", "filename"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageAttachment:
        return cls(
            media_type=str(data.get("media_type") or "application/octet-stream"),
            data=data.get("data"),
            path=data.get("path"),
            filename=data.get("filename"),
        )


@dataclass(frozen=True)
class Message:
    """One normalized conversation message.

    ``extra`` carries every provider field the mapping rules did not
    consume, so a message can be re-encoded without losing data.
    """
    role: MessageRole
    content: str
    id: str = field(default_factory=_gen_id)
    timestamp: datetime | None = field(default_factory=_utcnow)
    tool_calls: tuple[ToolCall, ...] = ()
    images: tuple[ImageAttachment, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "tool_calls": [t.to_dict() for t in self.tool_calls],
            "images": [i.to_dict() for i in self.images],
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        ts = data.get("timestamp")
        timestamp = None
        if isinstance(ts, str) and ts:
            timestamp = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        return cls(
            role=MessageRole.parse(str(data.get("role") or "")),
            content=str(data.get("content") or ""),
            id=str(data.get("id") or _gen_id()),
            timestamp=timestamp,
            tool_calls=tuple(
                ToolCall.from_dict(t) for t in data.get("tool_calls") or []
                if isinstance(t, dict)
            ),
            images=tuple(
                ImageAttachment.from_dict(i) for i in data.get("images") or []
                if isinstance(i, dict)
            ),
            extra=dict(data.get("extra") or {}),
        )
