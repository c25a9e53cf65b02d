"""Event types produced while a CLI request is streaming.

Each event is a typed dataclass; ``event_to_dict`` / ``dict_to_event``
convert to and from the plain dicts sent over SSE and NDJSON.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """Base event for one request's stream."""
    event_type: str = ""
    request_id: str | None = None
    # Position in the request's stream, stamped by the broadcaster.
    seq: int | None = None


@dataclass
class SessionStarted(StreamEvent):
    event_type: str = "session_started"
    provider_session_id: str = ""
    model: str | None = None


@dataclass
class TextDelta(StreamEvent):
    event_type: str = "text_delta"
    text: str = ""


@dataclass
class ToolCallStarted(StreamEvent):
    event_type: str = "tool_call_started"
    tool_id: str = ""
    tool_name: str = ""
    arguments: str = ""


@dataclass
class ToolCallResult(StreamEvent):
    event_type: str = "tool_call_result"
    tool_id: str = ""
    result: str = ""
    is_error: bool = False


@dataclass
class ImageAttached(StreamEvent):
    event_type: str = "image_attached"
    media_type: str = ""
    source: str = ""


@dataclass
class StreamError(StreamEvent):
    event_type: str = "error"
    message: str = ""
    raw: str | None = None
    fatal: bool = False


@dataclass
class TurnResult(StreamEvent):
    """Provider's final summary line; folded into EndOfStream."""
    event_type: str = "turn_result"
    is_error: bool = False
    result: str = ""
    provider_session_id: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass
class AlreadyRunning(StreamEvent):
    """Synthesized for subscribers that join an in-progress stream."""
    event_type: str = "already_running"
    events_emitted: int = 0


@dataclass
class EndOfStream(StreamEvent):
    """Terminal marker. Exactly one per request."""
    event_type: str = "end_of_stream"
    status: str = "completed"  # completed | failed | aborted
    exit_code: int | None = None
    error: str | None = None
    provider_session_id: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0


_EVENT_MAP: dict[str, type[StreamEvent]] = {
    "session_started": SessionStarted,
    "text_delta": TextDelta,
    "tool_call_started": ToolCallStarted,
    "tool_call_result": ToolCallResult,
    "image_attached": ImageAttached,
    "error": StreamError,
    "turn_result": TurnResult,
    "already_running": AlreadyRunning,
    "end_of_stream": EndOfStream,
}


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, EndOfStream)


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Wire format uses "event" for the discriminator
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> StreamEvent:
    """Convert a wire dict back to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, StreamEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
