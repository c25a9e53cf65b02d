"""Result types for transcript parsing and repository queries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from clihub.engine.errors import MalformedTranscriptError
from clihub.shared.models.message import Message


@dataclass
class ParsedTranscript:
    """Messages of one session plus the problems met while parsing."""

    messages: list[Message]
    warnings: list[MalformedTranscriptError] = field(default_factory=list)
    # Session-level fields recorded by the provider (session id, cwd, ...)
    metadata: dict[str, Any] = field(default_factory=dict)

    def warning_messages(self) -> list[str]:
        return [str(w) for w in self.warnings]


@dataclass
class SearchHit:
    """One message matching a full-text query."""

    project_id: str
    session_id: str
    provider: str
    message_id: str
    role: str
    snippet: str
    score: float
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "session_id": self.session_id,
            "provider": self.provider,
            "message_id": self.message_id,
            "role": self.role,
            "snippet": self.snippet,
            "score": self.score,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
