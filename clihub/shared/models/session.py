"""Session and project records served by the session repository."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


def session_key(project_id: str, session_id: str) -> str:
    """Stable string key for a ``(project_id, session_id)`` pair."""
    return f"{project_id}/{session_id}"


@dataclass
class Session:
    """Metadata for one conversation, live or discovered on disk."""

    project_id: str
    session_id: str
    provider: str
    cwd: str | None = None
    created_at: datetime | None = None
    last_activity: datetime | None = None
    message_count: int = 0
    archived: bool = False
    deleted: bool = False
    title: str | None = None
    preview: str = "No preview available"
    source_path: Path | None = None
    warnings: list[str] = field(default_factory=list)
    # Assistant message ids; continued sessions share them.
    message_ids: frozenset[str] = field(default_factory=frozenset, repr=False)
    # (mtime_ns, size) of source_path when metadata was computed.
    fingerprint: tuple[int, int] | None = field(default=None, repr=False)

    @property
    def key(self) -> str:
        return session_key(self.project_id, self.session_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "session_id": self.session_id,
            "provider": self.provider,
            "cwd": self.cwd,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_activity": (
                self.last_activity.isoformat() if self.last_activity else None
            ),
            "message_count": self.message_count,
            "archived": self.archived,
            "title": self.title,
            "preview": self.preview,
            "warnings": list(self.warnings),
        }


@dataclass
class Project:
    """A group of sessions sharing a provider-defined project directory."""

    project_id: str
    name: str
    provider: str
    path: str | None = None
    session_count: int = 0
    last_activity: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "name": self.name,
            "provider": self.provider,
            "path": self.path,
            "session_count": self.session_count,
            "last_activity": (
                self.last_activity.isoformat() if self.last_activity else None
            ),
        }
