"""Base interface for session sources.

A source walks one provider's on-disk layout, names the sessions it finds
and hands their transcript text to the parser.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from clihub.shared.models.message import Message, MessageRole
from clihub.shared.models.session import Session

from ..models import ParsedTranscript
from ..normalize import first_line

TITLE_LIMIT = 120
PREVIEW_LIMIT = 100
NO_PREVIEW = "No preview available"


@dataclass
class SessionFile:
    """A session located on disk, before its transcript is parsed."""

    provider: str
    project_id: str
    project_name: str
    session_id: str
    path: Path
    project_path: str | None = None
    hints: dict[str, Any] = field(default_factory=dict)


def mtime_of(path: Path) -> datetime | None:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    except OSError:
        return None


class SessionSource(ABC):
    """Discovers and reads the sessions of one provider."""

    provider_name: str
    # Transcript format used to parse read_content()
    format_name: str

    @abstractmethod
    def iter_session_files(self) -> Iterator[SessionFile]:
        """Yield every session currently on disk."""

    def read_content(self, entry: SessionFile) -> str:
        return entry.path.read_text(encoding="utf-8", errors="replace")

    def fingerprint(self, entry: SessionFile) -> tuple[int, int]:
        """Cheap change marker; an unchanged fingerprint skips re-parsing."""
        st = entry.path.stat()
        return st.st_mtime_ns, st.st_size

    def modified_at(self, entry: SessionFile) -> datetime | None:
        return mtime_of(entry.path)

    def assistant_id(self, message: Message) -> str | None:
        """Id shared by copies of the same reply across continued sessions."""
        return message.id

    def summarize(self, entry: SessionFile, parsed: ParsedTranscript) -> Session:
        """Build session metadata from a parsed transcript."""
        stamps = [m.timestamp for m in parsed.messages if m.timestamp is not None]
        created_at = min(stamps) if stamps else entry.hints.get("created_at")
        newest = max(stamps) if stamps else entry.hints.get("updated_at")
        mtime = self.modified_at(entry)
        candidates = [t for t in (newest, entry.hints.get("updated_at"), mtime) if t is not None]
        last_activity = max(candidates) if candidates else None

        title = None
        preview = NO_PREVIEW
        ids: set[str] = set()
        for message in parsed.messages:
            if title is None and message.role is MessageRole.USER:
                title = first_line(message.content, TITLE_LIMIT) or None
            if message.role is MessageRole.ASSISTANT:
                if preview == NO_PREVIEW and message.content.strip():
                    preview = message.content.strip()[:PREVIEW_LIMIT]
                assistant_id = self.assistant_id(message)
                if assistant_id:
                    ids.add(assistant_id)
        if title is None:
            title = entry.hints.get("title")

        return Session(
            project_id=entry.project_id,
            session_id=entry.session_id,
            provider=self.provider_name,
            cwd=parsed.metadata.get("cwd") or entry.project_path,
            created_at=created_at or mtime,
            last_activity=last_activity,
            message_count=len(parsed.messages),
            title=title,
            preview=preview,
            source_path=entry.path,
            warnings=parsed.warning_messages(),
            message_ids=frozenset(ids),
        )
