"""On-disk stores: native transcripts and per-session flags.

Native transcripts live at ``<root>/<project_id>/<session_id>.jsonl`` with
one ``Message.to_dict()`` per line. Session flags (archived / deleted) live
in a single JSON file so they survive repository rescans.
"""
from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Iterable
from pathlib import Path

from clihub.shared.models.message import Message
from clihub.shared.models.session import session_key
from clihub.shared.services.durable_write import append_lines, atomic_write_text

from .formats import iter_jsonl
from .models import ParsedTranscript
from .parser import parse_transcript

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9._@+=-]+$")


def is_safe_id(value: object) -> bool:
    """True for ids usable as one path component (and one URL segment)."""
    return isinstance(value, str) and value not in (".", "..") and bool(_SAFE_ID.fullmatch(value))


def _check_id(kind: str, value: str) -> str:
    if not is_safe_id(value):
        raise ValueError(f"Invalid {kind}: {value!r}")
    return value


class JsonlTranscriptStore:
    """Append-only native transcripts keyed by project and session."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, project_id: str, session_id: str) -> Path:
        return (
            self._root
            / _check_id("project id", project_id)
            / f"{_check_id('session id', session_id)}.jsonl"
        )

    def existing_ids(self, project_id: str, session_id: str) -> set[str]:
        path = self.path_for(project_id, session_id)
        if not path.exists():
            return set()
        ids: set[str] = set()
        content = path.read_text(encoding="utf-8", errors="replace")
        for _, row in iter_jsonl(content, str(path)):
            if isinstance(row, dict) and isinstance(row.get("id"), str):
                ids.add(row["id"])
        return ids

    def append(self, project_id: str, session_id: str, messages: Iterable[Message]) -> int:
        """Append messages whose ids are not already stored.

        Returns the number of messages written; rerunning with the same
        messages writes nothing.
        """
        path = self.path_for(project_id, session_id)
        with self._lock:
            present = self.existing_ids(project_id, session_id)
            lines = []
            for message in messages:
                if message.id in present:
                    continue
                present.add(message.id)
                lines.append(json.dumps(message.to_dict(), ensure_ascii=False))
            written = append_lines(path, lines)
        if written:
            logger.debug(
                "Appended %d message(s) to %s", written, path,
            )
        return written

    def read(self, project_id: str, session_id: str) -> ParsedTranscript:
        path = self.path_for(project_id, session_id)
        if not path.exists():
            return ParsedTranscript(messages=[])
        content = path.read_text(encoding="utf-8", errors="replace")
        return parse_transcript("clihub", content, source=str(path))


class SessionStateStore:
    """Archive / delete flags keyed by ``project_id/session_id``.

    With ``path=None`` the flags are kept in memory only.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._archived: set[str] = set()
        self._deleted: set[str] = set()
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "Failed to load session state from %s; starting empty: %s",
                self._path, exc,
            )
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring session state at %s: not an object", self._path)
            return
        self._archived = {k for k in data.get("archived") or [] if isinstance(k, str)}
        self._deleted = {k for k in data.get("deleted") or [] if isinstance(k, str)}
        logger.debug(
            "Loaded session state from %s (%d archived, %d deleted)",
            self._path, len(self._archived), len(self._deleted),
        )

    def _save(self) -> None:
        if self._path is None:
            return
        payload = {
            "archived": sorted(self._archived),
            "deleted": sorted(self._deleted),
        }
        atomic_write_text(self._path, json.dumps(payload, indent=2) + "\n")

    def is_archived(self, project_id: str, session_id: str) -> bool:
        return session_key(project_id, session_id) in self._archived

    def is_deleted(self, project_id: str, session_id: str) -> bool:
        return session_key(project_id, session_id) in self._deleted

    def set_archived(self, project_id: str, session_id: str, archived: bool) -> None:
        key = session_key(project_id, session_id)
        with self._lock:
            if archived:
                self._archived.add(key)
            else:
                self._archived.discard(key)
            self._save()

    def mark_deleted(self, project_id: str, session_id: str) -> None:
        with self._lock:
            self._deleted.add(session_key(project_id, session_id))
            self._save()
