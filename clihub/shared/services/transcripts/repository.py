"""Session repository: discovered transcripts plus archive/delete state.

discover() walks every source and caches session metadata keyed by
``project_id/session_id``; a session is re-parsed only when its source
fingerprint changes. Archive and delete flags come from the state store,
so they survive rescans.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable
from datetime import datetime

from clihub.engine.errors import SessionNotFoundError
from clihub.shared.models.message import Message
from clihub.shared.models.session import Project, Session, session_key

from .grouping import dedupe_continued, group_by_recency, sort_key
from .models import ParsedTranscript, SearchHit
from .parser import parse_transcript
from .sources import SessionFile, SessionSource
from .store import SessionStateStore

logger = logging.getLogger(__name__)

SNIPPET_RADIUS = 60


def _snippet(text: str, start: int, length: int) -> str:
    lo = max(0, start - SNIPPET_RADIUS)
    hi = min(len(text), start + length + SNIPPET_RADIUS)
    snippet = " ".join(text[lo:hi].split())
    if lo > 0:
        snippet = f"...{snippet}"
    if hi < len(text):
        snippet = f"{snippet}..."
    return snippet


class SessionRepository:
    """Query and curate sessions found by a set of sources."""

    def __init__(
        self,
        sources: Iterable[SessionSource],
        state_store: SessionStateStore | None = None,
    ) -> None:
        self._sources = list(sources)
        self._state = state_store or SessionStateStore()
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._entries: dict[str, tuple[SessionSource, SessionFile]] = {}
        self._projects: dict[str, Project] = {}

    # ── Discovery ──

    def discover(self) -> int:
        """Rescan every source; return the number of newly found sessions."""
        found: dict[str, tuple[SessionSource, SessionFile]] = {}
        for source in self._sources:
            try:
                for entry in source.iter_session_files():
                    key = session_key(entry.project_id, entry.session_id)
                    if key in found:
                        logger.warning(
                            "Duplicate session %s from %s ignored", key, entry.path,
                        )
                        continue
                    found[key] = (source, entry)
            except OSError as exc:
                logger.warning(
                    "Failed to scan %s sessions: %s", source.provider_name, exc,
                )

        new_count = 0
        with self._lock:
            for key, (source, entry) in found.items():
                try:
                    fingerprint = source.fingerprint(entry)
                except OSError as exc:
                    logger.warning("Cannot stat %s: %s", entry.path, exc)
                    continue
                known = self._sessions.get(key)
                if known is not None and known.fingerprint == fingerprint:
                    self._entries[key] = (source, entry)
                    continue
                try:
                    parsed = self._parse(source, entry)
                except OSError as exc:
                    logger.warning("Cannot read %s: %s", entry.path, exc)
                    continue
                session = source.summarize(entry, parsed)
                session.fingerprint = fingerprint
                session.archived = self._state.is_archived(entry.project_id, entry.session_id)
                session.deleted = self._state.is_deleted(entry.project_id, entry.session_id)
                if known is None:
                    new_count += 1
                self._sessions[key] = session
                self._entries[key] = (source, entry)
                self._projects.setdefault(entry.project_id, Project(
                    project_id=entry.project_id,
                    name=entry.project_name,
                    provider=source.provider_name,
                    path=entry.project_path,
                ))

            for key in set(self._sessions) - set(found):
                logger.debug("Session %s vanished from disk", key)
                self._sessions.pop(key, None)
                self._entries.pop(key, None)
            live_projects = {s.project_id for s in self._sessions.values()}
            for project_id in set(self._projects) - live_projects:
                self._projects.pop(project_id, None)

        logger.info(
            "Discovery found %d session(s), %d new", len(found), new_count,
        )
        return new_count

    def _parse(self, source: SessionSource, entry: SessionFile) -> ParsedTranscript:
        content = source.read_content(entry)
        return parse_transcript(source.format_name, content, source=str(entry.path))

    # ── Queries ──

    def _visible(self, project_id: str | None = None) -> list[Session]:
        with self._lock:
            return [
                s for s in self._sessions.values()
                if not s.deleted and (project_id is None or s.project_id == project_id)
            ]

    def list_projects(self) -> list[Project]:
        projects = []
        with self._lock:
            templates = list(self._projects.values())
        for template in templates:
            sessions = self.list_sessions(template.project_id)
            if not sessions:
                continue
            projects.append(Project(
                project_id=template.project_id,
                name=template.name,
                provider=template.provider,
                path=template.path,
                session_count=len(sessions),
                last_activity=sort_key(sessions[0]),
            ))
        projects.sort(key=lambda p: p.last_activity, reverse=True)
        return projects

    def list_sessions(self, project_id: str, include_archived: bool = False) -> list[Session]:
        """Sessions of a project, newest activity first, continuations folded."""
        sessions = [
            s for s in self._visible(project_id)
            if include_archived or not s.archived
        ]
        return dedupe_continued(sessions)

    def get_session(self, project_id: str, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_key(project_id, session_id))
        if session is None or session.deleted:
            raise SessionNotFoundError(project_id, session_id)
        return session

    def load_messages(self, project_id: str, session_id: str) -> ParsedTranscript:
        self.get_session(project_id, session_id)
        with self._lock:
            source, entry = self._entries[session_key(project_id, session_id)]
        try:
            return self._parse(source, entry)
        except FileNotFoundError as exc:
            raise SessionNotFoundError(project_id, session_id) from exc

    def search(
        self,
        query: str,
        project_id: str | None = None,
        limit: int = 50,
    ) -> list[SearchHit]:
        """Case-insensitive substring search over message text."""
        needle = query.strip()
        if not needle:
            raise ValueError("Search query must not be empty")
        pattern = re.compile(re.escape(needle), re.IGNORECASE)
        hits: list[SearchHit] = []
        for session in sorted(self._visible(project_id), key=sort_key, reverse=True):
            try:
                parsed = self.load_messages(session.project_id, session.session_id)
            except (OSError, SessionNotFoundError) as exc:
                logger.warning("Skipping %s during search: %s", session.key, exc)
                continue
            hits.extend(self._match(session, parsed.messages, pattern))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit] if limit > 0 else hits

    @staticmethod
    def _match(session: Session, messages: list[Message], pattern: re.Pattern[str]) -> list[SearchHit]:
        hits = []
        for message in messages:
            found = pattern.search(message.content)
            if found is None:
                continue
            hits.append(SearchHit(
                project_id=session.project_id,
                session_id=session.session_id,
                provider=session.provider,
                message_id=message.id,
                role=message.role.value,
                snippet=_snippet(message.content, found.start(), found.end() - found.start()),
                score=float(len(pattern.findall(message.content))),
                timestamp=message.timestamp,
            ))
        return hits

    def group_by_recency(
        self,
        project_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, list[Session]]:
        if project_id is not None:
            sessions = self.list_sessions(project_id)
        else:
            with self._lock:
                project_ids = list(self._projects)
            sessions = [s for pid in project_ids for s in self.list_sessions(pid)]
        return group_by_recency(sessions, now)

    # ── Mutations ──

    def set_archived(self, project_id: str, session_id: str, archived: bool = True) -> Session:
        session = self.get_session(project_id, session_id)
        self._state.set_archived(project_id, session_id, archived)
        session.archived = archived
        logger.info(
            "Session %s %s", session.key, "archived" if archived else "unarchived",
        )
        return session

    def delete_session(self, project_id: str, session_id: str) -> None:
        """Hide a session from every query; the transcript file is kept."""
        session = self.get_session(project_id, session_id)
        self._state.mark_deleted(project_id, session_id)
        session.deleted = True
        logger.info("Session %s deleted", session.key)
