"""Session listing helpers: continued-session dedup and recency buckets."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from clihub.shared.models.session import Session

logger = logging.getLogger(__name__)

BUCKETS = ("Today", "Yesterday", "This Week", "This Month", "Older")
_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def sort_key(session: Session) -> datetime:
    return session.last_activity or session.created_at or _EPOCH


def dedupe_continued(sessions: Iterable[Session]) -> list[Session]:
    """Drop sessions that are earlier copies of a continued conversation.

    A continued conversation starts a new session file that replays the
    old assistant replies, so the earlier session's id set is a subset of
    the later one. Largest id sets are kept first. Sessions without ids
    are never merged.
    """
    ordered = sorted(sessions, key=lambda s: len(s.message_ids), reverse=True)
    kept: list[Session] = []
    for session in ordered:
        if session.message_ids and any(
            other.message_ids and session.message_ids <= other.message_ids
            for other in kept
        ):
            continue
        kept.append(session)
    dropped = len(ordered) - len(kept)
    if dropped:
        logger.debug("Hid %d continued session(s) of %d", dropped, len(ordered))
    kept.sort(key=sort_key, reverse=True)
    return kept


def bucket_for(moment: datetime | None, now: datetime) -> str:
    if moment is None:
        return "Older"
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    today = now.astimezone(timezone.utc).date()
    day = moment.astimezone(timezone.utc).date()
    if day >= today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    if day > today - timedelta(days=7):
        return "This Week"
    if day > today - timedelta(days=30):
        return "This Month"
    return "Older"


def group_by_recency(
    sessions: Iterable[Session],
    now: datetime | None = None,
) -> dict[str, list[Session]]:
    """Bucket sessions by last activity; empty buckets are left out.

    Keys keep the Today .. Older order; each bucket is newest first.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    grouped: dict[str, list[Session]] = {name: [] for name in BUCKETS}
    for session in sorted(sessions, key=sort_key, reverse=True):
        grouped[bucket_for(session.last_activity, now)].append(session)
    return {name: items for name, items in grouped.items() if items}
