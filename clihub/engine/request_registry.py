"""Process-wide table of in-flight CLI requests.

The registry is the single mutable structure shared by concurrent chat
requests. Every mutation happens under one lock with no awaits inside,
so two simultaneous ``register`` calls for the same session cannot both
succeed. An entry lives from ``register`` until ``remove``, which the
chat service calls once the request's terminal event is published.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import RequestConflictError

logger = logging.getLogger(__name__)


class RequestStatus(Enum):
    PENDING = "pending"  # registered, process not yet running
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.ABORTED}


@dataclass
class RequestHandle:
    """Live-lifecycle record for one CLI invocation."""

    request_id: str
    session_key: str
    provider: str
    created_at: float = field(default_factory=time.time)
    status: RequestStatus = RequestStatus.PENDING
    pid: int | None = None
    finished_at: float | None = None
    error: str | None = None
    provider_session_id: str | None = None
    _cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()

    def mark_running(self, pid: int | None) -> None:
        self.pid = pid
        self.status = RequestStatus.RUNNING

    def finish(self, status: RequestStatus, error: str | None = None) -> None:
        if not status.is_terminal:
            raise ValueError(f"{status} is not a terminal status")
        if self.is_terminal:
            return
        self.status = status
        self.error = error
        self.finished_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "session_key": self.session_key,
            "provider": self.provider,
            "status": self.status.value,
            "pid": self.pid,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "cancel_requested": self.cancel_requested,
            "error": self.error,
            "provider_session_id": self.provider_session_id,
        }


class RequestRegistry:
    """Maps request ids to handles; one active request per session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, RequestHandle] = {}
        self._by_session: dict[str, str] = {}

    def register(
        self,
        session_key: str,
        provider: str,
        request_id: str | None = None,
    ) -> RequestHandle:
        """Create a handle, or raise RequestConflictError if busy."""
        request_id = request_id or str(uuid.uuid4())
        with self._lock:
            active_id = self._by_session.get(session_key)
            if active_id is not None:
                active = self._handles.get(active_id)
                if (
                    active is not None
                    and active.session_key == session_key
                    and not active.is_terminal
                ):
                    raise RequestConflictError(session_key, active_id)
            existing = self._handles.get(request_id)
            if existing is not None:
                if not existing.is_terminal:
                    raise RequestConflictError(existing.session_key, request_id)
                # a reused id must not keep pointing the old session at it
                if self._by_session.get(existing.session_key) == request_id:
                    del self._by_session[existing.session_key]

            handle = RequestHandle(
                request_id=request_id,
                session_key=session_key,
                provider=provider,
            )
            self._handles[request_id] = handle
            self._by_session[session_key] = request_id
        logger.info(
            "Request registered id=%s session=%s provider=%s",
            request_id, session_key, provider,
        )
        return handle

    def cancel(self, request_id: str) -> bool:
        """Flag a request for cancellation.

        Returns False when the id is unknown or already terminal.
        """
        with self._lock:
            handle = self._handles.get(request_id)
            if handle is None or handle.is_terminal:
                return False
            handle._cancel_event.set()
        logger.info("Cancellation requested id=%s", request_id)
        return True

    def lookup(self, request_id: str) -> RequestHandle | None:
        with self._lock:
            return self._handles.get(request_id)

    def request_for_session(self, session_key: str) -> RequestHandle | None:
        with self._lock:
            request_id = self._by_session.get(session_key)
            return self._handles.get(request_id) if request_id else None

    def remove(self, request_id: str) -> RequestHandle | None:
        with self._lock:
            handle = self._handles.pop(request_id, None)
            if handle is not None and self._by_session.get(handle.session_key) == request_id:
                del self._by_session[handle.session_key]
        if handle is not None:
            logger.debug("Request removed id=%s status=%s", request_id, handle.status.value)
        return handle

    def active(self) -> list[RequestHandle]:
        with self._lock:
            return [h for h in self._handles.values() if not h.is_terminal]

    def active_count(self) -> int:
        return len(self.active())
