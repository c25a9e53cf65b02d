"""Chat service: the boundary the HTTP layer talks to.

``submit_request`` validates and builds the CLI invocation, registers the
request (one active request per session), opens its event channel and
starts the supervisor as a background task. Viewers attach with
``subscribe``; ``abort`` flags the request for cancellation.

Each request also gets a ``TranscriptSink`` subscription, opened before
the process starts, that appends the exchange to the native transcript
store once the stream ends.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from ..adapters.broadcaster import EventBroadcaster, EventSubscription
from ..adapters.events import (
    EndOfStream,
    ImageAttached,
    SessionStarted,
    StreamEvent,
    TextDelta,
    ToolCallResult,
    ToolCallStarted,
)
from ..shared.models.message import ImageAttachment, Message, MessageRole, ToolCall
from ..shared.models.session import session_key
from ..shared.services.transcripts.store import JsonlTranscriptStore
from .config import EngineConfig
from .errors import RequestConflictError, RequestNotFoundError
from .providers.base import Attachment, SessionContext
from .providers.registry import ProviderRegistry, build_provider_registry
from .request_registry import RequestHandle, RequestRegistry, RequestStatus
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

_RETRY_BASE_DELAY = 0.1
# Final statuses kept for wait() after a request is gone
_FINISHED_HISTORY = 1024


class TranscriptSink:
    """Persists each finished exchange to a JsonlTranscriptStore.

    Message ids derive from the request id and the store skips ids it
    already holds, so a retried append never duplicates a message.
    """

    def __init__(self, store: JsonlTranscriptStore, retries: int = 3) -> None:
        self.store = store
        self.retries = max(1, retries)

    async def consume(
        self,
        subscription: EventSubscription,
        project_id: str,
        session_id: str,
        user_message: Message,
        provider: str,
    ) -> int:
        """Drain one request's events and persist them at end of stream.

        Returns the number of messages written.
        """
        request_id = subscription.request_id
        texts: list[str] = []
        tools: dict[str, dict[str, Any]] = {}
        images: list[ImageAttachment] = []
        provider_session_id: str | None = None
        terminal: EndOfStream | None = None

        async with subscription:
            async for event in subscription:
                if isinstance(event, TextDelta):
                    texts.append(event.text)
                elif isinstance(event, ToolCallStarted):
                    tools[event.tool_id] = {
                        "id": event.tool_id,
                        "name": event.tool_name,
                        "arguments": event.arguments,
                    }
                elif isinstance(event, ToolCallResult):
                    entry = tools.setdefault(
                        event.tool_id, {"id": event.tool_id, "name": "", "arguments": ""},
                    )
                    entry["result"] = event.result
                    entry["success"] = not event.is_error
                elif isinstance(event, ImageAttached):
                    images.append(_image_from_event(event))
                elif isinstance(event, SessionStarted):
                    provider_session_id = event.provider_session_id
                elif isinstance(event, EndOfStream):
                    terminal = event

        messages = [user_message]
        if terminal is not None and terminal.status == RequestStatus.COMPLETED.value:
            extra: dict[str, Any] = {"provider": provider}
            if terminal.provider_session_id or provider_session_id:
                extra["provider_session_id"] = terminal.provider_session_id or provider_session_id
            if terminal.usage:
                extra["usage"] = dict(terminal.usage)
            messages.append(Message(
                role=MessageRole.ASSISTANT,
                content="".join(texts),
                id=f"{request_id}-assistant",
                tool_calls=tuple(ToolCall.from_dict(t) for t in tools.values()),
                images=tuple(images),
                extra=extra,
            ))
        return await self.persist(project_id, session_id, messages)

    async def persist(self, project_id: str, session_id: str, messages: list[Message]) -> int:
        for attempt in range(1, self.retries + 1):
            try:
                return await asyncio.to_thread(
                    self.store.append, project_id, session_id, messages,
                )
            except OSError as exc:
                if attempt == self.retries:
                    logger.error(
                        "Giving up persisting %s/%s after %d attempts: %s",
                        project_id, session_id, attempt, exc,
                    )
                    raise
                delay = _RETRY_BASE_DELAY * (2 ** (attempt - 1))
                logger.warning(
                    "Persist attempt %d for %s/%s failed (%s); retrying in %.1fs",
                    attempt, project_id, session_id, exc, delay,
                )
                await asyncio.sleep(delay)
        return 0


def _image_from_event(event: ImageAttached) -> ImageAttachment:
    source = event.source or ""
    is_reference = "/" in source or "." in source
    return ImageAttachment(
        media_type=event.media_type or "application/octet-stream",
        path=source if is_reference else None,
    )


def _user_message(request_id: str, content: str, attachments: Sequence[Attachment]) -> Message:
    return Message(
        role=MessageRole.USER,
        content=content,
        id=f"{request_id}-user",
        images=tuple(
            ImageAttachment(
                media_type=att.media_type,
                path=str(att.path) if att.path is not None else None,
                filename=att.filename,
            )
            for att in attachments
        ),
    )


class ChatService:
    """Runs chat requests against provider CLIs and streams their events."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        providers: ProviderRegistry | None = None,
        registry: RequestRegistry | None = None,
        broadcaster: EventBroadcaster | None = None,
        supervisor: ProcessSupervisor | None = None,
        store: JsonlTranscriptStore | None = None,
        persist: bool = True,
    ) -> None:
        self.config = config or EngineConfig()
        self.providers = providers or build_provider_registry(self.config.providers)
        self.registry = registry or RequestRegistry()
        self.broadcaster = broadcaster or EventBroadcaster()
        self.supervisor = supervisor or ProcessSupervisor.from_config(self.config)
        self.sink: TranscriptSink | None = None
        if persist:
            self.sink = TranscriptSink(
                store or JsonlTranscriptStore(self.config.data_dir / "transcripts"),
                retries=self.config.persist_retries,
            )
        self._tasks: dict[str, asyncio.Task] = {}
        self._finished: dict[str, RequestStatus] = {}
        # Last provider-side session id per (session, provider), for resume
        self._provider_sessions: dict[tuple[str, str], str] = {}

    async def submit_request(
        self,
        project_id: str,
        session_id: str,
        content: str,
        attachments: Sequence[Attachment] = (),
        provider: str | None = None,
        cwd: str | None = None,
        resume_id: str | None = None,
        model: str | None = None,
        permission_mode: str | None = None,
        allowed_tools: Sequence[str] | None = None,
        request_id: str | None = None,
    ) -> str:
        """Start a request and return its id.

        Raises UnknownProviderError, UnsupportedCapabilityError or
        InvalidAttachmentError before anything is spawned, and
        RequestConflictError when the session is already busy.
        """
        if self.sink is not None:
            # rejects ids that cannot name a transcript file
            self.sink.store.path_for(project_id, session_id)
        kind = self.providers.default_kind(provider or self.config.default_provider or None)
        adapter = self.providers.get_or_raise(kind)
        key = session_key(project_id, session_id)
        if resume_id is None:
            resume_id = self._provider_sessions.get((key, adapter.name))

        ctx = SessionContext(
            project_id=project_id,
            session_id=session_id,
            cwd=cwd or self.config.default_cwd,
            resume_id=resume_id,
            model=model,
            permission_mode=permission_mode,
            allowed_tools=list(allowed_tools or []),
        )
        spec = adapter.build_invocation(ctx, content, attachments)
        try:
            handle = self.registry.register(key, adapter.name, request_id)
        except RequestConflictError:
            spec.cleanup()
            raise

        self.broadcaster.open(handle.request_id)
        sink_task = None
        if self.sink is not None:
            subscription = self.broadcaster.subscribe(handle.request_id)
            sink_task = asyncio.create_task(self.sink.consume(
                subscription, project_id, session_id,
                _user_message(handle.request_id, content, attachments),
                adapter.name,
            ))

        task = asyncio.create_task(
            self._run(handle, key, adapter, spec, sink_task),
            name=f"clihub-request-{handle.request_id}",
        )
        self._tasks[handle.request_id] = task
        logger.info(
            "Request %s submitted session=%s provider=%s resume=%s attachments=%d",
            handle.request_id, key, adapter.name, resume_id or "-", len(attachments),
        )
        return handle.request_id

    async def _run(self, handle: RequestHandle, key, adapter, spec, sink_task) -> RequestStatus:
        request_id = handle.request_id
        try:
            status = await self.supervisor.run(
                handle, spec, adapter,
                lambda event: self._publish(request_id, event),
            )
            if handle.provider_session_id:
                self._provider_sessions[(key, adapter.name)] = handle.provider_session_id
            return status
        finally:
            self._remember(request_id, handle.status)
            self.registry.remove(request_id)
            self.broadcaster.close(request_id)
            try:
                if sink_task is not None:
                    await self._finish_sink(request_id, sink_task)
            finally:
                # wait() falls back to _finished only once the sink is done
                self._tasks.pop(request_id, None)

    def _remember(self, request_id: str, status: RequestStatus) -> None:
        self._finished[request_id] = status
        while len(self._finished) > _FINISHED_HISTORY:
            self._finished.pop(next(iter(self._finished)))

    def _publish(self, request_id: str, event: StreamEvent) -> None:
        self.broadcaster.publish(request_id, event)

    @staticmethod
    async def _finish_sink(request_id: str, sink_task: asyncio.Task) -> None:
        try:
            written = await sink_task
        except OSError as exc:
            logger.error("Transcript for request %s not persisted: %s", request_id, exc)
        else:
            logger.debug("Request %s persisted %d message(s)", request_id, written)

    def subscribe(self, request_id: str) -> EventSubscription:
        """Attach a viewer to a running request (RequestNotFoundError if gone)."""
        return self.broadcaster.subscribe(request_id)

    def abort(self, request_id: str) -> bool:
        """Flag a request for cancellation; False if unknown or finished."""
        return self.registry.cancel(request_id)

    def active_requests(self) -> list[dict[str, Any]]:
        return [handle.to_dict() for handle in self.registry.active()]

    async def wait(self, request_id: str) -> RequestStatus:
        """Wait for a request's task to finish and return its final status."""
        task = self._tasks.get(request_id)
        if task is None:
            if request_id in self._finished:
                return self._finished[request_id]
            raise RequestNotFoundError(request_id)
        return await asyncio.shield(task)

    async def shutdown(self) -> None:
        """Cancel every in-flight request; their processes are killed."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("Shutting down %d active request(s)", len(tasks))
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Request task failed during shutdown: %s", result)
