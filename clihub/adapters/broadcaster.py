"""Per-request fan-out of stream events to live subscribers.

Each request gets one channel. Every subscriber owns an unbounded
queue, so a slow viewer never blocks the supervisor or other viewers,
and events are never dropped, reordered or deduplicated. Subscribers
that join after events were published get an ``AlreadyRunning`` marker
first and only see events from their join point onward.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from ..engine.errors import RequestNotFoundError
from .events import AlreadyRunning, EndOfStream, StreamEvent, is_terminal

logger = logging.getLogger(__name__)

# Wakes a consumer whose subscription was revoked
_CLOSED = object()


class EventSubscription:
    """One viewer's registration on a request channel.

    Async-iterate it to receive events; iteration stops after the
    terminal ``EndOfStream`` event or after ``close()``.
    """

    def __init__(self, channel: RequestChannel) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._done = False
        self._closed = False

    @property
    def request_id(self) -> str:
        return self._channel.request_id

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: object) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Leave the channel. Does not affect the request or others."""
        if self._closed:
            return
        self._closed = True
        self._channel._detach(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        if is_terminal(item):
            self._done = True
            self._closed = True
            self._channel._detach(self)
        return item

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class RequestChannel:
    """Ordered, replay-free event channel for one request."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self.published = 0
        self.terminal: EndOfStream | None = None
        self._subscribers: list[EventSubscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> EventSubscription:
        sub = EventSubscription(self)
        if self.terminal is not None:
            # Finished but not yet discarded: only the terminal marker remains
            sub._deliver(self.terminal)
            return sub
        if self.published:
            sub._deliver(AlreadyRunning(
                request_id=self.request_id, events_emitted=self.published,
            ))
        self._subscribers.append(sub)
        return sub

    def publish(self, event: StreamEvent) -> None:
        if self.terminal is not None:
            logger.warning(
                "Dropping %s published after end of stream request=%s",
                event.event_type, self.request_id,
            )
            return
        event.request_id = self.request_id
        event.seq = self.published
        self.published += 1
        if isinstance(event, EndOfStream):
            self.terminal = event
        for sub in list(self._subscribers):
            sub._deliver(event)

    def _detach(self, sub: EventSubscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)


class EventBroadcaster:
    """Channel table keyed by request id.

    Only touched from the event loop thread.
    """

    def __init__(self) -> None:
        self._channels: dict[str, RequestChannel] = {}

    def open(self, request_id: str) -> RequestChannel:
        channel = self._channels.get(request_id)
        if channel is None:
            channel = RequestChannel(request_id)
            self._channels[request_id] = channel
        return channel

    def publish(self, request_id: str, event: StreamEvent) -> None:
        channel = self._channels.get(request_id)
        if channel is None:
            raise RequestNotFoundError(request_id)
        channel.publish(event)
        logger.debug(
            "Published %s seq=%s request=%s subscribers=%d",
            event.event_type, event.seq, request_id, channel.subscriber_count,
        )

    def subscribe(self, request_id: str) -> EventSubscription:
        """Join a request's stream, or raise RequestNotFoundError."""
        channel = self._channels.get(request_id)
        if channel is None:
            raise RequestNotFoundError(request_id)
        sub = channel.subscribe()
        logger.info(
            "Subscriber joined request=%s subscribers=%d late=%s",
            request_id, channel.subscriber_count, channel.published > 0,
        )
        return sub

    def unsubscribe(self, subscription: EventSubscription) -> None:
        subscription.close()

    def close(self, request_id: str) -> None:
        """Forget the channel; queued events stay with their subscribers."""
        channel = self._channels.pop(request_id, None)
        if channel is not None and channel.terminal is None:
            logger.warning("Channel closed before terminal event request=%s", request_id)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._channels
