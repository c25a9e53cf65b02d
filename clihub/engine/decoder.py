"""Incremental decoding of CLI stdout into stream events."""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from ..adapters.events import StreamEvent
from .errors import StreamDecodeError
from .providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 8 * 1024 * 1024


class StreamDecoder:
    """Turns an append-only byte stream into provider events.

    Events for a line are returned as soon as its newline arrives; only
    an unterminated tail is held back. Feeding the same bytes split at
    any boundaries yields the same events. A decoder instance is single
    use: ``finish`` ends it.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ) -> None:
        self._adapter = adapter
        self._max_line_bytes = max_line_bytes
        self._buffer = b""
        self._finished = False
        self.bytes_consumed = 0

    @property
    def pending(self) -> bytes:
        return self._buffer

    def feed(self, data: bytes) -> list[StreamEvent]:
        """Consume *data*; return events for every line it completes.

        Raises StreamDecodeError(fatal=True) when an unterminated line
        grows past max_line_bytes.
        """
        if self._finished:
            raise RuntimeError("StreamDecoder.feed() called after finish()")
        if not data:
            return []
        self.bytes_consumed += len(data)
        events, self._buffer = self._adapter.parse_stream_chunk(self._buffer + data)
        if len(self._buffer) > self._max_line_bytes:
            raw = self._buffer[:200].decode("utf-8", errors="replace")
            size = len(self._buffer)
            self._buffer = b""
            raise StreamDecodeError(
                raw,
                f"line exceeds {self._max_line_bytes} bytes ({size} buffered)",
                fatal=True,
            )
        return events

    def finish(self) -> list[StreamEvent]:
        """Flush the trailing unterminated line at end of stream."""
        if self._finished:
            return []
        self._finished = True
        tail, self._buffer = self._buffer, b""
        if not tail.strip():
            return []
        logger.debug("Flushing %d unterminated bytes at EOF", len(tail))
        return self._adapter.decode_line(tail)

    async def decode(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[StreamEvent]:
        """Lazily decode an async byte stream, one pass."""
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
        for event in self.finish():
            yield event
