"""StreamDecoder chunking and malformed-line handling."""
from __future__ import annotations

import dataclasses
import json

import pytest

from clihub.adapters.events import ImageAttached, SessionStarted, StreamError, TextDelta, TurnResult
from clihub.engine.decoder import StreamDecoder
from clihub.engine.errors import StreamDecodeError
from clihub.engine.providers.claude_provider import claude_adapter
from clihub.engine.providers.gemini_provider import gemini_adapter


def _assistant_line(text: str) -> bytes:
    row = {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}
    return (json.dumps(row, ensure_ascii=False) + "\n").encode("utf-8")


def _stream() -> bytes:
    init = {"type": "system", "subtype": "init", "session_id": "abc", "model": "sonnet"}
    return (
        (json.dumps(init) + "\n").encode("utf-8")
        + _assistant_line("héllo wörld ✓")
        + _assistant_line("second")
    )


def _texts(events) -> list[str]:
    return [e.text for e in events if isinstance(e, TextDelta)]


def test_line_events_are_returned_when_newline_arrives() -> None:
    decoder = StreamDecoder(claude_adapter())
    line = _assistant_line("hi")

    assert decoder.feed(line[:-1]) == []
    assert decoder.pending == line[:-1]
    events = decoder.feed(b"\n")
    assert _texts(events) == ["hi"]
    assert decoder.pending == b""


@pytest.mark.parametrize("size", [1, 2, 3, 7, 64])
def test_any_chunking_yields_same_events(size: int) -> None:
    data = _stream()
    whole = StreamDecoder(claude_adapter())
    expected = whole.feed(data) + whole.finish()

    chunked = StreamDecoder(claude_adapter())
    events = []
    for start in range(0, len(data), size):
        events.extend(chunked.feed(data[start:start + size]))
    events.extend(chunked.finish())

    assert events == expected
    assert isinstance(events[0], SessionStarted)
    assert _texts(events) == ["héllo wörld ✓", "second"]
    assert chunked.bytes_consumed == len(data)


def test_split_inside_multibyte_character() -> None:
    line = _assistant_line("✓")
    cut = line.index("✓".encode("utf-8")) + 1
    decoder = StreamDecoder(claude_adapter())

    assert decoder.feed(line[:cut]) == []
    assert _texts(decoder.feed(line[cut:])) == ["✓"]


def test_malformed_line_becomes_error_event_and_stream_continues() -> None:
    decoder = StreamDecoder(claude_adapter())
    events = decoder.feed(b"{not json\n" + _assistant_line("after"))

    assert isinstance(events[0], StreamError)
    assert events[0].raw == "{not json"
    assert events[0].fatal is False
    assert _texts(events) == ["after"]


def test_non_object_line_is_an_error_event() -> None:
    events = StreamDecoder(claude_adapter()).feed(b"[1, 2]\n")
    assert len(events) == 1
    assert isinstance(events[0], StreamError)


def test_odd_field_shapes_are_tolerated() -> None:
    image_row = {"type": "assistant", "message": {"content": [{"type": "image", "source": "x"}]}}
    data = (
        json.dumps(image_row).encode() + b"\n"
        + b'{"type":"result","usage":"abc","result":"done"}\n'
        + _assistant_line("after")
    )
    events = StreamDecoder(claude_adapter()).feed(data)

    assert isinstance(events[0], ImageAttached)
    assert events[0].source == "inline"
    assert isinstance(events[1], TurnResult)
    assert events[1].usage == {}
    assert _texts(events) == ["after"]

    gemini_events = StreamDecoder(gemini_adapter()).feed(b'{"type":"result","stats":[1,2]}\n')
    assert isinstance(gemini_events[0], TurnResult)
    assert gemini_events[0].usage == {}


def test_line_parser_failure_becomes_error_event() -> None:
    def explode(obj):
        if obj.get("type") == "boom":
            return obj["missing"]
        return claude_adapter().parse_line(obj)

    adapter = dataclasses.replace(claude_adapter(), parse_line=explode)
    raw = '{"type":"boom"}'
    events = StreamDecoder(adapter).feed(raw.encode() + b"\n" + _assistant_line("still here"))

    assert isinstance(events[0], StreamError)
    assert events[0].raw == raw
    assert events[0].fatal is False
    assert "boom" in events[0].message
    assert _texts(events) == ["still here"]


def test_finish_flushes_unterminated_tail() -> None:
    decoder = StreamDecoder(claude_adapter())
    line = _assistant_line("tail")
    decoder.feed(line[:-1])

    assert _texts(decoder.finish()) == ["tail"]
    assert decoder.finish() == []
    with pytest.raises(RuntimeError):
        decoder.feed(b"x")


def test_blank_lines_and_known_banners_are_ignored() -> None:
    decoder = StreamDecoder(gemini_adapter())
    data = b"\n   \nLoaded cached credentials.\n" + json.dumps(
        {"type": "message", "role": "assistant", "content": "ok"}
    ).encode() + b"\n"

    assert _texts(decoder.feed(data)) == ["ok"]


def test_oversized_line_is_fatal() -> None:
    decoder = StreamDecoder(claude_adapter(), max_line_bytes=16)

    with pytest.raises(StreamDecodeError) as exc_info:
        decoder.feed(b"x" * 40)
    assert exc_info.value.fatal is True
    assert decoder.pending == b""


@pytest.mark.asyncio
async def test_decode_async_iterator() -> None:
    data = _stream()

    async def chunks():
        for start in range(0, len(data), 5):
            yield data[start:start + 5]

    decoder = StreamDecoder(claude_adapter())
    events = [event async for event in decoder.decode(chunks())]
    assert _texts(events) == ["héllo wörld ✓", "second"]
