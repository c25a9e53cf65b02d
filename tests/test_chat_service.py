"""ChatService end to end with the fake provider CLI."""
from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from clihub.adapters.events import AlreadyRunning, EndOfStream, SessionStarted
from clihub.engine import chat_service as chat_service_module
from clihub.engine.chat_service import ChatService, TranscriptSink
from clihub.engine.config import EngineConfig
from clihub.engine.errors import (
    RequestConflictError,
    RequestNotFoundError,
    UnknownProviderError,
)
from clihub.engine.providers.registry import ProviderRegistry
from clihub.engine.request_registry import RequestStatus
from clihub.shared.models.message import Message, MessageRole


def _service(tmp_path: Path, adapter) -> ChatService:
    config = EngineConfig(storage_url=str(tmp_path / "data"), grace_period_seconds=0.5)
    providers = ProviderRegistry()
    providers.register(adapter)
    return ChatService(config, providers=providers)


async def _collect(subscription) -> list:
    return [event async for event in subscription]


@pytest.mark.asyncio
async def test_completed_request_streams_and_persists(tmp_path: Path, fake_cli) -> None:
    service = _service(tmp_path, fake_cli("ok"))

    request_id = await service.submit_request("proj-a", "sess-1", "hello", provider="claude")
    events = await _collect(service.subscribe(request_id))

    assert isinstance(events[0], SessionStarted)
    assert isinstance(events[-1], EndOfStream)
    assert events[-1].status == "completed"
    assert [e.seq for e in events] == list(range(len(events)))
    assert await service.wait(request_id) is RequestStatus.COMPLETED
    assert service.active_requests() == []

    stored = service.sink.store.read("proj-a", "sess-1")
    assert [m.role for m in stored.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    user, assistant = stored.messages
    assert user.id == f"{request_id}-user"
    assert user.content == "hello"
    assert assistant.id == f"{request_id}-assistant"
    assert assistant.content == "echo: hello"
    assert assistant.extra["provider"] == "claude"
    assert assistant.extra["provider_session_id"] == "fake-session"
    assert assistant.extra["usage"] == {"output_tokens": 7}
    [tool] = assistant.tool_calls
    assert (tool.id, tool.name, tool.result, tool.success) == ("tool-1", "Bash", "a.txt", True)


@pytest.mark.asyncio
async def test_next_request_resumes_provider_session(tmp_path: Path, fake_cli) -> None:
    service = _service(tmp_path, fake_cli("ok"))

    first = await service.submit_request("proj-a", "sess-1", "one", provider="claude")
    await service.wait(first)
    second = await service.submit_request("proj-a", "sess-1", "two", provider="claude")
    await service.wait(second)

    messages = service.sink.store.read("proj-a", "sess-1").messages
    assert len(messages) == 4
    assert messages[-1].content == "[resumed fake-session] echo: two"


@pytest.mark.asyncio
async def test_conflicting_request_rejected_until_first_ends(tmp_path: Path, fake_cli) -> None:
    service = _service(tmp_path, fake_cli("hang"))

    first = await service.submit_request("proj-a", "sess-1", "wait", provider="claude")
    with pytest.raises(RequestConflictError) as exc_info:
        await service.submit_request("proj-a", "sess-1", "again", provider="claude")
    assert exc_info.value.active_request_id == first

    other = await service.submit_request("proj-a", "sess-2", "parallel", provider="claude")
    assert {r["request_id"] for r in service.active_requests()} == {first, other}

    assert service.abort(first) is True
    assert service.abort(other) is True
    assert await service.wait(first) is RequestStatus.ABORTED
    assert await service.wait(other) is RequestStatus.ABORTED
    assert service.abort(first) is False
    assert service.registry.request_for_session("proj-a/sess-1") is None


@pytest.mark.asyncio
async def test_abort_reaches_every_subscriber(tmp_path: Path, fake_cli) -> None:
    service = _service(tmp_path, fake_cli("hang"))
    request_id = await service.submit_request("proj-a", "sess-1", "wait", provider="claude")
    first = service.subscribe(request_id)

    started = await first.__anext__()
    assert isinstance(started, SessionStarted)
    late = service.subscribe(request_id)
    service.abort(request_id)

    rest = await _collect(first)
    late_events = await _collect(late)
    assert rest[-1].status == "aborted"
    assert isinstance(late_events[0], AlreadyRunning)
    assert late_events[0].events_emitted == 1
    assert late_events[-1].status == "aborted"

    await service.wait(request_id)
    messages = service.sink.store.read("proj-a", "sess-1").messages
    assert [m.role for m in messages] == [MessageRole.USER]


@pytest.mark.asyncio
async def test_failed_request_keeps_only_user_message(tmp_path: Path, fake_cli) -> None:
    service = _service(tmp_path, fake_cli("fail"))
    request_id = await service.submit_request("proj-a", "sess-1", "hi", provider="claude")

    assert await service.wait(request_id) is RequestStatus.FAILED
    messages = service.sink.store.read("proj-a", "sess-1").messages
    assert [m.id for m in messages] == [f"{request_id}-user"]


@pytest.mark.asyncio
async def test_rejected_requests_leave_no_trace(tmp_path: Path, fake_cli) -> None:
    service = _service(tmp_path, fake_cli("ok"))

    with pytest.raises(UnknownProviderError):
        await service.submit_request("proj-a", "sess-1", "hi", provider="codex")
    with pytest.raises(ValueError):
        await service.submit_request("../etc", "sess-1", "hi", provider="claude")
    assert service.active_requests() == []
    with pytest.raises(RequestNotFoundError):
        await service.wait("missing")
    with pytest.raises(RequestNotFoundError):
        service.subscribe("missing")


@pytest.mark.asyncio
async def test_shutdown_aborts_in_flight_requests(tmp_path: Path, fake_cli) -> None:
    service = _service(tmp_path, fake_cli("hang"))
    request_id = await service.submit_request("proj-a", "sess-1", "wait", provider="claude")
    subscription = service.subscribe(request_id)
    await asyncio.sleep(0.2)

    await service.shutdown()

    events = await _collect(subscription)
    assert events[-1].status == "aborted"
    assert service.active_requests() == []


class _FlakyStore:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.rows: list[Message] = []

    def append(self, project_id, session_id, messages) -> int:
        self.calls += 1
        if self.calls <= self.failures:
            raise OSError("disk unavailable")
        self.rows.extend(messages)
        return len(messages)


@pytest.mark.asyncio
async def test_sink_retries_transient_store_errors(monkeypatch) -> None:
    monkeypatch.setattr(chat_service_module, "_RETRY_BASE_DELAY", 0.01)
    store = _FlakyStore(failures=2)
    sink = TranscriptSink(store, retries=3)

    written = await sink.persist("proj-a", "sess-1", [Message(role=MessageRole.USER, content="x")])

    assert written == 1
    assert store.calls == 3


@pytest.mark.asyncio
async def test_sink_gives_up_after_last_attempt(monkeypatch) -> None:
    monkeypatch.setattr(chat_service_module, "_RETRY_BASE_DELAY", 0.01)
    store = _FlakyStore(failures=5)
    sink = TranscriptSink(store, retries=2)

    with pytest.raises(OSError):
        await sink.persist("proj-a", "sess-1", [Message(role=MessageRole.USER, content="x")])
    assert store.calls == 2
