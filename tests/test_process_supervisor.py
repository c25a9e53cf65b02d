"""ProcessSupervisor against a real subprocess (tests/fixtures/fake_cli.py)."""
from __future__ import annotations

import signal
from pathlib import Path

import pytest

from clihub.adapters.events import (
    EndOfStream,
    SessionStarted,
    StreamError,
    TextDelta,
    ToolCallResult,
    ToolCallStarted,
)
from clihub.engine.providers.base import ProcessSpec, SessionContext
from clihub.engine.providers.claude_provider import claude_adapter
from clihub.engine.request_registry import RequestRegistry, RequestStatus
from clihub.engine.supervisor import ProcessSupervisor


async def _run(adapter, *, supervisor=None, cancel_on_start=False, ctx=None, spec=None):
    registry = RequestRegistry()
    handle = registry.register("proj-a/sess-1", adapter.name)
    spec = spec or adapter.build_invocation(
        ctx or SessionContext(project_id="proj-a", session_id="sess-1"), "hello",
    )
    events = []

    def publish(event):
        events.append(event)
        if cancel_on_start and isinstance(event, SessionStarted):
            registry.cancel(handle.request_id)

    supervisor = supervisor or ProcessSupervisor(grace_period=0.5, read_timeout=15)
    status = await supervisor.run(handle, spec, adapter, publish)
    return status, handle, events


def _terminal(events) -> EndOfStream:
    ends = [e for e in events if isinstance(e, EndOfStream)]
    assert len(ends) == 1
    assert events[-1] is ends[0]
    return ends[0]


@pytest.mark.asyncio
async def test_successful_run_streams_events_in_order(fake_cli) -> None:
    status, handle, events = await _run(fake_cli("ok"))

    assert status is RequestStatus.COMPLETED
    assert handle.status is RequestStatus.COMPLETED
    assert handle.pid is not None
    assert handle.provider_session_id == "fake-session"
    kinds = [type(e) for e in events]
    assert kinds == [SessionStarted, TextDelta, ToolCallStarted, ToolCallResult, EndOfStream]
    assert events[1].text == "echo: hello"
    end = _terminal(events)
    assert end.status == "completed"
    assert end.exit_code == 0
    assert end.provider_session_id == "fake-session"
    assert end.usage == {"output_tokens": 7}
    assert end.error is None


@pytest.mark.asyncio
async def test_nonzero_exit_fails_with_stderr_detail(fake_cli) -> None:
    status, handle, events = await _run(fake_cli("fail"))

    assert status is RequestStatus.FAILED
    end = _terminal(events)
    assert end.exit_code == 3
    assert "exited with code 3" in end.error
    assert "boom: provider crashed" in end.error
    fatal = [e for e in events if isinstance(e, StreamError)]
    assert len(fatal) == 1 and fatal[0].fatal is True
    assert handle.error == end.error


@pytest.mark.asyncio
async def test_missing_result_line_is_a_failure(fake_cli) -> None:
    status, _, events = await _run(fake_cli("no_result"))
    assert status is RequestStatus.FAILED
    assert "without a result" in _terminal(events).error


@pytest.mark.asyncio
async def test_error_result_is_a_failure(fake_cli) -> None:
    status, _, events = await _run(fake_cli("error_result"))
    assert status is RequestStatus.FAILED
    assert _terminal(events).exit_code == 0


@pytest.mark.asyncio
async def test_undecodable_line_is_reported_and_run_completes(fake_cli) -> None:
    status, _, events = await _run(fake_cli("garbage"))

    assert status is RequestStatus.COMPLETED
    errors = [e for e in events if isinstance(e, StreamError)]
    assert len(errors) == 1
    assert errors[0].fatal is False
    assert errors[0].raw == "this is not json"
    assert [e.text for e in events if isinstance(e, TextDelta)] == ["still going"]


@pytest.mark.asyncio
async def test_cancel_terminates_process_group(fake_cli) -> None:
    status, handle, events = await _run(fake_cli("hang"), cancel_on_start=True)

    assert status is RequestStatus.ABORTED
    end = _terminal(events)
    assert end.status == "aborted"
    assert end.exit_code == -signal.SIGTERM
    assert not [e for e in events if isinstance(e, StreamError)]
    assert handle.cancel_requested


@pytest.mark.asyncio
async def test_cancel_escalates_to_sigkill_after_grace_period(fake_cli) -> None:
    supervisor = ProcessSupervisor(grace_period=0.3, read_timeout=15)
    status, _, events = await _run(fake_cli("stubborn"), supervisor=supervisor, cancel_on_start=True)

    assert status is RequestStatus.ABORTED
    assert _terminal(events).exit_code == -signal.SIGKILL


@pytest.mark.asyncio
async def test_cancel_before_spawn_never_starts_process(fake_cli) -> None:
    adapter = fake_cli("ok")
    registry = RequestRegistry()
    handle = registry.register("proj-a/sess-1", adapter.name)
    registry.cancel(handle.request_id)
    events = []

    status = await ProcessSupervisor().run(
        handle,
        adapter.build_invocation(SessionContext(project_id="proj-a", session_id="sess-1"), "hi"),
        adapter,
        events.append,
    )

    assert status is RequestStatus.ABORTED
    assert handle.pid is None
    assert [type(e) for e in events] == [EndOfStream]


@pytest.mark.asyncio
async def test_read_timeout_kills_silent_process(fake_cli) -> None:
    supervisor = ProcessSupervisor(grace_period=0.3, read_timeout=0.5)
    status, _, events = await _run(fake_cli("hang"), supervisor=supervisor)

    assert status is RequestStatus.FAILED
    assert "timed out" in _terminal(events).error


@pytest.mark.asyncio
async def test_missing_binary_fails_and_cleans_temp_files(tmp_path: Path) -> None:
    adapter = claude_adapter().with_overrides(command="clihub-no-such-cli-binary")
    leftover = tmp_path / "attachment.png"
    leftover.write_bytes(b"x")
    spec = ProcessSpec(argv=adapter.command_argv() + ["-p"], temp_paths=[leftover])

    status, handle, events = await _run(adapter, spec=spec)

    assert status is RequestStatus.FAILED
    assert handle.pid is None
    assert "not found" in _terminal(events).error
    assert [type(e) for e in events] == [StreamError, EndOfStream]
    assert not leftover.exists()


@pytest.mark.asyncio
async def test_missing_working_directory_is_a_spawn_failure(fake_cli, tmp_path: Path) -> None:
    ctx = SessionContext(project_id="proj-a", session_id="sess-1", cwd=str(tmp_path / "gone"))
    status, _, events = await _run(fake_cli("ok"), ctx=ctx)

    assert status is RequestStatus.FAILED
    assert "working directory" in _terminal(events).error


@pytest.mark.asyncio
async def test_non_path_working_directory_is_a_spawn_failure(fake_cli) -> None:
    ctx = SessionContext(project_id="proj-a", session_id="sess-1", cwd=5)
    status, handle, events = await _run(fake_cli("ok"), ctx=ctx)

    assert status is RequestStatus.FAILED
    assert handle.pid is None
    assert "invalid working directory" in _terminal(events).error
