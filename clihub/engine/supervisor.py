"""Lifecycle of one spawned CLI process per request.

``ProcessSupervisor.run`` drives a request through
``pending -> running -> completed | failed | aborted`` and publishes
exactly one ``EndOfStream`` for it, whichever path is taken. The process
and any temp files are released on every path.

Cancellation is two-phase: the registry sets the handle's cancel flag,
the read loop notices it (interrupting a blocked read), the process
group gets SIGTERM, and SIGKILL follows if it outlives the grace period.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from ..adapters.events import (
    EndOfStream,
    SessionStarted,
    StreamError,
    StreamEvent,
    TurnResult,
)
from .config import EngineConfig
from .decoder import DEFAULT_MAX_LINE_BYTES, StreamDecoder
from .errors import ProcessSpawnError, ProcessTimeoutError, StreamDecodeError
from .providers.base import ProcessSpec, ProviderAdapter
from .request_registry import RequestHandle, RequestStatus

logger = logging.getLogger(__name__)

Publish = Callable[[StreamEvent], None]

_READ_CHUNK = 64 * 1024
_STDERR_TAIL_BYTES = 16 * 1024
_KILL_WAIT = 5.0

_DONE = "done"
_CANCELLED = "cancelled"
_TIMED_OUT = "timeout"


class _Run:
    """Mutable state for one supervised request."""

    def __init__(self, handle: RequestHandle, adapter: ProviderAdapter, publish: Publish) -> None:
        self.handle = handle
        self.adapter = adapter
        self.publish = publish
        self.started = time.monotonic()
        self.proc: asyncio.subprocess.Process | None = None
        self.stderr_task: asyncio.Task | None = None
        self.stderr_tail = bytearray()
        self.status = RequestStatus.FAILED
        self.error: str | None = None
        self.exit_code: int | None = None
        self.turn_result: TurnResult | None = None
        self.provider_session_id: str | None = None

    def fail(self, message: str) -> None:
        self.status = RequestStatus.FAILED
        self.error = message

    def forward(self, event: StreamEvent) -> None:
        """Route one decoded event: fold summaries, publish the rest."""
        if isinstance(event, TurnResult):
            self.turn_result = event
            if event.provider_session_id:
                self._set_session(event.provider_session_id)
            return
        if isinstance(event, EndOfStream):
            return
        if isinstance(event, SessionStarted):
            if event.provider_session_id == self.provider_session_id:
                return
            self._set_session(event.provider_session_id)
        self.publish(event)

    def _set_session(self, provider_session_id: str) -> None:
        self.provider_session_id = provider_session_id
        self.handle.provider_session_id = provider_session_id

    def stderr_text(self) -> str:
        return bytes(self.stderr_tail).decode("utf-8", errors="replace").strip()


class ProcessSupervisor:
    """Spawns, streams, cancels and reaps CLI processes."""

    def __init__(
        self,
        *,
        grace_period: float = 3.0,
        spawn_timeout: float = 10.0,
        read_timeout: float = 600.0,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ) -> None:
        self.grace_period = grace_period
        self.spawn_timeout = spawn_timeout
        self.read_timeout = read_timeout
        self.max_line_bytes = max_line_bytes

    @classmethod
    def from_config(cls, config: EngineConfig) -> ProcessSupervisor:
        return cls(
            grace_period=config.grace_period_seconds,
            spawn_timeout=config.spawn_timeout_seconds,
            read_timeout=config.read_timeout_seconds,
            max_line_bytes=config.max_line_bytes,
        )

    async def run(
        self,
        handle: RequestHandle,
        spec: ProcessSpec,
        adapter: ProviderAdapter,
        publish: Publish,
    ) -> RequestStatus:
        """Run one request to a terminal state and publish its end marker."""
        run = _Run(handle, adapter, publish)
        try:
            await self._execute(run, spec)
        except asyncio.CancelledError:
            # Task cancelled from outside (server shutdown)
            run.status = RequestStatus.ABORTED
            run.error = "request task cancelled"
            raise
        finally:
            await self._release(run, spec)
            self._publish_terminal(run)
        return run.status

    # ── phases ──

    async def _execute(self, run: _Run, spec: ProcessSpec) -> None:
        handle = run.handle
        if handle.cancel_requested:
            logger.info("Request %s cancelled before spawn", handle.request_id)
            run.status = RequestStatus.ABORTED
            return

        try:
            proc = await self._spawn(spec)
        except (ProcessSpawnError, ProcessTimeoutError) as exc:
            logger.error("Request %s: %s", handle.request_id, exc)
            run.fail(str(exc))
            return

        run.proc = proc
        handle.mark_running(proc.pid)
        logger.info(
            "Request %s running provider=%s pid=%s argv0=%s",
            handle.request_id, run.adapter.name, proc.pid, spec.argv[0],
        )
        run.stderr_task = asyncio.create_task(self._drain_stderr(run))

        try:
            await self._write_stdin(proc, spec.stdin)
            outcome = await self._pump(run)
            if outcome == _DONE:
                outcome = await self._await_exit(run)
        except (StreamDecodeError, ProcessTimeoutError) as exc:
            logger.error("Request %s failed: %s", handle.request_id, exc)
            run.fail(str(exc))
            await self._kill(proc)
            return

        if outcome == _CANCELLED:
            await self._terminate(proc)
            run.status = RequestStatus.ABORTED
            run.exit_code = proc.returncode
            logger.info("Request %s aborted pid=%s", handle.request_id, proc.pid)
            return

        run.exit_code = proc.returncode
        self._classify(run)

    async def _spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        command = spec.argv[0] if spec.argv else "<empty>"
        if not spec.argv:
            raise ProcessSpawnError(command, "empty command line")
        if spec.cwd is not None:
            try:
                cwd_ok = Path(spec.cwd).is_dir()
            except (TypeError, ValueError) as exc:
                raise ProcessSpawnError(command, f"invalid working directory: {exc}") from exc
            if not cwd_ok:
                raise ProcessSpawnError(command, f"working directory does not exist: {spec.cwd}")
        stdin = asyncio.subprocess.PIPE if spec.stdin is not None else asyncio.subprocess.DEVNULL
        try:
            return await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *spec.argv,
                    stdin=stdin,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=spec.cwd,
                    env=spec.env,
                    start_new_session=True,
                ),
                timeout=self.spawn_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProcessTimeoutError("spawning " + command, self.spawn_timeout) from exc
        except FileNotFoundError as exc:
            raise ProcessSpawnError(command, "CLI not found (is it installed and on PATH?)") from exc
        except PermissionError as exc:
            raise ProcessSpawnError(command, f"not executable: {exc}") from exc
        except OSError as exc:
            raise ProcessSpawnError(command, str(exc)) from exc
        except (TypeError, ValueError) as exc:
            raise ProcessSpawnError(command, f"invalid invocation: {exc}") from exc

    async def _write_stdin(self, proc: asyncio.subprocess.Process, data: bytes | None) -> None:
        if data is None or proc.stdin is None:
            return
        try:
            proc.stdin.write(data)
            await asyncio.wait_for(proc.stdin.drain(), timeout=self._timeout())
        except asyncio.TimeoutError as exc:
            raise ProcessTimeoutError("writing CLI stdin", self.read_timeout) from exc
        except (BrokenPipeError, ConnectionResetError) as exc:
            # Process exited early; its exit status tells the story
            logger.warning("stdin closed early pid=%s: %s", proc.pid, exc)
        finally:
            proc.stdin.close()

    async def _pump(self, run: _Run) -> str:
        """Read stdout through the decoder until EOF or cancellation."""
        proc = run.proc
        assert proc is not None and proc.stdout is not None
        decoder = StreamDecoder(run.adapter, self.max_line_bytes)
        while True:
            outcome, chunk = await self._race(proc.stdout.read(_READ_CHUNK), run.handle)
            if outcome == _CANCELLED:
                return _CANCELLED
            if outcome == _TIMED_OUT:
                raise ProcessTimeoutError("reading CLI output", self.read_timeout)
            if not chunk:
                for event in decoder.finish():
                    run.forward(event)
                return _DONE
            for event in decoder.feed(chunk):
                run.forward(event)
            if run.handle.cancel_requested:
                return _CANCELLED

    async def _await_exit(self, run: _Run) -> str:
        """Wait for exit after stdout closed, still honouring cancel."""
        assert run.proc is not None
        outcome, _ = await self._race(run.proc.wait(), run.handle)
        if outcome == _TIMED_OUT:
            raise ProcessTimeoutError("waiting for CLI exit", self.read_timeout)
        return outcome

    async def _race(
        self,
        awaitable: Awaitable[Any],
        handle: RequestHandle,
    ) -> tuple[str, Any]:
        """Await *awaitable* unless cancellation or the read timeout wins."""
        work = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(handle.wait_cancelled())
        try:
            done, _ = await asyncio.wait(
                {work, cancel_wait},
                timeout=self._timeout(),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if work in done:
                return _DONE, work.result()
            if cancel_wait in done:
                return _CANCELLED, None
            return _TIMED_OUT, None
        finally:
            for fut in (work, cancel_wait):
                if not fut.done():
                    fut.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await fut

    async def _drain_stderr(self, run: _Run) -> None:
        proc = run.proc
        if proc is None or proc.stderr is None:
            return
        while True:
            chunk = await proc.stderr.read(_READ_CHUNK)
            if not chunk:
                return
            logger.debug(
                "stderr request=%s: %s",
                run.handle.request_id, chunk.decode("utf-8", errors="replace").rstrip(),
            )
            run.stderr_tail.extend(chunk)
            if len(run.stderr_tail) > _STDERR_TAIL_BYTES:
                del run.stderr_tail[:-_STDERR_TAIL_BYTES]

    def _classify(self, run: _Run) -> None:
        code = run.exit_code
        result = run.turn_result
        if code != 0:
            detail = run.stderr_text() or (result.result if result and result.is_error else "")
            message = f"{run.adapter.name} exited with code {code}"
            run.fail(f"{message}: {detail[-500:]}" if detail else message)
        elif result is not None and result.is_error:
            run.fail(result.result or f"{run.adapter.name} reported an error")
        elif run.adapter.emits_result and result is None:
            run.fail(f"{run.adapter.name} exited without a result")
        else:
            run.status = RequestStatus.COMPLETED
        logger.info(
            "Request %s exited code=%s status=%s",
            run.handle.request_id, code, run.status.value,
        )

    # ── termination ──

    def _signal(self, proc: asyncio.subprocess.Process, sig: int) -> None:
        if proc.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            with contextlib.suppress(ProcessLookupError):
                proc.send_signal(sig)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, wait the grace period, then SIGKILL."""
        if proc.returncode is not None:
            return
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            logger.warning(
                "pid=%s still alive %.1fs after SIGTERM, killing",
                proc.pid, self.grace_period,
            )
            await self._kill(proc)

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        try:
            await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT)
        except asyncio.TimeoutError:
            logger.error("pid=%s did not exit after SIGKILL", proc.pid)

    async def _release(self, run: _Run, spec: ProcessSpec) -> None:
        """Unconditional cleanup for every terminal path."""
        try:
            if run.proc is not None and run.proc.returncode is None:
                await self._kill(run.proc)
            if run.stderr_task is not None:
                if not run.stderr_task.done():
                    run.stderr_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await run.stderr_task
        finally:
            spec.cleanup()

    def _publish_terminal(self, run: _Run) -> None:
        handle = run.handle
        if run.status is RequestStatus.FAILED:
            run.publish(StreamError(message=run.error or "request failed", fatal=True))
        handle.finish(run.status, run.error)
        usage = run.turn_result.usage if run.turn_result else {}
        run.publish(EndOfStream(
            status=run.status.value,
            exit_code=run.exit_code,
            error=run.error,
            provider_session_id=run.provider_session_id,
            usage=dict(usage),
            duration_seconds=round(time.monotonic() - run.started, 3),
        ))

    def _timeout(self) -> float | None:
        return self.read_timeout if self.read_timeout > 0 else None
