"""Reaping of provider CLIs left behind by a crashed clihub server.

A normal shutdown signals every request's process group. When the server
dies first, its children are re-parented and keep running; this module
finds them by command line and sends SIGTERM.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


# Command lines as built by the provider adapters.
_MANAGED_PATTERNS = {
    "claude": re.compile(r"\bclaude\b.*\s-p\b.*--output-format\s+stream-json"),
    "opencode": re.compile(r"\bopencode\b\s+run\b.*--format\s+json"),
    "gemini": re.compile(r"\bgemini\b.*--output-format=stream-json"),
}
_SERVER_MARKERS = ("clihub --server", "clihub.app --server")
_MAX_ANCESTRY = 32


def read_process_table() -> dict[int, ProcessInfo]:
    """Snapshot of every process from ``ps``, keyed by pid."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for row in out.splitlines():
        fields = row.split(None, 2)
        if len(fields) != 3 or not (fields[0].isdigit() and fields[1].isdigit()):
            continue
        info = ProcessInfo(pid=int(fields[0]), ppid=int(fields[1]), args=fields[2])
        table[info.pid] = info
    return table


def _lineage(proc: ProcessInfo, table: dict[int, ProcessInfo]) -> Iterator[ProcessInfo]:
    """Yield *proc* and then its known ancestors, nearest first."""
    seen: set[int] = set()
    current: ProcessInfo | None = proc
    while current is not None and current.pid not in seen and len(seen) < _MAX_ANCESTRY:
        seen.add(current.pid)
        yield current
        current = table.get(current.ppid)


def is_managed_candidate(args: str, providers: frozenset[str] | None = None) -> bool:
    """Match command lines shaped like a clihub provider invocation."""
    return any(
        pattern.search(args)
        for name, pattern in _MANAGED_PATTERNS.items()
        if providers is None or name in providers
    )


def find_stale_processes(
    table: dict[int, ProcessInfo],
    current_pid: int,
    providers: frozenset[str] | None = None,
) -> list[ProcessInfo]:
    """Provider CLIs that are orphaned and not under any live server."""
    stale = []
    for proc in table.values():
        if proc.pid == current_pid or not is_managed_candidate(proc.args, providers):
            continue
        if proc.ppid != 1 and proc.ppid in table:
            continue
        owned = any(
            p.pid == current_pid or any(m in p.args for m in _SERVER_MARKERS)
            for p in _lineage(proc, table)
        )
        if not owned:
            stale.append(proc)
    return sorted(stale, key=lambda p: p.pid)


def cleanup_stale_runtime_processes(
    *,
    current_pid: int | None = None,
    providers: frozenset[str] | None = None,
    log: Callable[[str], None] | None = None,
    table: dict[int, ProcessInfo] | None = None,
    kill: Callable[[int, int], None] = os.kill,
) -> int:
    """SIGTERM every stale provider process; return how many were signalled."""
    report = log or (lambda _: None)
    if table is None:
        table = read_process_table()
    reaped = 0
    for proc in find_stale_processes(table, current_pid or os.getpid(), providers):
        try:
            kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            report(f"Failed to reap stale process pid={proc.pid}: {exc}")
            continue
        reaped += 1
        report(f"Reaped stale provider process pid={proc.pid} ppid={proc.ppid} cmd={proc.args[:180]}")
    return reaped
