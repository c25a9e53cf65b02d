"""Crash-safe file writes for transcripts and repository state."""

from __future__ import annotations

import contextlib
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import IO


def _flush_to_disk(handle: IO[str]) -> None:
    handle.flush()
    os.fsync(handle.fileno())


def _sync_directory(directory: Path) -> None:
    """Persist new or renamed entries of *directory*, where supported."""
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    # not every filesystem allows fsync on a directory
    with contextlib.suppress(OSError):
        fd = os.open(directory, flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Replace *path* with *content* via a synced temp file and rename.

    Readers see either the old file or the new one, never a partial write.
    """
    directory = path.parent
    directory.mkdir(parents=True, exist_ok=True)
    fd, staged = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            _flush_to_disk(handle)
        os.replace(staged, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(staged)
        raise
    _sync_directory(directory)


def append_lines(path: Path, lines: Iterable[str], *, encoding: str = "utf-8") -> int:
    """Append newline-terminated *lines* to *path* and sync.

    Returns the number of lines written. Creating the file also syncs
    its directory entry.
    """
    payload = [line if line.endswith("\n") else line + "\n" for line in lines]
    if not payload:
        return 0
    path.parent.mkdir(parents=True, exist_ok=True)
    is_new = not path.exists()
    with path.open("a", encoding=encoding) as handle:
        handle.writelines(payload)
        _flush_to_disk(handle)
    if is_new:
        _sync_directory(path.parent)
    return len(payload)
