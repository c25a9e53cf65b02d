"""Transcripts written by clihub itself (``<data_dir>/transcripts``)."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

from .base import SessionFile, SessionSource


class NativeSessionSource(SessionSource):
    provider_name = "clihub"
    format_name = "clihub"

    def __init__(self, root: Path) -> None:
        self.root = root

    def iter_session_files(self) -> Iterator[SessionFile]:
        if not self.root.is_dir():
            return
        for project_dir in sorted(self.root.iterdir()):
            if not project_dir.is_dir():
                continue
            for path in sorted(project_dir.glob("*.jsonl")):
                yield SessionFile(
                    provider=self.provider_name,
                    project_id=project_dir.name,
                    project_name=project_dir.name,
                    session_id=path.stem,
                    path=path,
                )
