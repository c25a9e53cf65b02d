"""Gemini CLI sessions under ``~/.gemini/tmp/<project-hash>/chats``."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

from .base import SessionFile, SessionSource

MIN_HASH_LENGTH = 32


class GeminiSessionSource(SessionSource):
    provider_name = "gemini"
    format_name = "gemini"

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or (Path.home() / ".gemini")

    def iter_session_files(self) -> Iterator[SessionFile]:
        tmp_dir = self.root / "tmp"
        if not tmp_dir.is_dir():
            return
        for hash_dir in sorted(tmp_dir.iterdir()):
            # other tmp entries (bin, logs) are not project hashes
            if not hash_dir.is_dir() or len(hash_dir.name) < MIN_HASH_LENGTH:
                continue
            chats = hash_dir / "chats"
            if not chats.is_dir():
                continue
            for path in sorted(chats.glob("session-*.json")):
                yield SessionFile(
                    provider=self.provider_name,
                    project_id=f"gemini_{hash_dir.name}",
                    project_name=f"Gemini-{hash_dir.name[:8]}",
                    session_id=path.stem,
                    path=path,
                )
