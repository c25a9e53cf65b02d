"""Claude Code sessions under ``~/.claude/projects``."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from pathlib import Path

from clihub.shared.models.message import Message

from .base import SessionFile, SessionSource

logger = logging.getLogger(__name__)

_ENCODE_CHARS = re.compile(r"[/\\:._]")


def encode_project_path(path: str) -> str:
    """``/Users/me/my.app`` -> ``-Users-me-my-app`` (Claude's directory naming)."""
    return _ENCODE_CHARS.sub("-", path.rstrip("/"))


def decode_project_path(encoded: str) -> str:
    """Best-effort inverse of encode_project_path.

    Lossy: every dash becomes a path separator.
    """
    if not encoded.startswith("-"):
        return encoded
    return "/" + encoded.lstrip("-").replace("-", "/")


class ClaudeSessionSource(SessionSource):
    provider_name = "claude"
    format_name = "claude"

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or (Path.home() / ".claude")

    @property
    def projects_dir(self) -> Path:
        return self.root / "projects"

    def iter_session_files(self) -> Iterator[SessionFile]:
        if not self.projects_dir.is_dir():
            return
        for project_dir in sorted(self.projects_dir.iterdir()):
            if not project_dir.is_dir():
                continue
            decoded = decode_project_path(project_dir.name)
            for path in sorted(project_dir.rglob("*.jsonl")):
                if "subagents" in path.relative_to(project_dir).parts:
                    continue
                yield SessionFile(
                    provider=self.provider_name,
                    project_id=f"claude_{project_dir.name}",
                    project_name=decoded,
                    session_id=path.stem,
                    path=path,
                    project_path=decoded,
                )

    def assistant_id(self, message: Message) -> str | None:
        # API message ids survive when a conversation is continued; row uuids do not
        inner = message.extra.get("message")
        if isinstance(inner, dict) and isinstance(inner.get("id"), str):
            return inner["id"]
        return message.id
