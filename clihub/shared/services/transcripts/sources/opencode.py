"""OpenCode sessions under ``~/.local/share/opencode/storage``.

Layout::

    storage/session/<project>/ses_<id>.json      title, directory, time
    storage/message/ses_<id>/msg_*.json          one file per message
    storage/part/msg_<id>/prt_*.json             message parts, in name order

read_content() joins a session into one JSONL message stream with each
message's parts inlined.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from ..normalize import from_epoch_ms
from .base import SessionFile, SessionSource

logger = logging.getLogger(__name__)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8", errors="replace"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Skipping unreadable OpenCode file %s: %s", path, exc)
        return None


class OpenCodeSessionSource(SessionSource):
    provider_name = "opencode"
    format_name = "opencode"

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or (Path.home() / ".local" / "share" / "opencode")

    @property
    def storage(self) -> Path:
        return self.root / "storage"

    def iter_session_files(self) -> Iterator[SessionFile]:
        session_root = self.storage / "session"
        if not session_root.is_dir():
            return
        for project_dir in sorted(session_root.iterdir()):
            if not project_dir.is_dir():
                continue
            for path in sorted(project_dir.glob("ses_*.json")):
                info = _read_json(path)
                info = info if isinstance(info, dict) else {}
                times = info.get("time") if isinstance(info.get("time"), dict) else {}
                directory = info.get("directory") if isinstance(info.get("directory"), str) else None
                yield SessionFile(
                    provider=self.provider_name,
                    project_id=f"opencode_{project_dir.name}",
                    project_name=Path(directory).name if directory else project_dir.name,
                    session_id=path.stem,
                    path=path,
                    project_path=directory,
                    hints={
                        "title": info.get("title") if isinstance(info.get("title"), str) else None,
                        "created_at": from_epoch_ms(times["created"]) if "created" in times else None,
                        "updated_at": from_epoch_ms(times["updated"]) if "updated" in times else None,
                    },
                )

    def _message_files(self, session_id: str) -> list[Path]:
        msg_dir = self.storage / "message" / session_id
        if not msg_dir.is_dir():
            return []
        return sorted(msg_dir.glob("msg_*.json"))

    def _parts(self, message_id: str) -> list[Any]:
        part_dir = self.storage / "part" / message_id
        if not part_dir.is_dir():
            return []
        parts = []
        for path in sorted(part_dir.glob("prt_*.json")):
            part = _read_json(path)
            if part is not None:
                parts.append(part)
        return parts

    def read_content(self, entry: SessionFile) -> str:
        lines = []
        for path in self._message_files(entry.session_id):
            message = _read_json(path)
            if not isinstance(message, dict):
                continue
            message_id = message.get("id") or path.stem
            message["parts"] = self._parts(str(message_id))
            lines.append(json.dumps(message, ensure_ascii=False))
        return "".join(f"{line}\n" for line in lines)

    def fingerprint(self, entry: SessionFile) -> tuple[int, int]:
        # new messages land in sibling directories, not in the session file
        paths = [entry.path, self.storage / "message" / entry.session_id]
        paths.extend(self._message_files(entry.session_id))
        newest = 0
        for path in paths:
            try:
                newest = max(newest, path.stat().st_mtime_ns)
            except OSError:
                continue
        return newest, len(paths)
