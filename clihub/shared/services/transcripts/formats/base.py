"""Transcript format descriptor and JSONL helpers.

A format is a table of functions (load rows, decode a row into a
Message, encode a Message back to a row, dump rows), selected by the
provider tag.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Union

from clihub.engine.errors import MalformedTranscriptError
from clihub.shared.models.message import Message

Record = tuple[int, Union[dict, MalformedTranscriptError]]
Loader = Callable[[str, "str | None"], tuple[dict, Iterator[Record]]]


def iter_jsonl(content: str, source: str | None = None) -> Iterator[Record]:
    """Yield ``(line_no, row)`` per non-blank line, or an error in its place."""
    # split on \n only: U+2028 and friends may sit unescaped inside strings
    for line_no, raw in enumerate(content.split("\n"), start=1):
        raw = raw.rstrip("\r")
        if not raw.strip():
            continue
        try:
            row = json.loads(raw)
        except json.JSONDecodeError as exc:
            yield line_no, MalformedTranscriptError(line_no, f"invalid json: {exc.msg}", source)
            continue
        if not isinstance(row, dict):
            yield line_no, MalformedTranscriptError(line_no, "expected a JSON object", source)
            continue
        yield line_no, row


def load_jsonl(content: str, source: str | None = None) -> tuple[dict, Iterator[Record]]:
    return {}, iter_jsonl(content, source)


def dump_jsonl(rows: list[dict], metadata: dict[str, Any]) -> str:
    return "".join(json.dumps(row, ensure_ascii=False) + "\n" for row in rows)


def _no_metadata(row: dict, metadata: dict[str, Any]) -> None:
    return None


@dataclass(frozen=True)
class TranscriptFormat:
    name: str
    decode: Callable[[dict, int], "Message | None"]
    encode: Callable[[Message], dict]
    load: Loader = load_jsonl
    dump: Callable[[list[dict], dict], str] = dump_jsonl
    collect_metadata: Callable[[dict, dict], None] = _no_metadata
