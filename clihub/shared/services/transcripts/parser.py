"""Parse and re-encode provider transcripts.

``parse_transcript`` never stops at a bad line: each one is recorded as a
``MalformedTranscriptError`` warning and parsing continues with the next.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from clihub.engine.errors import MalformedTranscriptError
from clihub.shared.models.message import Message

from .formats import get_format
from .models import ParsedTranscript

logger = logging.getLogger(__name__)


def parse_transcript(
    provider: str,
    content: str,
    *,
    strict: bool = False,
    source: str | None = None,
) -> ParsedTranscript:
    """Decode *content* written by *provider* into normalized messages.

    With ``strict=True`` the first malformed line is raised instead of
    being collected in ``warnings``.
    """
    fmt = get_format(provider)
    header, records = fmt.load(content, source)
    metadata: dict[str, Any] = {}
    fmt.collect_metadata(header, metadata)
    messages: list[Message] = []
    warnings: list[MalformedTranscriptError] = []

    for line_no, row in records:
        if isinstance(row, MalformedTranscriptError):
            if strict:
                raise row
            warnings.append(row)
            continue
        try:
            fmt.collect_metadata(row, metadata)
            message = fmt.decode(row, line_no)
        except (TypeError, ValueError, KeyError, AttributeError) as exc:
            error = MalformedTranscriptError(line_no, f"unreadable row: {exc}", source)
            if strict:
                raise error from exc
            warnings.append(error)
            continue
        if message is not None:
            messages.append(message)

    if warnings:
        logger.warning(
            "Parsed %s transcript %s with %d malformed line(s)",
            provider, source or "<memory>", len(warnings),
        )
    if header:
        metadata.setdefault("_header", header)
    return ParsedTranscript(messages=messages, warnings=warnings, metadata=metadata)


def serialize_transcript(
    provider: str,
    messages: Iterable[Message],
    metadata: dict[str, Any] | None = None,
) -> str:
    """Encode *messages* back into *provider*'s on-disk shape."""
    fmt = get_format(provider)
    header = dict((metadata or {}).get("_header") or {})
    rows = [fmt.encode(message) for message in messages]
    return fmt.dump(rows, header)
