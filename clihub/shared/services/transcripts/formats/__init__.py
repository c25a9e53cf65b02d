"""Per-provider transcript formats, keyed by provider tag."""

from clihub.engine.errors import UnknownProviderError

from .base import TranscriptFormat, dump_jsonl, iter_jsonl, load_jsonl
from .claude import CLAUDE_FORMAT
from .gemini import GEMINI_FORMAT
from .native import NATIVE_FORMAT
from .opencode import OPENCODE_FORMAT

FORMATS: dict[str, TranscriptFormat] = {
    fmt.name: fmt
    for fmt in (CLAUDE_FORMAT, OPENCODE_FORMAT, GEMINI_FORMAT, NATIVE_FORMAT)
}


def get_format(provider: str) -> TranscriptFormat:
    fmt = FORMATS.get((provider or "").lower())
    if fmt is None:
        raise UnknownProviderError(provider, sorted(FORMATS))
    return fmt


__all__ = [
    "FORMATS",
    "TranscriptFormat",
    "dump_jsonl",
    "get_format",
    "iter_jsonl",
    "load_jsonl",
]
