"""Transcript parsing, native storage and the session repository."""

from .models import ParsedTranscript, SearchHit
from .parser import parse_transcript, serialize_transcript
from .repository import SessionRepository
from .store import JsonlTranscriptStore, SessionStateStore

__all__ = [
    "JsonlTranscriptStore",
    "ParsedTranscript",
    "SearchHit",
    "SessionRepository",
    "SessionStateStore",
    "parse_transcript",
    "serialize_transcript",
]
