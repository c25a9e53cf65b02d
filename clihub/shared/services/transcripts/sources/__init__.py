"""Session sources, one per provider layout."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import SessionFile, SessionSource
from .claude import ClaudeSessionSource, decode_project_path, encode_project_path
from .gemini import GeminiSessionSource
from .native import NativeSessionSource
from .opencode import OpenCodeSessionSource

if TYPE_CHECKING:
    from clihub.engine.config import EngineConfig


def default_sources(config: EngineConfig) -> list[SessionSource]:
    """Sources for every layout the config points at."""
    return [
        ClaudeSessionSource(config.claude_root),
        OpenCodeSessionSource(config.opencode_root),
        GeminiSessionSource(config.gemini_root),
        NativeSessionSource(config.data_dir / "transcripts"),
    ]


__all__ = [
    "ClaudeSessionSource",
    "GeminiSessionSource",
    "NativeSessionSource",
    "OpenCodeSessionSource",
    "SessionFile",
    "SessionSource",
    "decode_project_path",
    "default_sources",
    "encode_project_path",
]
