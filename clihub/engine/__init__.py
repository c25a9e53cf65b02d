"""Execution core: provider adapters, process supervision and request lifecycle."""
from .config import EngineConfig, ProviderConfig
from .errors import (
    ClihubError,
    ConfigError,
    InvalidAttachmentError,
    MalformedTranscriptError,
    ProcessSpawnError,
    ProcessTimeoutError,
    RequestConflictError,
    RequestNotFoundError,
    SessionNotFoundError,
    StreamDecodeError,
    UnknownProviderError,
    UnsupportedCapabilityError,
)

__all__ = [
    "ClihubError",
    "ConfigError",
    "EngineConfig",
    "InvalidAttachmentError",
    "MalformedTranscriptError",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "ProviderConfig",
    "RequestConflictError",
    "RequestNotFoundError",
    "SessionNotFoundError",
    "StreamDecodeError",
    "UnknownProviderError",
    "UnsupportedCapabilityError",
]
