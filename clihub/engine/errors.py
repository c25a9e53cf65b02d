"""Exception hierarchy for the execution and streaming core.

Specific exceptions for each failure mode. Request-lifecycle errors are
terminal for one request only; transcript errors are recorded as warnings.
"""
from __future__ import annotations


class ClihubError(Exception):
    """Base exception for all clihub errors."""


class MalformedTranscriptError(ClihubError):
    """A single transcript line could not be parsed."""
    def __init__(self, line_no: int, reason: str, source: str | None = None):
        self.line_no = line_no
        self.reason = reason
        self.source = source
        where = f"{source}:{line_no}" if source else f"line {line_no}"
        super().__init__(f"Malformed transcript at {where}: {reason}")


class UnsupportedCapabilityError(ClihubError):
    """The provider cannot honour a requested capability."""
    def __init__(self, provider: str, capability: str):
        self.provider = provider
        self.capability = capability
        super().__init__(
            f"Provider '{provider}' does not support {capability}"
        )


class InvalidAttachmentError(ClihubError):
    """An attachment failed validation (type, size or count)."""
    def __init__(self, filename: str, reason: str):
        self.filename = filename
        self.reason = reason
        super().__init__(f"Invalid attachment {filename}: {reason}")


class RequestConflictError(ClihubError):
    """A session already has an active request."""
    def __init__(self, session_key: str, active_request_id: str):
        self.session_key = session_key
        self.active_request_id = active_request_id
        super().__init__(
            f"Session {session_key} already has an active request "
            f"({active_request_id})"
        )


class RequestNotFoundError(ClihubError):
    """No active request with the given id."""
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request not found: {request_id}")


class UnknownProviderError(ClihubError):
    """Provider tag is not one of the supported CLIs."""
    def __init__(self, name: str, available: list[str] | None = None):
        self.name = name
        self.available = available or []
        avail = ", ".join(self.available) or "none"
        super().__init__(f"Unknown provider '{name}'. Available: {avail}")


class ProcessSpawnError(ClihubError):
    """The CLI binary is missing or could not be executed."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn {command}: {reason}")


class StreamDecodeError(ClihubError):
    """A unit of CLI output could not be decoded."""
    def __init__(self, raw: str, reason: str, *, fatal: bool = False):
        self.raw = raw
        self.reason = reason
        self.fatal = fatal
        super().__init__(f"Cannot decode stream output: {reason}")


class ProcessTimeoutError(ClihubError):
    """A suspending process operation exceeded its time budget."""
    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{operation} timed out after {timeout_seconds}s"
        )


class ConfigError(ClihubError):
    """A configuration value is invalid."""
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration {key}: {reason}")


class SessionNotFoundError(ClihubError):
    """No visible session with the given project and session id."""
    def __init__(self, project_id: str, session_id: str):
        self.project_id = project_id
        self.session_id = session_id
        super().__init__(f"Session not found: {project_id}/{session_id}")
