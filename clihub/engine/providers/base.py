"""Provider adapter: how to invoke one CLI and read its streaming output.

Providers differ only in data (command, image mode, argument and line
mapping functions), so every provider is a ``ProviderAdapter`` instance
selected by its ``ProviderKind`` tag rather than a subclass.
"""
from __future__ import annotations

import contextlib
import json
import logging
import os
import shlex
import shutil
import tempfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from ...adapters.events import StreamError, StreamEvent
from ..errors import (
    InvalidAttachmentError,
    StreamDecodeError,
    UnknownProviderError,
    UnsupportedCapabilityError,
)

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
MAX_IMAGE_BYTES = 10 * 1024 * 1024
MAX_IMAGES_PER_MESSAGE = 20


class ProviderKind(str, Enum):
    CLAUDE = "claude"
    OPENCODE = "opencode"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: str | ProviderKind) -> ProviderKind:
        """Case-insensitive lookup; raises UnknownProviderError."""
        if isinstance(value, ProviderKind):
            return value
        normalized = str(value or "").strip().lower()
        for kind in cls:
            if kind.value == normalized:
                return kind
        raise UnknownProviderError(str(value), [k.value for k in cls])

    @property
    def executable(self) -> str:
        return self.value


class ImageMode(Enum):
    INLINE = "inline"                  # encoded into the stdin payload
    FILE_REFERENCE = "file_reference"  # written to disk, passed by path
    NONE = "none"


@dataclass(frozen=True)
class Attachment:
    """An image the user sends with a message."""
    filename: str
    media_type: str
    data: bytes | None = None
    path: Path | None = None

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is not None:
            return Path(self.path).read_bytes()
        raise InvalidAttachmentError(self.filename, "no data or path")

    @property
    def size(self) -> int:
        if self.data is not None:
            return len(self.data)
        if self.path is not None:
            return Path(self.path).stat().st_size
        return 0


def validate_attachments(attachments: Sequence[Attachment]) -> None:
    """Reject unsupported types, oversized images and too many images."""
    if len(attachments) > MAX_IMAGES_PER_MESSAGE:
        raise InvalidAttachmentError(
            f"{len(attachments)} files",
            f"at most {MAX_IMAGES_PER_MESSAGE} images per message",
        )
    for att in attachments:
        if att.media_type not in SUPPORTED_IMAGE_TYPES:
            raise InvalidAttachmentError(
                att.filename, f"unsupported media type {att.media_type!r}"
            )
        try:
            size = att.size
        except OSError as exc:
            raise InvalidAttachmentError(att.filename, str(exc)) from exc
        if size > MAX_IMAGE_BYTES:
            raise InvalidAttachmentError(
                att.filename,
                f"{size} bytes exceeds the {MAX_IMAGE_BYTES} byte limit",
            )


@dataclass
class SessionContext:
    """Where and how a request runs."""
    project_id: str
    session_id: str
    cwd: str | None = None
    # Provider-side session id to resume, if continuing a conversation.
    resume_id: str | None = None
    model: str | None = None
    permission_mode: str | None = None
    allowed_tools: list[str] = field(default_factory=list)


@dataclass
class ProcessSpec:
    """Everything needed to spawn one CLI process."""
    argv: list[str]
    cwd: str | None = None
    env: dict[str, str] | None = None
    stdin: bytes | None = None
    # Files/directories owned by this invocation, removed on cleanup.
    temp_paths: list[Path] = field(default_factory=list)

    def cleanup(self) -> None:
        """Remove temp resources. Safe to call more than once."""
        for path in self.temp_paths:
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to remove temp path %s: %s", path, exc)
        self.temp_paths = []


# Function table entries
ArgsBuilder = Callable[[SessionContext, str, Sequence[Attachment], Sequence[Path]], list[str]]
StdinBuilder = Callable[[SessionContext, str, Sequence[Attachment]], "bytes | None"]
LineParser = Callable[[dict], list[StreamEvent]]


def _no_stdin(ctx: SessionContext, message: str, attachments: Sequence[Attachment]) -> None:
    return None


@dataclass(frozen=True)
class ProviderAdapter:
    """Invocation and output rules for one provider CLI."""

    kind: ProviderKind
    command: str
    image_mode: ImageMode
    build_args: ArgsBuilder
    parse_line: LineParser
    build_stdin: StdinBuilder = _no_stdin
    # True when the CLI prints a final result line on success.
    emits_result: bool = True
    default_model: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    # Known non-JSON banner lines printed on stdout.
    ignored_prefixes: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def supports_images(self) -> bool:
        return self.image_mode is not ImageMode.NONE

    def command_argv(self) -> list[str]:
        return shlex.split(self.command)

    def is_available(self) -> bool:
        argv = self.command_argv()
        resolved = shutil.which(argv[0]) if argv else None
        logger.debug("is_available(%s): %s -> %s", self.name, self.command, resolved)
        return resolved is not None

    def with_overrides(
        self,
        *,
        command: str | None = None,
        model: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProviderAdapter:
        return replace(
            self,
            command=command or self.command,
            default_model=model or self.default_model,
            env=dict(env) if env is not None else self.env,
        )

    # ── invocation ──

    def build_invocation(
        self,
        session_context: SessionContext,
        user_message: str,
        attachments: Sequence[Attachment] = (),
    ) -> ProcessSpec:
        """Build the process spec for one request.

        Raises UnsupportedCapabilityError for attachments on a text-only
        provider and InvalidAttachmentError for bad images, before any
        file is written.
        """
        attachments = list(attachments or ())
        if attachments:
            if not self.supports_images:
                raise UnsupportedCapabilityError(self.name, "image attachments")
            validate_attachments(attachments)

        ctx = session_context
        if ctx.model is None and self.default_model:
            ctx = replace(ctx, model=self.default_model)

        temp_paths: list[Path] = []
        file_refs: list[Path] = []
        if attachments and self.image_mode is ImageMode.FILE_REFERENCE:
            file_refs = self._write_attachments(attachments, temp_paths)

        try:
            argv = self.command_argv() + self.build_args(
                ctx, user_message, attachments, file_refs,
            )
            stdin = None
            if self.image_mode is ImageMode.INLINE:
                stdin = self.build_stdin(ctx, user_message, attachments)
        except BaseException:
            ProcessSpec(argv=[], temp_paths=temp_paths).cleanup()
            raise

        env = {**os.environ, **self.env} if self.env else None
        return ProcessSpec(
            argv=argv,
            cwd=ctx.cwd,
            env=env,
            stdin=stdin,
            temp_paths=temp_paths,
        )

    def _write_attachments(
        self,
        attachments: Sequence[Attachment],
        temp_paths: list[Path],
    ) -> list[Path]:
        tmpdir = Path(tempfile.mkdtemp(prefix=f"clihub-{self.name}-"))
        temp_paths.append(tmpdir)
        refs: list[Path] = []
        try:
            for idx, att in enumerate(attachments):
                stem = Path(att.filename).stem or "image"
                safe_stem = "".join(c if c.isalnum() or c in "-_" else "_" for c in stem)
                target = tmpdir / f"{idx:02d}-{safe_stem}{SUPPORTED_IMAGE_TYPES[att.media_type]}"
                target.write_bytes(att.read_bytes())
                refs.append(target)
        except OSError:
            shutil.rmtree(tmpdir, ignore_errors=True)
            temp_paths.remove(tmpdir)
            raise
        return refs

    # ── stream decoding ──

    def parse_stream_chunk(self, buffer: bytes) -> tuple[list[StreamEvent], bytes]:
        """Decode every complete line in *buffer*.

        Returns the events and the unterminated remainder, which the
        caller passes back in (prefixed to new data) on the next call.
        """
        events: list[StreamEvent] = []
        start = 0
        while True:
            newline = buffer.find(b"\n", start)
            if newline < 0:
                break
            events.extend(self.decode_line(buffer[start:newline]))
            start = newline + 1
        return events, buffer[start:]

    def decode_line(self, line: bytes) -> list[StreamEvent]:
        """Decode one complete line. Malformed input becomes an error event."""
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return []
        if self.ignored_prefixes and text.startswith(self.ignored_prefixes):
            return []
        try:
            try:
                obj = json.loads(text)
            except json.JSONDecodeError as exc:
                raise StreamDecodeError(text, f"invalid JSON: {exc.msg}") from exc
            if not isinstance(obj, dict):
                raise StreamDecodeError(text, "expected a JSON object")
            try:
                return self.parse_line(obj)
            except (TypeError, ValueError, KeyError, AttributeError) as exc:
                raise StreamDecodeError(text, f"unexpected {obj.get('type') or 'line'} shape: {exc}") from exc
        except StreamDecodeError as exc:
            logger.warning("%s: undecodable output line: %.200s", self.name, text)
            return [StreamError(message=str(exc), raw=exc.raw)]


def content_blocks(payload: object) -> list[dict]:
    """Return the dict blocks of a ``message.content`` list."""
    if not isinstance(payload, list):
        return []
    return [b for b in payload if isinstance(b, dict)]


def text_of(value: object) -> str:
    """Render a tool result or argument value as text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            else:
                parts.append(text_of(item))
        return "\n".join(p for p in parts if p)
    with contextlib.suppress(TypeError, ValueError):
        return json.dumps(value, ensure_ascii=False)
    return str(value)
