"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CLIHUB_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlparse

from .errors import ConfigError

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(name, f"expected a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(name, f"expected an integer, got {raw!r}") from exc


def _env_path(name: str) -> Path | None:
    raw = os.getenv(name)
    return Path(raw).expanduser() if raw else None


def storage_url_to_path(url: str) -> Path:
    """Resolve a storage connection string to a local data directory.

    Accepts ``file://`` URLs and plain filesystem paths. Other schemes
    are rejected since only the local store ships with clihub.
    """
    parsed = urlparse(url)
    if parsed.scheme in ("", "file"):
        raw = unquote(parsed.path if parsed.scheme else url)
        if parsed.scheme and parsed.netloc:
            # file://~/x parses "~" as the host
            raw = parsed.netloc + raw
        return Path(raw).expanduser()
    if len(parsed.scheme) == 1:
        # Windows drive letter, e.g. C:\data
        return Path(url)
    raise ConfigError(
        "CLIHUB_STORAGE_URL",
        f"unsupported storage scheme '{parsed.scheme}'",
    )


@dataclass
class ProviderConfig:
    """Configuration for a single provider CLI."""
    command: str | None = None  # path to CLI binary, may include args
    model: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    enabled: bool = True


@dataclass
class EngineConfig:
    """Execution core configuration."""

    # Logging
    log_level: str = "INFO"

    # Storage connection string (file:// URL or path). Holds the
    # live transcript store, archive flags and server logs.
    storage_url: str = "~/.clihub"
    # Optional cache connection string. Opaque to the core.
    cache_url: str | None = None

    # Provider used when a request names none. Empty means
    # "first installed of claude, opencode, gemini".
    default_provider: str = ""
    default_cwd: str = "."

    # Seconds to wait after SIGTERM before SIGKILL on cancellation.
    grace_period_seconds: float = 3.0
    # Max wait for the CLI process to be created.
    spawn_timeout_seconds: float = 10.0
    # Max silence on stdout before the process is killed.
    # Set to 0 (or a negative value) to disable.
    read_timeout_seconds: float = 600.0
    # A single output line longer than this is a fatal decode error.
    max_line_bytes: int = 8 * 1024 * 1024
    # Attempts the persistence sink makes when the store raises OSError.
    persist_retries: int = 3

    # Transcript roots; None means the provider's default location.
    claude_root: Path | None = None
    opencode_root: Path | None = None
    gemini_root: Path | None = None

    # Reap orphaned provider CLI processes when the server starts.
    cleanup_stale_processes: bool = False

    # Per-provider overrides, usually from YAML.
    providers: dict[str, ProviderConfig] = field(default_factory=dict)

    @property
    def data_dir(self) -> Path:
        return storage_url_to_path(self.storage_url)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CLIHUB_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CLIHUB_")
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: CLIHUB_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no CLIHUB_* env vars set, using defaults")

        config = cls(
            log_level=os.getenv("CLIHUB_LOG_LEVEL", cls.log_level).upper(),
            storage_url=os.getenv("CLIHUB_STORAGE_URL") or cls.storage_url,
            cache_url=os.getenv("CLIHUB_CACHE_URL") or None,
            default_provider=os.getenv(
                "CLIHUB_DEFAULT_PROVIDER", cls.default_provider
            ).strip().lower(),
            default_cwd=os.getenv("CLIHUB_DEFAULT_CWD", cls.default_cwd),
            grace_period_seconds=_env_float(
                "CLIHUB_GRACE_PERIOD", cls.grace_period_seconds
            ),
            spawn_timeout_seconds=_env_float(
                "CLIHUB_SPAWN_TIMEOUT", cls.spawn_timeout_seconds
            ),
            read_timeout_seconds=_env_float(
                "CLIHUB_READ_TIMEOUT", cls.read_timeout_seconds
            ),
            max_line_bytes=_env_int(
                "CLIHUB_MAX_LINE_BYTES", cls.max_line_bytes
            ),
            persist_retries=_env_int(
                "CLIHUB_PERSIST_RETRIES", cls.persist_retries
            ),
            claude_root=_env_path("CLIHUB_CLAUDE_ROOT"),
            opencode_root=_env_path("CLIHUB_OPENCODE_ROOT"),
            gemini_root=_env_path("CLIHUB_GEMINI_ROOT"),
            cleanup_stale_processes=(
                os.getenv("CLIHUB_CLEANUP_STALE", "").lower() in _TRUTHY
            ),
        )
        config.validate()
        logger.info(
            "EngineConfig.from_env: storage=%s provider=%s grace=%.1fs log_level=%s",
            config.storage_url, config.default_provider or "<auto>",
            config.grace_period_seconds, config.log_level,
        )
        return config

    def validate(self) -> None:
        if self.grace_period_seconds < 0:
            raise ConfigError("grace_period_seconds", "must be >= 0")
        if self.spawn_timeout_seconds <= 0:
            raise ConfigError("spawn_timeout_seconds", "must be > 0")
        if self.max_line_bytes <= 0:
            raise ConfigError("max_line_bytes", "must be > 0")
        if self.persist_retries < 1:
            raise ConfigError("persist_retries", "must be >= 1")
        # Raises ConfigError for unsupported schemes.
        storage_url_to_path(self.storage_url)
