"""YAML configuration loader.

Layers an optional YAML file on top of the CLIHUB_* environment.
When no YAML is provided, env vars work exactly as before.

Example YAML:
    engine:
      grace_period_seconds: 5
      read_timeout_seconds: 900
      storage_url: file:///var/lib/clihub

    providers:
      claude:
        command: /opt/claude/bin/claude
        model: sonnet
      opencode:
        command: opencode
      gemini:
        command: gemini
        env:
          GEMINI_API_KEY: "${GEMINI_API_KEY}"
"""
from __future__ import annotations

import logging
import os
from dataclasses import fields, replace
from pathlib import Path

import yaml

from .config import EngineConfig, ProviderConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

_PATH_FIELDS = {"claude_root", "opencode_root", "gemini_root"}
_NOT_OVERRIDABLE = {"providers"}


def _parse_provider(name: str, raw: object) -> ProviderConfig:
    if raw is None:
        return ProviderConfig()
    if not isinstance(raw, dict):
        raise ConfigError(f"providers.{name}", "expected a mapping")
    env_raw = raw.get("env") or {}
    if not isinstance(env_raw, dict):
        raise ConfigError(f"providers.{name}.env", "expected a mapping")
    return ProviderConfig(
        command=raw.get("command"),
        model=raw.get("model"),
        env={str(k): os.path.expandvars(str(v)) for k, v in env_raw.items()},
        enabled=bool(raw.get("enabled", True)),
    )


def _apply_engine_overrides(base: EngineConfig, raw: dict) -> EngineConfig:
    known = {f.name for f in fields(EngineConfig)} - _NOT_OVERRIDABLE
    overrides: dict[str, object] = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown engine key %r", key)
            continue
        if key in _PATH_FIELDS and value is not None:
            value = Path(str(value)).expanduser()
        overrides[key] = value
    if not overrides:
        return base
    logger.info(
        "load_yaml_config: engine overrides: %s",
        ", ".join(sorted(overrides)),
    )
    return replace(base, **overrides)


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Load a YAML config file and merge it over *base* (or the env)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(str(path), f"invalid YAML: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) or "(empty)",
    )

    engine_raw = raw.get("engine") or {}
    if not isinstance(engine_raw, dict):
        raise ConfigError("engine", "expected a mapping")
    providers_raw = raw.get("providers") or {}
    if not isinstance(providers_raw, dict):
        raise ConfigError("providers", "expected a mapping")

    config = _apply_engine_overrides(base or EngineConfig.from_env(), engine_raw)
    config.providers = {
        **config.providers,
        **{
            str(name).lower(): _parse_provider(str(name), cfg)
            for name, cfg in providers_raw.items()
        },
    }
    config.validate()
    return config
