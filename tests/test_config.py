from __future__ import annotations

import os
from pathlib import Path

import pytest

from clihub.engine.config import EngineConfig, storage_url_to_path
from clihub.engine.errors import ConfigError
from clihub.engine.yaml_config import load_yaml_config


def _clear_env(monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("CLIHUB_"):
            monkeypatch.delenv(key, raising=False)


def test_defaults_without_env(monkeypatch) -> None:
    _clear_env(monkeypatch)
    config = EngineConfig.from_env()

    assert config.grace_period_seconds == 3.0
    assert config.default_provider == ""
    assert config.data_dir == Path("~/.clihub").expanduser()
    assert config.cleanup_stale_processes is False


def test_env_overrides(monkeypatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("CLIHUB_STORAGE_URL", f"file://{tmp_path}/data")
    monkeypatch.setenv("CLIHUB_GRACE_PERIOD", "0.5")
    monkeypatch.setenv("CLIHUB_DEFAULT_PROVIDER", " Gemini ")
    monkeypatch.setenv("CLIHUB_LOG_LEVEL", "debug")
    monkeypatch.setenv("CLIHUB_CLAUDE_ROOT", str(tmp_path / "claude"))
    monkeypatch.setenv("CLIHUB_CLEANUP_STALE", "yes")

    config = EngineConfig.from_env()

    assert config.data_dir == tmp_path / "data"
    assert config.grace_period_seconds == 0.5
    assert config.default_provider == "gemini"
    assert config.log_level == "DEBUG"
    assert config.claude_root == tmp_path / "claude"
    assert config.cleanup_stale_processes is True


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("CLIHUB_GRACE_PERIOD", "soon"),
        ("CLIHUB_GRACE_PERIOD", "-1"),
        ("CLIHUB_MAX_LINE_BYTES", "1.5"),
        ("CLIHUB_PERSIST_RETRIES", "0"),
        ("CLIHUB_STORAGE_URL", "postgres://db/clihub"),
    ],
)
def test_invalid_env_values_raise(monkeypatch, name: str, value: str) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigError):
        EngineConfig.from_env()


def test_storage_url_forms(tmp_path: Path) -> None:
    assert storage_url_to_path(str(tmp_path)) == tmp_path
    assert storage_url_to_path(f"file://{tmp_path}") == tmp_path
    assert storage_url_to_path("file://~/data") == Path("~/data").expanduser()


def test_yaml_overlays_engine_and_providers(monkeypatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("GEMINI_KEY_FOR_TEST", "secret")
    path = tmp_path / "clihub.yaml"
    path.write_text(
        "engine:\n"
        "  grace_period_seconds: 5\n"
        f"  storage_url: {tmp_path}/store\n"
        "  gemini_root: ~/gem\n"
        "  not_a_setting: 1\n"
        "providers:\n"
        "  Claude:\n"
        "    command: /opt/claude --debug\n"
        "    model: sonnet\n"
        "  gemini:\n"
        "    enabled: false\n"
        "    env:\n"
        "      GEMINI_API_KEY: ${GEMINI_KEY_FOR_TEST}\n",
        encoding="utf-8",
    )

    config = load_yaml_config(path)

    assert config.grace_period_seconds == 5
    assert config.data_dir == tmp_path / "store"
    assert config.gemini_root == Path("~/gem").expanduser()
    assert config.providers["claude"].command == "/opt/claude --debug"
    assert config.providers["claude"].model == "sonnet"
    assert config.providers["gemini"].enabled is False
    assert config.providers["gemini"].env == {"GEMINI_API_KEY": "secret"}


def test_yaml_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml", base=EngineConfig())

    bad = tmp_path / "bad.yaml"
    bad.write_text("engine: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_yaml_config(bad, base=EngineConfig())

    wrong = tmp_path / "wrong.yaml"
    wrong.write_text("providers:\n  claude: 3\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_yaml_config(wrong, base=EngineConfig())

    negative = tmp_path / "negative.yaml"
    negative.write_text("engine:\n  grace_period_seconds: -2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_yaml_config(negative, base=EngineConfig())
