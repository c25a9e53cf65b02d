from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

from clihub.engine.providers.base import ProviderAdapter
from clihub.engine.providers.claude_provider import claude_adapter

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_CLI = FIXTURES_DIR / "fake_cli.py"


@pytest.fixture
def fake_cli():
    """Factory for a claude adapter whose command runs tests/fixtures/fake_cli.py."""

    def _make(mode: str = "ok", **env: str) -> ProviderAdapter:
        command = f"{shlex.quote(sys.executable)} {shlex.quote(str(FAKE_CLI))}"
        return claude_adapter().with_overrides(
            command=command,
            env={"FAKE_CLI_MODE": mode, **env},
        )

    return _make
