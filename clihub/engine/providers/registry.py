"""Provider registry: maps provider tags to ProviderAdapter instances."""
from __future__ import annotations

import logging
from collections.abc import Mapping

from ..config import ProviderConfig
from ..errors import UnknownProviderError
from .base import ProviderAdapter, ProviderKind
from .claude_provider import claude_adapter
from .gemini_provider import gemini_adapter
from .opencode_provider import opencode_adapter

logger = logging.getLogger(__name__)

# Preference order when a request names no provider
DEFAULT_PREFERENCE = (ProviderKind.CLAUDE, ProviderKind.OPENCODE, ProviderKind.GEMINI)

_FACTORIES = {
    ProviderKind.CLAUDE: claude_adapter,
    ProviderKind.OPENCODE: opencode_adapter,
    ProviderKind.GEMINI: gemini_adapter,
}


class ProviderRegistry:
    """Registry of provider adapters keyed by ProviderKind."""

    def __init__(self) -> None:
        self._adapters: dict[ProviderKind, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        """Register (or replace) the adapter for its kind."""
        self._adapters[adapter.kind] = adapter
        logger.info(
            "Provider registered: %s command=%s",
            adapter.name, adapter.command,
        )

    def get(self, name: str | ProviderKind) -> ProviderAdapter | None:
        try:
            kind = ProviderKind.parse(name)
        except UnknownProviderError:
            return None
        return self._adapters.get(kind)

    def get_or_raise(self, name: str | ProviderKind) -> ProviderAdapter:
        """Get an adapter by tag, raising UnknownProviderError if absent."""
        adapter = self.get(name)
        if adapter is None:
            raise UnknownProviderError(str(getattr(name, "value", name)), self.list_names())
        return adapter

    def list_names(self) -> list[str]:
        return [kind.value for kind in self._adapters]

    def list_available(self) -> list[str]:
        """Return names of providers whose CLI is installed."""
        return [
            kind.value for kind, adapter in self._adapters.items()
            if adapter.is_available()
        ]

    def default_kind(self, preferred: str | None = None) -> ProviderKind:
        """Pick the provider for requests that name none.

        An explicit preference wins; otherwise the first installed CLI
        in claude, opencode, gemini order, falling back to claude.
        """
        if preferred:
            return self.get_or_raise(preferred).kind
        for kind in DEFAULT_PREFERENCE:
            adapter = self._adapters.get(kind)
            if adapter is not None and adapter.is_available():
                return kind
        return ProviderKind.CLAUDE

    def validate(self) -> dict[str, bool]:
        """Log which provider CLIs are installed."""
        report = {
            kind.value: adapter.is_available()
            for kind, adapter in self._adapters.items()
        }
        available = [n for n, ok in report.items() if ok]
        unavailable = [n for n, ok in report.items() if not ok]
        if available:
            logger.info("Available providers: %s", ", ".join(available))
        if unavailable:
            logger.warning(
                "Unavailable providers (CLI not installed): %s",
                ", ".join(unavailable),
            )
        if not available:
            logger.error("No provider CLIs are available! Live chat will fail to spawn.")
        return report


def build_provider_registry(
    configs: Mapping[str, ProviderConfig] | None = None,
) -> ProviderRegistry:
    """Build a registry of all three providers with config overrides applied."""
    configs = configs or {}
    unknown = set(configs) - {k.value for k in ProviderKind}
    for name in sorted(unknown):
        logger.warning("Ignoring config for unknown provider '%s'", name)

    registry = ProviderRegistry()
    for kind, factory in _FACTORIES.items():
        cfg = configs.get(kind.value)
        if cfg is not None and not cfg.enabled:
            logger.info("Provider %s disabled by config", kind.value)
            continue
        adapter = factory()
        if cfg is not None:
            adapter = adapter.with_overrides(
                command=cfg.command, model=cfg.model, env=cfg.env or None,
            )
        registry.register(adapter)
    return registry
