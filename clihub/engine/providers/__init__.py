"""Provider adapters for the supported AI CLIs."""
from .base import (
    Attachment,
    ImageMode,
    ProcessSpec,
    ProviderAdapter,
    ProviderKind,
    SessionContext,
)
from .claude_provider import claude_adapter
from .gemini_provider import gemini_adapter
from .opencode_provider import opencode_adapter
from .registry import ProviderRegistry, build_provider_registry

__all__ = [
    "Attachment",
    "ImageMode",
    "ProcessSpec",
    "ProviderAdapter",
    "ProviderKind",
    "SessionContext",
    "ProviderRegistry",
    "build_provider_registry",
    "claude_adapter",
    "gemini_adapter",
    "opencode_adapter",
]
