"""Backend providers behind the canonical chunk protocol."""
from .base import ChatOptions, Provider
from .registry import ProviderRegistry, build_provider_registry
from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider
from .opencode_provider import OpenCodeProvider

__all__ = [
    "ChatOptions",
    "Provider",
    "ProviderRegistry",
    "build_provider_registry",
    "ClaudeProvider",
    "CodexProvider",
    "OpenCodeProvider",
]
