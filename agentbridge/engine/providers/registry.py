"""Provider registry: maps provider names to Provider instances."""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ..errors import ProviderNotRegisteredError
from .base import Provider, ProviderStatus

if TYPE_CHECKING:
    from ..context import RuntimeContext
    from ..yaml_config import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of chat providers.

    Maps short names (e.g. 'claude', 'codex') to Provider instances;
    the first registered provider is the default unless one is set.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}
        self._default: str | None = None

    def register(self, name: str, provider: Provider) -> None:
        """Register a provider by name."""
        self._providers[name] = provider
        if self._default is None:
            self._default = name
        logger.info("Provider registered: %s (%s)", name, provider.name)

    def unregister(self, name: str) -> Provider | None:
        provider = self._providers.pop(name, None)
        if self._default == name:
            self._default = next(iter(self._providers), None)
        return provider

    def get(self, name: str) -> Provider | None:
        """Get a provider by name, or None if not registered."""
        return self._providers.get(name)

    def get_or_raise(self, name: str) -> Provider:
        """Get a provider by name, raising ProviderNotRegisteredError."""
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotRegisteredError(name, self.list_names())
        return provider

    @property
    def default_name(self) -> str | None:
        return self._default

    def set_default(self, name: str) -> None:
        if name not in self._providers:
            raise ProviderNotRegisteredError(name, self.list_names())
        self._default = name

    def get_default(self) -> Provider:
        if self._default is None:
            raise ProviderNotRegisteredError("default", [])
        return self._providers[self._default]

    def list_names(self) -> list[str]:
        """Return all registered provider names."""
        return list(self._providers.keys())

    def list_available(self) -> list[str]:
        """Return names of providers whose CLI is installed."""
        return [
            name for name, p in self._providers.items()
            if p.is_available()
        ]

    def get_availability_report(self) -> dict[str, bool]:
        """Return a mapping of provider name → is_available for all providers."""
        return {
            name: p.is_available()
            for name, p in self._providers.items()
        }

    def validate(self) -> dict[str, bool]:
        """Log which providers are usable; returns the availability report."""
        report = self.get_availability_report()
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
            logger.error("No providers are available! Chats cannot be started.")
        return report

    async def get_status(self, name: str) -> ProviderStatus:
        return await self.get_or_raise(name).get_status()

    async def get_all_status(self) -> dict[str, ProviderStatus]:
        names = self.list_names()
        statuses = await asyncio.gather(
            *(self._providers[n].get_status() for n in names),
        )
        return dict(zip(names, statuses))

    def find_active(self, sub_chat_id: str) -> Provider | None:
        """The provider currently running *sub_chat_id*, if any."""
        for provider in self._providers.values():
            if provider.is_active(sub_chat_id):
                return provider
        return None

    async def shutdown_all(self) -> None:
        """Shut down all registered providers."""
        for name, provider in self._providers.items():
            try:
                await provider.shutdown()
            except Exception as exc:
                logger.error(
                    "Error shutting down provider '%s': %s",
                    name, exc,
                )

    @property
    def count(self) -> int:
        return len(self._providers)


def build_provider_registry(
    context: RuntimeContext,
    provider_configs: dict[str, ProviderConfig] | None = None,
) -> ProviderRegistry:
    """Build a ProviderRegistry from YAML-sourced provider configs.

    With no configs, one provider of each type is registered. The
    context's default_provider becomes the default when registered.
    """
    from ..yaml_config import default_provider_configs
    from .claude_provider import ClaudeProvider
    from .codex_provider import CodexProvider
    from .opencode_provider import OpenCodeProvider

    factories = {
        "claude": ClaudeProvider,
        "codex": CodexProvider,
        "opencode": OpenCodeProvider,
    }

    registry = ProviderRegistry()
    configs = provider_configs or context.provider_configs or default_provider_configs()
    for name, cfg in configs.items():
        factory = factories.get(cfg.type)
        if factory is None:
            logger.warning(
                "Unknown provider type '%s' for '%s', skipping",
                cfg.type, name,
            )
            continue
        registry.register(name, factory(context))

    default = context.config.default_provider
    if default in registry.list_names():
        registry.set_default(default)
    elif registry.count:
        logger.warning(
            "Default provider '%s' not registered; using '%s'",
            default, registry.default_name,
        )

    registry.validate()
    return registry
