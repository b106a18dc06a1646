"""Runtime context shared by the providers of one process.

Holds the things that must be shared rather than owned per provider:
the binary resolver and its caches, the single OpenCode server
supervisor, and the pending-question routing table. Tests build a fresh
context per case; applications call init() once and reset() on exit.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from agentbridge.adapters.questions import PendingQuestionRegistry

from .binaries import BinaryResolver, DefaultBinaryResolver
from .config import BridgeConfig
from .yaml_config import ProviderConfig

if TYPE_CHECKING:
    from .providers.opencode_server import OpenCodeServer

logger = logging.getLogger(__name__)


class RuntimeContext:
    """Explicit replacement for module-level singletons."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        resolver: BinaryResolver | None = None,
        providers: dict[str, ProviderConfig] | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.provider_configs = providers or {}
        self.resolver: BinaryResolver = resolver or DefaultBinaryResolver(
            self.config, self.provider_configs,
        )
        self.questions = PendingQuestionRegistry()
        self._server: OpenCodeServer | None = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self) -> RuntimeContext:
        """Mark the context live. Idempotent."""
        if not self._initialized:
            self._initialized = True
            logger.info(
                "RuntimeContext initialized (data_dir=%s)", self.config.data_dir,
            )
        return self

    @property
    def server(self) -> OpenCodeServer:
        """The shared OpenCode server supervisor, created on first use."""
        if self._server is None:
            from .providers.opencode_server import OpenCodeServer

            self._server = OpenCodeServer(
                resolver=self.resolver,
                port=self.config.server_port,
                startup_timeout=self.config.server_startup_timeout_seconds,
                shutdown_timeout=self.config.server_shutdown_timeout_seconds,
                health_interval=self.config.server_health_interval_seconds,
                health_timeout=self.config.server_health_request_timeout_seconds,
            )
        return self._server

    @property
    def has_server(self) -> bool:
        return self._server is not None

    async def reset(self) -> None:
        """Shut down the supervisor (if we started a server) and drop state."""
        if self._server is not None:
            await self._server.shutdown()
            self._server = None
        self.questions = PendingQuestionRegistry()
        forget = getattr(self.resolver, "forget", None)
        if forget is not None:
            forget()
        self._initialized = False
        logger.info("RuntimeContext reset")
