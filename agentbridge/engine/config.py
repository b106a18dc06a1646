"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTBRIDGE_* env vars
or the ``bridge:`` section of a YAML config (see yaml_config).
"""
from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


# Optional callback fired when a Write/Edit tool completes.
# Signature: def callback(file_path, tool_type, sub_chat_id) -> None
# tool_type is "tool-Write" or "tool-Edit".
FileChangedCallback = Callable[[str, str, str], None]


def _default_data_dir() -> str:
    return str(Path.home() / ".agentbridge")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


@dataclass
class BridgeConfig:
    """Runtime configuration shared by providers and the supervisor."""

    default_provider: str = "claude"

    # Local agent server (OpenCode)
    server_port: int = 4096
    server_startup_timeout_seconds: float = 30.0
    server_shutdown_timeout_seconds: float = 5.0
    server_health_interval_seconds: float = 0.1
    server_health_request_timeout_seconds: float = 2.0

    # Max wait for the user to answer a backend question.
    # Set to 0 (or a negative value) to disable timeout.
    question_timeout_seconds: float = 0.0

    # Binary cache + logs live here
    data_dir: str = field(default_factory=_default_data_dir)

    # Load PATH and friends from a login shell before spawning CLIs.
    # GUI launches on macOS inherit a minimal PATH.
    resolve_shell_env: bool = sys.platform != "win32"

    log_level: str = "INFO"

    @property
    def binary_cache_path(self) -> Path:
        return Path(self.data_dir) / "data" / "binary-cache.json"

    @property
    def log_dir(self) -> Path:
        return Path(self.data_dir) / "logs"

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from AGENTBRIDGE_* environment variables."""
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTBRIDGE_")
        }
        if bridge_vars:
            logger.info(
                "BridgeConfig.from_env: AGENTBRIDGE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(bridge_vars.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no AGENTBRIDGE_* env vars set, using defaults")

        config = cls(
            default_provider=os.getenv(
                "AGENTBRIDGE_DEFAULT_PROVIDER", cls.default_provider
            ),
            server_port=int(os.getenv(
                "AGENTBRIDGE_SERVER_PORT", str(cls.server_port)
            )),
            server_startup_timeout_seconds=float(os.getenv(
                "AGENTBRIDGE_SERVER_STARTUP_TIMEOUT",
                str(cls.server_startup_timeout_seconds),
            )),
            server_shutdown_timeout_seconds=float(os.getenv(
                "AGENTBRIDGE_SERVER_SHUTDOWN_TIMEOUT",
                str(cls.server_shutdown_timeout_seconds),
            )),
            server_health_interval_seconds=float(os.getenv(
                "AGENTBRIDGE_SERVER_HEALTH_INTERVAL",
                str(cls.server_health_interval_seconds),
            )),
            question_timeout_seconds=float(os.getenv(
                "AGENTBRIDGE_QUESTION_TIMEOUT",
                str(cls.question_timeout_seconds),
            )),
            data_dir=os.getenv("AGENTBRIDGE_DATA_DIR") or _default_data_dir(),
            resolve_shell_env=_env_flag(
                "AGENTBRIDGE_RESOLVE_SHELL_ENV", cls.resolve_shell_env
            ),
            log_level=os.getenv("AGENTBRIDGE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "BridgeConfig.from_env: provider=%s port=%d data_dir=%s log_level=%s",
            config.default_provider, config.server_port,
            config.data_dir, config.log_level,
        )
        return config
