"""YAML configuration loader.

Loads a single YAML file that overrides env-derived settings and
declares which providers to register.

Example YAML:
    bridge:
      default_provider: codex
      server_port: 4096
      question_timeout_seconds: 60

    providers:
      claude:
        type: claude
      codex:
        type: codex
        command: /opt/homebrew/bin/codex
        api_key_env: OPENAI_API_KEY
      opencode:
        type: opencode
        env:
          OPENCODE_SERVER_PASSWORD: secret
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig

logger = logging.getLogger(__name__)

PROVIDER_TYPES = ("claude", "codex", "opencode")


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    type: str  # "claude", "codex" or "opencode"
    command: str | None = None  # explicit path or name of the CLI binary
    api_key_env: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class BridgeSettings:
    """Complete parsed YAML configuration."""
    bridge: BridgeConfig
    providers: dict[str, ProviderConfig]


def default_provider_configs() -> dict[str, ProviderConfig]:
    """One provider of each type, named after the type."""
    return {name: ProviderConfig(type=name) for name in PROVIDER_TYPES}


def _apply_bridge_overrides(
    config: BridgeConfig, raw: dict[str, Any],
) -> None:
    valid = {f.name: f for f in fields(BridgeConfig)}
    for key, value in raw.items():
        if key not in valid:
            logger.warning("load_yaml_config: unknown bridge key '%s' ignored", key)
            continue
        current = getattr(config, key)
        if isinstance(current, bool):
            value = bool(value)
        elif isinstance(current, int):
            value = int(value)
        elif isinstance(current, float):
            value = float(value)
        setattr(config, key, value)


def _parse_providers(raw: dict[str, Any]) -> dict[str, ProviderConfig]:
    providers: dict[str, ProviderConfig] = {}
    for name, cfg in raw.items():
        cfg = cfg or {}
        ptype = cfg.get("type", name)
        if ptype not in PROVIDER_TYPES:
            logger.warning(
                "Unknown provider type '%s' for '%s', skipping",
                ptype, name,
            )
            continue
        env = cfg.get("env") or {}
        providers[name] = ProviderConfig(
            type=ptype,
            command=cfg.get("command"),
            api_key_env=cfg.get("api_key_env"),
            env={str(k): str(v) for k, v in env.items()},
        )
    return providers


def load_yaml_config(
    path: str | Path,
    base: BridgeConfig | None = None,
) -> BridgeSettings:
    """Load and parse a YAML config file.

    Values in the ``bridge:`` section override *base* (which defaults to
    BridgeConfig.from_env()). A missing ``providers:`` section registers
    one provider of each type.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)",
        path, path.exists(),
    )
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    config = base if base is not None else BridgeConfig.from_env()
    _apply_bridge_overrides(config, data.get("bridge") or {})

    raw_providers = data.get("providers")
    if raw_providers:
        providers = _parse_providers(raw_providers)
    else:
        providers = default_provider_configs()

    logger.info(
        "load_yaml_config: providers=%s default=%s",
        ", ".join(providers) or "none", config.default_provider,
    )
    return BridgeSettings(bridge=config, providers=providers)
