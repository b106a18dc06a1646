from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

from agentbridge.engine.binaries import BinaryResult
from agentbridge.engine.config import BridgeConfig
from agentbridge.engine.context import RuntimeContext


class FakeResolver:
    """Resolves provider names to fixed paths; env is this process's env."""

    def __init__(self, binaries: dict[str, str] | None = None) -> None:
        self.binaries = dict(binaries or {})

    def resolve_binary(self, provider: str) -> BinaryResult | None:
        path = self.binaries.get(provider)
        if path is None:
            return None
        return BinaryResult(path=path, source="configured")

    def build_env(self, provider: str, overrides: dict[str, str] | None = None) -> dict[str, str]:
        env = dict(os.environ)
        env.update(overrides or {})
        return env


def write_script(path: Path, body: str) -> str:
    """Write an executable Python script and return its path."""
    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def bridge_config(tmp_path: Path) -> BridgeConfig:
    return BridgeConfig(data_dir=str(tmp_path / "data"), resolve_shell_env=False)


@pytest.fixture
def make_context(bridge_config: BridgeConfig):
    def _make(binaries: dict[str, str] | None = None, **overrides) -> RuntimeContext:
        for key, value in overrides.items():
            setattr(bridge_config, key, value)
        return RuntimeContext(bridge_config, resolver=FakeResolver(binaries)).init()

    return _make


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep credential and MCP lookups away from the real home directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("CODEX_HOME", str(home / ".codex"))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    return home
