"""Binary discovery and subprocess environment for provider CLIs.

The default resolver looks for each provider's executable in this order:
an explicit configured command, the login-shell PATH, then common install
directories. Results are cached for the process lifetime and on disk in
``<data_dir>/data/binary-cache.json`` so cold starts skip the login shell.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import BridgeConfig
from .yaml_config import ProviderConfig

logger = logging.getLogger(__name__)

CACHE_VERSION = 1

_ENV_DELIMITER = "_AGENTBRIDGE_ENV_DELIMITER_"
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")

# Provider id -> executable name
BINARY_NAMES = {
    "claude": "claude",
    "codex": "codex",
    "opencode": "opencode",
}

# Provider id -> env var the CLI reads its API key from
API_KEY_TARGETS = {
    "claude": "ANTHROPIC_API_KEY",
    "codex": "OPENAI_API_KEY",
}

# Keys stripped from the inherited env so they don't override the CLI's
# own login (OAuth) credentials.
STRIPPED_ENV_KEYS = {
    "claude": (
        "ANTHROPIC_API_KEY",
        "OPENAI_API_KEY",
        "CLAUDE_CODE_USE_BEDROCK",
        "CLAUDE_CODE_USE_VERTEX",
    ),
}

FALLBACK_PATH = "/opt/homebrew/bin:/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"


@dataclass
class BinaryResult:
    """A validated executable and where it was found."""
    path: str
    source: str  # "configured", "system-path" or "system-install"


class BinaryResolver(Protocol):
    """What providers and the supervisor need from binary discovery."""

    def resolve_binary(self, provider: str) -> BinaryResult | None:
        ...

    def build_env(
        self, provider: str, overrides: dict[str, str] | None = None,
    ) -> dict[str, str]:
        ...


def is_executable(path: str | Path) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def default_shell() -> str:
    shell = os.environ.get("SHELL")
    if shell:
        return shell
    return "/bin/zsh" if sys.platform == "darwin" else "/bin/bash"


def install_dirs(provider: str) -> list[Path]:
    """Common install locations checked after the PATH lookup."""
    home = Path.home()
    return [
        home / f".{provider}" / "bin",
        home / ".local" / "bin",
        home / ".npm-global" / "bin",
        Path("/opt/homebrew/bin"),
        Path("/usr/local/bin"),
        Path("/snap/bin"),
    ]


class BinaryCache:
    """On-disk JSON cache: ``{"version": 1, "entries": {provider: entry|null}}``.

    A null entry records "not found last time" so discovery can be skipped.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict | None:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if isinstance(data, dict) and data.get("version") == CACHE_VERSION:
            entries = data.get("entries")
            if isinstance(entries, dict):
                return data
        return None

    def _write(self, data: dict) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to write binary cache %s: %s", self._path, exc)

    def lookup(self, provider: str) -> tuple[bool, BinaryResult | None]:
        """Return ``(hit, result)``.

        ``(False, None)`` is a miss: no entry, or the cached path no longer
        exists. ``(True, None)`` means the binary was not found last time.
        """
        data = self._read()
        if data is None or provider not in data["entries"]:
            return False, None
        entry = data["entries"][provider]
        if entry is None:
            return True, None
        if not isinstance(entry, dict) or not entry.get("path"):
            return False, None
        if not os.path.exists(entry["path"]):
            logger.info(
                "[%s-binary] cached path no longer exists: %s",
                provider, entry["path"],
            )
            return False, None
        return True, BinaryResult(path=entry["path"], source=entry.get("source", "cache"))

    def store(self, provider: str, result: BinaryResult | None) -> None:
        data = self._read() or {"version": CACHE_VERSION, "entries": {}}
        data["entries"][provider] = (
            {"path": result.path, "source": result.source} if result else None
        )
        self._write(data)

    def remove(self, provider: str) -> None:
        data = self._read()
        if data and provider in data["entries"]:
            del data["entries"][provider]
            self._write(data)

    def clear(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass


def parse_env_output(output: str) -> dict[str, str]:
    """Parse ``env`` output bracketed by the delimiter."""
    sections = output.split(_ENV_DELIMITER)
    if len(sections) < 2:
        return {}
    env: dict[str, str] = {}
    for line in _ANSI_RE.sub("", sections[1]).split("\n"):
        key, sep, value = line.partition("=")
        if sep and key:
            env[key] = value
    return env


class DefaultBinaryResolver:
    """Resolver used when the host application does not inject its own."""

    def __init__(
        self,
        config: BridgeConfig,
        providers: dict[str, ProviderConfig] | None = None,
    ) -> None:
        self._config = config
        self._providers = providers or {}
        self._cache = BinaryCache(config.binary_cache_path)
        self._resolved: dict[str, BinaryResult | None] = {}
        self._shell_env: dict[str, str] | None = None
        # providers resolve from worker threads; one login shell at a time
        self._shell_lock = threading.Lock()

    @property
    def cache(self) -> BinaryCache:
        return self._cache

    def _provider_config(self, provider: str) -> ProviderConfig | None:
        cfg = self._providers.get(provider)
        if cfg is not None:
            return cfg
        for candidate in self._providers.values():
            if candidate.type == provider:
                return candidate
        return None

    def resolve_binary(self, provider: str) -> BinaryResult | None:
        if provider in self._resolved:
            return self._resolved[provider]

        cfg = self._provider_config(provider)
        binary_name = BINARY_NAMES.get(provider, provider)
        if cfg and cfg.command:
            if is_executable(cfg.command):
                result = BinaryResult(path=cfg.command, source="configured")
                self._resolved[provider] = result
                return result
            binary_name = cfg.command
        else:
            hit, cached = self._cache.lookup(provider)
            if hit:
                self._resolved[provider] = cached
                return cached

        result = self._discover(provider, binary_name)
        self._resolved[provider] = result
        if not (cfg and cfg.command):
            self._cache.store(provider, result)
        if result is None:
            logger.error("[%s-binary] %s not found anywhere", provider, binary_name)
        else:
            logger.info(
                "[%s-binary] using %s (source: %s)",
                provider, result.path, result.source,
            )
        return result

    def _discover(self, provider: str, binary_name: str) -> BinaryResult | None:
        search_path = self.shell_env().get("PATH") or os.environ.get("PATH")
        found = shutil.which(binary_name, path=search_path)
        if found and is_executable(found):
            return BinaryResult(path=found, source="system-path")
        for directory in install_dirs(provider):
            candidate = directory / binary_name
            if is_executable(candidate):
                return BinaryResult(path=str(candidate), source="system-install")
        return None

    def shell_env(self) -> dict[str, str]:
        """Environment of a login shell, cached for the process lifetime.

        Blocks for up to five seconds on a cold cache; async callers run
        it in a worker thread.
        """
        with self._shell_lock:
            return self._load_shell_env()

    def _load_shell_env(self) -> dict[str, str]:
        if self._shell_env is not None:
            return dict(self._shell_env)
        if not self._config.resolve_shell_env:
            self._shell_env = dict(os.environ)
            return dict(self._shell_env)

        shell = default_shell()
        command = f'echo -n "{_ENV_DELIMITER}"; env; echo -n "{_ENV_DELIMITER}"; exit'
        try:
            result = subprocess.run(
                [shell, "-ilc", command],
                capture_output=True,
                text=True,
                timeout=5,
                env={
                    "DISABLE_AUTO_UPDATE": "true",
                    "HOME": str(Path.home()),
                    "USER": os.environ.get("USER", ""),
                    "SHELL": shell,
                },
            )
            env = parse_env_output(result.stdout)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("Failed to load shell environment: %s", exc)
            env = {}

        if not env:
            logger.info("Using fallback environment")
            env = {
                "HOME": str(Path.home()),
                "USER": os.environ.get("USER", ""),
                "PATH": FALLBACK_PATH,
                "SHELL": shell,
                "TERM": "xterm-256color",
            }
        else:
            logger.info("Loaded %d environment variables from shell", len(env))
        self._shell_env = env
        return dict(env)

    def build_env(
        self, provider: str, overrides: dict[str, str] | None = None,
    ) -> dict[str, str]:
        """Shell env overlaid with this process's env, keeping the shell PATH.

        Configured provider env and *overrides* are applied last; an empty
        string value removes the key.
        """
        env = self.shell_env()
        shell_path = env.get("PATH")
        env.update(os.environ)
        if shell_path:
            env["PATH"] = shell_path

        for key in STRIPPED_ENV_KEYS.get(provider, ()):
            if env.pop(key, None) is not None:
                logger.debug("[%s-env] stripped %s", provider, key)

        env.setdefault("HOME", str(Path.home()))
        env.setdefault("USER", os.environ.get("USER", ""))
        env.setdefault("SHELL", default_shell())
        env.setdefault("TERM", "xterm-256color")

        cfg = self._provider_config(provider)
        custom: dict[str, str] = {}
        if cfg is not None:
            if cfg.api_key_env:
                key = os.environ.get(cfg.api_key_env)
                if key:
                    custom[API_KEY_TARGETS.get(provider, cfg.api_key_env)] = key
            custom.update(cfg.env)
        if overrides:
            custom.update(overrides)

        for key, value in custom.items():
            if value == "":
                env.pop(key, None)
            else:
                env[key] = value
        return env

    def forget(self) -> None:
        """Drop in-memory results; the on-disk cache is kept."""
        self._resolved.clear()
        self._shell_env = None

    def clear(self, provider: str | None = None) -> None:
        """Forget cached results (both in memory and on disk)."""
        if provider is None:
            self._resolved.clear()
            self._shell_env = None
            self._cache.clear()
        else:
            self._resolved.pop(provider, None)
            self._cache.remove(provider)
