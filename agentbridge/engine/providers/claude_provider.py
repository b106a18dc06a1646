"""Claude Agent SDK provider.

Runs one claude_agent_sdk.query() per turn against the resolved Claude
CLI. The prompt (with any images) goes in as a single streamed user
message; sessions continue with ``resume``. The SDK iterator is drained
by a background task so it is entered and closed in the same task.
"""
from __future__ import annotations

import asyncio
import collections
import json
import logging
import os
import subprocess
import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from claude_agent_sdk import (
    ClaudeAgentOptions,
    CLINotFoundError,
    ProcessError,
    query,
)

from agentbridge.adapters.chunks import Chunk, Error

from ..errors import (
    ExecutableNotFoundError,
    ProcessCrashError,
    UnknownBackendError,
    classify_error_message,
    error_chunk_for,
)
from ..sessions import ActiveSession, EventQueue, stop_task
from .base import AuthStatus, ChatOptions, FileChangeTracker, Provider
from .claude_transform import create_claude_transformer

logger = logging.getLogger(__name__)

NO_RESPONSE = "No response received from Claude"
OAUTH_TOKEN_PREFIX = "sk-ant-oat01-"
KEYCHAIN_SERVICE = "Claude Code-credentials"
STDERR_TAIL = 50

# Load the same settings, CLAUDE.md and .mcp.json an interactive `claude` would.
SETTING_SOURCES = ["user", "project", "local"]


def build_user_message(options: ChatOptions) -> dict[str, Any]:
    """One streamed user message carrying images and the prompt."""
    content: list[dict[str, Any]] = [
        {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": image.media_type,
                "data": image.base64_data,
            },
        }
        for image in options.images
    ]
    if options.prompt.strip():
        content.append({"type": "text", "text": options.prompt})
    return {
        "type": "user",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": None,
    }


async def prompt_stream(options: ChatOptions) -> AsyncIterator[dict[str, Any]]:
    yield build_user_message(options)


def sdk_env(env: dict[str, str]) -> dict[str, str]:
    """Overrides for ClaudeAgentOptions.env.

    The SDK layers ``options.env`` over this process's environment, so
    variables the resolver dropped are blanked rather than omitted.
    """
    overrides = dict(env)
    for key in os.environ:
        if key not in env:
            overrides[key] = ""
    # the CLI refuses to start when it thinks it is nested in another session
    overrides["CLAUDECODE"] = ""
    return overrides


def _token_from_credentials(raw: str) -> str | None:
    try:
        credentials = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(credentials, dict):
        return None
    token = (credentials.get("claudeAiOauth") or {}).get("accessToken")
    if isinstance(token, str) and token.startswith(OAUTH_TOKEN_PREFIX):
        return token
    return None


def read_oauth_token() -> str | None:
    """The Claude CLI's OAuth token, from ~/.claude/.credentials.json or
    the macOS keychain. Blocking; call it from a worker thread."""
    path = Path.home() / ".claude" / ".credentials.json"
    try:
        token = _token_from_credentials(path.read_text(encoding="utf-8"))
    except OSError:
        token = None
    if token or sys.platform != "darwin":
        return token
    try:
        result = subprocess.run(
            ["security", "find-generic-password", "-s", KEYCHAIN_SERVICE, "-w"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("[claude] keychain lookup failed: %s", exc)
        return None
    if result.returncode != 0:
        return None
    return _token_from_credentials(result.stdout.strip())


class ClaudeProvider(Provider):
    """Provider backed by the Claude Agent SDK.

    Auth: the CLI's own OAuth login (Claude Max plan) by default; the
    token is forwarded as CLAUDE_CODE_OAUTH_TOKEN. If api_key_env is
    configured, ANTHROPIC_API_KEY takes precedence.
    """

    install_hint = "Install it with: curl -fsSL https://claude.ai/install.sh | bash"

    @property
    def name(self) -> str:
        return "claude"

    @property
    def display_name(self) -> str:
        return "Claude Code"

    def build_agent_options(
        self,
        cli_path: str,
        options: ChatOptions,
        env: dict[str, str],
        stderr: Callable[[str], None] | None = None,
    ) -> ClaudeAgentOptions:
        return ClaudeAgentOptions(
            cli_path=cli_path,
            cwd=options.cwd,
            env=sdk_env(env),
            resume=options.session_id,
            model=options.model,
            permission_mode="plan" if options.plan_mode else "bypassPermissions",
            include_partial_messages=True,
            setting_sources=SETTING_SOURCES,
            stderr=stderr,
        )

    def _exit_error(self, returncode: int | None, stderr: str) -> Chunk:
        """Error chunk for a CLI that exited without a result message."""
        exc_class = classify_error_message(stderr)
        if exc_class is UnknownBackendError:
            return error_chunk_for(ProcessCrashError(self.name, returncode, stderr[-2000:]))
        return error_chunk_for(exc_class(stderr[-2000:] or f"exit code {returncode}"))

    async def _stream(self, options: ChatOptions, session: ActiveSession) -> AsyncIterator[Chunk]:
        binary = await self.resolve_binary()
        env = await self.build_env()
        if "ANTHROPIC_API_KEY" not in env:
            token = await asyncio.to_thread(read_oauth_token)
            if token:
                env["CLAUDE_CODE_OAUTH_TOKEN"] = token

        stderr_lines: collections.deque[str] = collections.deque(maxlen=STDERR_TAIL)

        def _capture_stderr(line: str) -> None:
            text = line.rstrip()
            if text:
                stderr_lines.append(text)
                logger.debug("[claude stderr] %s", text)

        agent_options = self.build_agent_options(binary.path, options, env, _capture_stderr)
        transformer = create_claude_transformer(session_id=options.session_id)
        tracker = FileChangeTracker(options.sub_chat_id, options.on_file_changed)
        logger.info(
            "[claude] sub-chat %s %s session (cli=%s, mode=%s)",
            options.sub_chat_id, "resuming" if options.session_id else "starting",
            binary.path, agent_options.permission_mode,
        )

        messages = EventQueue()
        reader = messages.start(query(prompt=prompt_stream(options), options=agent_options))
        message_count = 0
        error_chunk: Chunk | None = None
        try:
            while not transformer.done:
                try:
                    message = await messages.__anext__()
                except StopAsyncIteration:
                    break
                except CLINotFoundError as exc:
                    raise ExecutableNotFoundError(self.name, self.install_hint) from exc
                except ProcessError as exc:
                    stderr = "\n".join(stderr_lines) or exc.stderr or str(exc)
                    error_chunk = self._exit_error(exc.exit_code, stderr)
                    break
                except Exception as exc:
                    # the SDK re-raises transport failures as plain exceptions
                    logger.warning("[claude] query failed: %s", exc)
                    error_chunk = self._exit_error(None, "\n".join(stderr_lines) or str(exc))
                    break

                message_count += 1
                for chunk in transformer.transform(message):
                    tracker.observe(chunk)
                    yield chunk
                if transformer.state.session_id:
                    session.session_id = transformer.state.session_id

            if error_chunk is None and not transformer.done and message_count == 0:
                error_chunk = Error(error_text=NO_RESPONSE)
            for chunk in transformer.finalize(error_chunk):
                yield chunk
        finally:
            await stop_task(reader)

    async def get_auth_status(self) -> AuthStatus:
        if os.environ.get("ANTHROPIC_API_KEY"):
            return AuthStatus(authenticated=True, method="api-key")
        if await asyncio.to_thread(read_oauth_token):
            return AuthStatus(authenticated=True, method="oauth")
        return AuthStatus(
            authenticated=False,
            error="Not logged in. Run 'claude login' or set ANTHROPIC_API_KEY.",
        )

    async def get_mcp_config(self, project_path: str) -> dict[str, Any] | None:
        """Project MCP servers from ``~/.claude.json``."""
        path = Path.home() / ".claude.json"
        try:
            config = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.error("[claude] failed to read MCP config: %s", exc)
            return None
        projects = config.get("projects") or {}
        servers = (projects.get(project_path) or {}).get("mcpServers")
        if not servers:
            with_mcp = [p for p, cfg in projects.items() if (cfg or {}).get("mcpServers")]
            logger.debug(
                "[claude] no MCP servers for %s; configured for: %s",
                project_path, ", ".join(with_mcp) or "(none)",
            )
            return None
        logger.info("[claude] MCP servers for %s: %s", project_path, ", ".join(servers))
        return servers
