"""OpenAI Codex CLI provider.

Runs `codex exec --json` once per turn (resuming the thread when a
session id is given) and feeds its JSONL events through the Codex
transformer. File changes reported by Codex are enriched with a
structured patch computed from the worktree.
"""
from __future__ import annotations

import base64
import json
import logging
import os
import shutil
import tempfile
import tomllib
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from agentbridge.adapters.chunks import (
    Chunk,
    Error,
    Finish,
    SessionInit,
    ToolOutputAvailable,
)

from ..errors import ProcessCrashError, error_chunk_for
from ..sessions import ActiveSession
from .base import AuthStatus, ChatOptions, CliProcess, FileChangeTracker, ImageAttachment, Provider
from .codex_transform import CodexTransformState, create_codex_transformer
from .diffs import worktree_patch

logger = logging.getLogger(__name__)

REASONING_EFFORTS = ("minimal", "low", "medium", "high", "xhigh")
SANDBOX_MODES = ("read-only", "workspace-write", "danger-full-access")
COMPACT_UNSUPPORTED = "Context compaction is not supported by the Codex provider."


def codex_home() -> Path:
    return Path(os.environ.get("CODEX_HOME") or Path.home() / ".codex")


def write_temp_images(images: list[ImageAttachment]) -> tuple[str, list[str]]:
    """Write images to a temp dir; Codex takes file paths, not base64."""
    directory = tempfile.mkdtemp(prefix="codex-images-")
    paths = []
    for index, image in enumerate(images):
        path = os.path.join(directory, f"image-{index}.{image.extension}")
        with open(path, "wb") as f:
            f.write(base64.b64decode(image.base64_data))
        paths.append(path)
    return directory, paths


def read_auth_token(home: Path | None = None) -> tuple[str, str] | None:
    """Find a credential the Codex CLI will use, as ``(method, token)``."""
    if os.environ.get("OPENAI_API_KEY"):
        return "api-key", os.environ["OPENAI_API_KEY"]
    home = home or codex_home()
    for name in ("auth.json", ".credentials.json", "config.json"):
        path = home / name
        try:
            auth = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            continue
        if not isinstance(auth, dict):
            continue
        api_key = auth.get("OPENAI_API_KEY") or auth.get("api_key") or auth.get("openai_api_key")
        if api_key:
            return "api-key", api_key
        tokens = auth.get("tokens") if isinstance(auth.get("tokens"), dict) else {}
        token = (
            tokens.get("access_token")
            or auth.get("access_token")
            or auth.get("accessToken")
            or auth.get("token")
        )
        if token:
            return "oauth", token
    return None


class CodexProvider(Provider):
    """Provider backed by the OpenAI Codex CLI."""

    install_hint = "Install it with: npm install -g @openai/codex"

    @property
    def name(self) -> str:
        return "codex"

    @property
    def display_name(self) -> str:
        return "OpenAI Codex"

    def build_command(
        self,
        binary: str,
        options: ChatOptions,
        image_paths: list[str] | None = None,
    ) -> list[str]:
        """Build the `codex exec` argv; the prompt is written to stdin."""
        cmd = [binary, "exec", "--json", "--skip-git-repo-check"]
        if options.model:
            cmd.extend(["--model", options.model])
        cmd.extend(["-C", options.cwd])

        # Plan mode is read-only with high reasoning effort
        if options.plan_mode:
            sandbox, effort = "read-only", "high"
        else:
            sandbox = options.sandbox_mode if options.sandbox_mode in SANDBOX_MODES else "workspace-write"
            effort = options.reasoning_effort if options.reasoning_effort in REASONING_EFFORTS else None
        cmd.extend(["--sandbox", sandbox])
        if effort:
            cmd.extend(["-c", f'model_reasoning_effort="{effort}"'])

        for path in image_paths or []:
            cmd.extend(["--image", path])
        if options.session_id:
            cmd.extend(["resume", options.session_id])
        cmd.append("-")
        return cmd

    async def _enrich(self, chunk: Chunk, cwd: str, state: CodexTransformState) -> Chunk:
        """Attach the worktree diff to a completed file change."""
        if not isinstance(chunk, ToolOutputAvailable):
            return chunk
        path = state.file_changes.pop(chunk.tool_call_id, None)
        if not path:
            return chunk
        patch = await worktree_patch(cwd, path)
        if patch is None:
            return chunk
        output = dict(chunk.output) if isinstance(chunk.output, dict) else {}
        output.update(patch)
        return ToolOutputAvailable(tool_call_id=chunk.tool_call_id, output=output)

    async def _stream(self, options: ChatOptions, session: ActiveSession) -> AsyncIterator[Chunk]:
        if options.prompt.strip() == "/compact":
            yield Error(error_text=COMPACT_UNSUPPORTED)
            yield Finish()
            return

        binary = await self.resolve_binary()
        env = await self.build_env()
        transformer = create_codex_transformer(session_id=options.session_id, model=options.model)
        tracker = FileChangeTracker(options.sub_chat_id, options.on_file_changed)

        # Codex reports nothing about MCP servers, so announce the configured ones.
        init_chunk: Chunk | None = None
        mcp = await self.get_mcp_config(options.project_path or options.cwd)
        if mcp:
            init_chunk = SessionInit(
                mcp_servers=[{"name": n, "status": "connected"} for n in mcp],
            )

        image_dir: str | None = None
        process: CliProcess | None = None
        try:
            image_paths: list[str] = []
            if options.images:
                image_dir, image_paths = write_temp_images(options.images)
                logger.info("[codex] wrote %d images to %s", len(image_paths), image_dir)

            process = CliProcess(
                self.name,
                self.build_command(binary.path, options, image_paths),
                env=env,
                cwd=options.cwd,
                stdin_data=options.prompt.encode("utf-8"),
            )
            logger.info(
                "[codex] sub-chat %s %s thread",
                options.sub_chat_id, "resuming" if options.session_id else "starting",
            )
            await process.start()

            async for event in process.messages():
                for chunk in transformer.transform(event):
                    chunk = await self._enrich(chunk, options.cwd, transformer.state)
                    tracker.observe(chunk)
                    yield chunk
                if init_chunk is not None and transformer.state.started and not transformer.done:
                    yield init_chunk
                    init_chunk = None
                if transformer.state.session_id:
                    session.session_id = transformer.state.session_id
                if transformer.done:
                    break

            error_chunk = None
            if not transformer.done:
                returncode = await process.wait()
                if returncode != 0:
                    detail = process.stderr_text[-2000:]
                    error_chunk = error_chunk_for(ProcessCrashError(self.name, returncode, detail))
            for chunk in transformer.finalize(error_chunk):
                yield chunk
        finally:
            if process is not None:
                await process.terminate()
            if image_dir is not None:
                shutil.rmtree(image_dir, ignore_errors=True)

    async def get_auth_status(self) -> AuthStatus:
        found = read_auth_token()
        if found is None:
            return AuthStatus(
                authenticated=False,
                error="No OpenAI credentials. Set OPENAI_API_KEY or run 'codex login'.",
            )
        return AuthStatus(authenticated=True, method=found[0])

    async def get_mcp_config(self, project_path: str) -> dict[str, Any] | None:
        """MCP servers from ``~/.codex/config.toml``."""
        path = codex_home() / "config.toml"
        try:
            with open(path, "rb") as f:
                config = tomllib.load(f)
        except FileNotFoundError:
            return None
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.error("[codex] error reading %s: %s", path, exc)
            return None
        servers = config.get("mcp_servers") or {}
        if servers:
            logger.info("[codex] found MCP servers: %s", ", ".join(servers))
        return servers or None
