"""Abstract base for chat providers.

Each provider drives a different coding-agent backend (Codex CLI,
OpenCode server, Claude Agent SDK) and translates its native events into
canonical chunks. Callers use chat() for a streamed turn and cancel()
to stop one; the shared session bookkeeping and terminal guarantees
live in agentbridge.engine.sessions.
"""
from __future__ import annotations

import abc
import asyncio
import collections
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentbridge.adapters.chunks import Chunk, ToolInputAvailable, ToolOutputAvailable

from ..binaries import BinaryResult
from ..config import FileChangedCallback
from ..errors import ExecutableNotFoundError, ProcessCrashError
from ..sessions import ActiveSession, ActiveSessions, guarded_stream

if TYPE_CHECKING:
    from ..context import RuntimeContext

logger = logging.getLogger(__name__)

FILE_WRITE_TOOLS = ("Write", "Edit")


@dataclass
class ImageAttachment:
    """A base64-encoded image sent along with the prompt."""
    media_type: str
    base64_data: str
    filename: str | None = None

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.base64_data}"

    @property
    def extension(self) -> str:
        return self.media_type.split("/")[-1] or "png"


@dataclass
class ChatOptions:
    """Provider-agnostic options for one chat turn."""
    sub_chat_id: str
    prompt: str
    cwd: str
    chat_id: str = ""
    project_path: str | None = None
    mode: str = "agent"  # "agent" or "plan"
    session_id: str | None = None
    model: str | None = None
    images: list[ImageAttachment] = field(default_factory=list)
    # Diff keys exported by the previous turn's finish metadata
    emitted_diff_keys: list[str] = field(default_factory=list)
    reasoning_effort: str | None = None
    sandbox_mode: str | None = None
    on_file_changed: FileChangedCallback | None = None

    @property
    def plan_mode(self) -> bool:
        return self.mode == "plan"


@dataclass
class AuthStatus:
    authenticated: bool
    method: str | None = None  # "api-key" or "oauth"
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"authenticated": self.authenticated}
        if self.method:
            d["method"] = self.method
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class ProviderStatus:
    name: str
    available: bool
    auth: AuthStatus
    binary: str | None = None
    active_sessions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "available": self.available,
            "binary": self.binary,
            "auth": self.auth.to_dict(),
            "activeSessions": self.active_sessions,
        }


class FileChangeTracker:
    """Fires on_file_changed when a Write/Edit tool completes."""

    def __init__(self, sub_chat_id: str, callback: FileChangedCallback | None) -> None:
        self._sub_chat_id = sub_chat_id
        self._callback = callback
        self._inputs: dict[str, tuple[str, Any]] = {}

    def observe(self, chunk: Chunk) -> None:
        if self._callback is None:
            return
        if isinstance(chunk, ToolInputAvailable):
            self._inputs[chunk.tool_call_id] = (chunk.tool_name, chunk.input)
        elif isinstance(chunk, ToolOutputAvailable):
            tool_name, tool_input = self._inputs.pop(chunk.tool_call_id, ("", None))
            if tool_name not in FILE_WRITE_TOOLS or not isinstance(tool_input, dict):
                return
            file_path = tool_input.get("file_path")
            if file_path:
                try:
                    self._callback(file_path, f"tool-{tool_name}", self._sub_chat_id)
                except Exception:
                    logger.exception("on_file_changed callback failed for %s", file_path)


async def read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from *stream* with no size limit.

    Unlike ``StreamReader.readline()``, this never raises
    ``LimitOverrunError``: a single JSONL event carrying a large tool
    result can exceed the default 64 KiB buffer.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunks.append(await stream.read(exc.consumed))
        except asyncio.IncompleteReadError as exc:
            chunks.append(exc.partial)
            return b"".join(chunks)


class CliProcess:
    """A provider CLI child process that writes one JSON object per line."""

    STDERR_TAIL = 50

    def __init__(
        self,
        name: str,
        argv: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        stdin_data: bytes | None = None,
    ) -> None:
        self.name = name
        self.argv = argv
        self._env = env
        self._cwd = cwd
        self._stdin_data = stdin_data
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr: collections.deque[str] = collections.deque(maxlen=self.STDERR_TAIL)
        self._stderr_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def stderr_text(self) -> str:
        return "\n".join(self._stderr)

    async def start(self) -> None:
        try:
            # create_subprocess_exec passes args as array, no shell
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
                cwd=self._cwd,
            )
        except FileNotFoundError as exc:
            raise ExecutableNotFoundError(self.name, str(exc)) from exc
        except OSError as exc:
            raise ProcessCrashError(self.name, None, str(exc)) from exc

        logger.info("%s started (pid=%d)", self.name, self._proc.pid)
        self._stderr_task = asyncio.ensure_future(self._pump_stderr())
        if self._proc.stdin is not None:
            if self._stdin_data:
                self._proc.stdin.write(self._stdin_data)
                try:
                    await self._proc.stdin.drain()
                except (BrokenPipeError, ConnectionResetError):
                    logger.warning("%s closed stdin before the prompt was written", self.name)
            self._proc.stdin.close()

    async def _pump_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            line = await read_line_unbounded(self._proc.stderr)
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr.append(text)
                logger.debug("[%s stderr] %s", self.name, text)

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Parsed JSON objects from stdout; other lines are logged and skipped."""
        assert self._proc is not None and self._proc.stdout is not None
        while True:
            line = await read_line_unbounded(self._proc.stdout)
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                logger.debug("[%s] skipping non-JSON line: %.200s", self.name, text)
                continue
            if isinstance(message, dict):
                yield message

    async def wait(self) -> int:
        assert self._proc is not None
        returncode = await self._proc.wait()
        if self._stderr_task is not None:
            await self._stderr_task
        return returncode

    async def terminate(self, timeout: float = 5.0) -> None:
        """Terminate the child, killing it if it ignores SIGTERM."""
        proc = self._proc
        if proc is None:
            return
        if proc.returncode is None:
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=timeout)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning("%s ignored SIGTERM, killing", self.name)
                proc.kill()
                await proc.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass


class Provider(abc.ABC):
    """Abstract provider interface.

    Subclasses implement _stream(), an async generator of canonical
    chunks for one turn. chat() wraps it with session registration,
    cancellation and the terminal ``finish`` guarantee.
    """

    install_hint = ""

    def __init__(self, context: RuntimeContext) -> None:
        self._context = context
        self._sessions = ActiveSessions()

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'codex', 'opencode')."""

    @property
    def display_name(self) -> str:
        return self.name.title()

    @property
    def context(self) -> RuntimeContext:
        return self._context

    def chat(self, options: ChatOptions) -> AsyncIterator[Chunk]:
        """Stream one turn as canonical chunks, always ending with ``finish``."""
        return guarded_stream(
            self._sessions,
            options.sub_chat_id,
            lambda session: self._stream(options, session),
            provider_name=self.name,
            session_id=options.session_id,
        )

    @abc.abstractmethod
    def _stream(self, options: ChatOptions, session: ActiveSession) -> AsyncIterator[Chunk]:
        """Produce the chunks for one turn."""

    def cancel(self, sub_chat_id: str) -> bool:
        """Abort the call running for *sub_chat_id*; False if none is."""
        session = self._sessions.cancel(sub_chat_id)
        if session is None:
            return False
        logger.info("[%s] cancelling sub-chat %s", self.name, sub_chat_id)
        return True

    def is_active(self, sub_chat_id: str) -> bool:
        return sub_chat_id in self._sessions

    async def resolve_binary(self) -> BinaryResult:
        # discovery may run a login shell; keep it off the event loop
        result = await asyncio.to_thread(self._context.resolver.resolve_binary, self.name)
        if result is None:
            raise ExecutableNotFoundError(self.name, self.install_hint)
        return result

    async def build_env(self, overrides: dict[str, str] | None = None) -> dict[str, str]:
        return await asyncio.to_thread(self._context.resolver.build_env, self.name, overrides)

    def is_available(self) -> bool:
        """Check if this provider's CLI is installed."""
        return self._context.resolver.resolve_binary(self.name) is not None

    @abc.abstractmethod
    async def get_auth_status(self) -> AuthStatus:
        """Whether the backend has usable credentials."""

    async def get_mcp_config(self, project_path: str) -> dict[str, Any] | None:
        """MCP servers the backend will load for *project_path*, if known."""
        return None

    async def respond_tool_approval(
        self,
        tool_use_id: str,
        approved: bool,
        message: str | None = None,
        updated_input: dict[str, Any] | None = None,
    ) -> bool:
        """Answer a pending ask-user-question. Returns False if not routed."""
        return False

    async def get_status(self) -> ProviderStatus:
        binary = await asyncio.to_thread(self._context.resolver.resolve_binary, self.name)
        auth = await self.get_auth_status()
        return ProviderStatus(
            name=self.name,
            available=binary is not None,
            auth=auth,
            binary=binary.path if binary else None,
            active_sessions=len(self._sessions),
        )

    async def shutdown(self) -> None:
        """Abort every in-flight call. Override to release more."""
        for sub_chat_id in self._sessions.ids():
            self._sessions.cancel(sub_chat_id)
