"""Supervisor for the locally spawned ``opencode serve`` process.

The server is shared by every OpenCode chat in the process. The
supervisor either adopts a server that is already answering health
checks (``connect``) or spawns one (``start``), and only ever kills a
process it spawned itself.

State changes go through ``next_status()`` and the TRANSITIONS table;
notifications are pushed onto subscriber queues.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

import aiohttp

from ..binaries import BinaryResolver
from ..errors import ExecutableNotFoundError, ProcessCrashError, StartupTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4096
DEFAULT_HOST = "127.0.0.1"
INSTALL_HINT = "Install it with: npm install -g opencode-ai"


class ServerStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class SupervisorSignal(str, Enum):
    START = "start"            # spawn requested
    HEALTHY = "healthy"        # spawned child passed its health check
    CONNECTED = "connected"    # adopted an already-running server
    UNHEALTHY = "unhealthy"    # running server stopped answering
    FAILED = "failed"          # spawn or startup failed
    EXITED = "exited"          # child process exited
    STOP = "stop"              # shutdown requested
    STOPPED = "stopped"        # shutdown completed
    RELEASE = "release"        # forget an adopted server


_S = ServerStatus
_G = SupervisorSignal

TRANSITIONS: dict[tuple[ServerStatus, SupervisorSignal], ServerStatus] = {
    (_S.STOPPED, _G.START): _S.STARTING,
    (_S.STOPPED, _G.CONNECTED): _S.RUNNING,
    (_S.STOPPED, _G.EXITED): _S.STOPPED,
    (_S.STOPPED, _G.FAILED): _S.ERROR,
    (_S.STOPPED, _G.STOPPED): _S.STOPPED,
    (_S.STOPPED, _G.RELEASE): _S.STOPPED,
    (_S.STARTING, _G.HEALTHY): _S.RUNNING,
    (_S.STARTING, _G.CONNECTED): _S.RUNNING,
    (_S.STARTING, _G.FAILED): _S.ERROR,
    (_S.STARTING, _G.EXITED): _S.STOPPED,
    (_S.STARTING, _G.STOP): _S.STOPPING,
    (_S.RUNNING, _G.CONNECTED): _S.RUNNING,
    (_S.RUNNING, _G.UNHEALTHY): _S.STOPPED,
    (_S.RUNNING, _G.FAILED): _S.ERROR,
    (_S.RUNNING, _G.EXITED): _S.STOPPED,
    (_S.RUNNING, _G.STOP): _S.STOPPING,
    (_S.RUNNING, _G.RELEASE): _S.STOPPED,
    (_S.STOPPING, _G.EXITED): _S.STOPPED,
    (_S.STOPPING, _G.STOPPED): _S.STOPPED,
    (_S.ERROR, _G.START): _S.STARTING,
    (_S.ERROR, _G.CONNECTED): _S.RUNNING,
    (_S.ERROR, _G.FAILED): _S.ERROR,
    (_S.ERROR, _G.EXITED): _S.STOPPED,
    (_S.ERROR, _G.STOP): _S.STOPPING,
    (_S.ERROR, _G.RELEASE): _S.STOPPED,
}


def next_status(status: ServerStatus, signal: SupervisorSignal) -> ServerStatus | None:
    """Target status for *signal* in *status*, or None if not allowed."""
    return TRANSITIONS.get((status, signal))


@dataclass
class ServerState:
    port: int = DEFAULT_PORT
    pid: int | None = None
    status: ServerStatus = ServerStatus.STOPPED
    error: str | None = None


@dataclass
class SupervisorEvent:
    """One notification: starting, ready, connected, exit, crash, error,
    stopping or shutdown."""
    kind: str
    data: dict[str, Any] = field(default_factory=dict)


class OpenCodeServer:
    """Owns the lifecycle of one OpenCode HTTP server."""

    def __init__(
        self,
        resolver: BinaryResolver | None = None,
        port: int = DEFAULT_PORT,
        *,
        host: str = DEFAULT_HOST,
        startup_timeout: float = 30.0,
        shutdown_timeout: float = 5.0,
        health_interval: float = 0.1,
        health_timeout: float = 2.0,
        command: Sequence[str] | None = None,
    ) -> None:
        self._resolver = resolver
        self._host = host
        self._startup_timeout = startup_timeout
        self._shutdown_timeout = shutdown_timeout
        self._health_interval = health_interval
        self._health_timeout = health_timeout
        # Full argv override; when unset the resolved binary runs `serve --port N`.
        self._command = list(command) if command else None

        self._state = ServerState(port=port)
        self._we_started = False
        # set by shutdown(); a startup interrupted by it is not a failure
        self._stop_requested = False
        self._process: asyncio.subprocess.Process | None = None
        self._start_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None
        self._pump_tasks: list[asyncio.Task] = []
        self._subscribers: list[asyncio.Queue[SupervisorEvent]] = []
        self._http: aiohttp.ClientSession | None = None
        self.spawn_count = 0

    # ── state ──

    @property
    def state(self) -> ServerState:
        return replace(self._state)

    @property
    def status(self) -> ServerStatus:
        return self._state.status

    @property
    def port(self) -> int:
        return self._state.port

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._state.port}"

    @property
    def we_started_server(self) -> bool:
        return self._we_started

    @property
    def is_running(self) -> bool:
        return self._state.status is ServerStatus.RUNNING

    def _apply(self, signal: SupervisorSignal, **changes: Any) -> bool:
        target = next_status(self._state.status, signal)
        if target is None:
            logger.debug(
                "[opencode-server] ignoring %s in state %s",
                signal.value, self._state.status.value,
            )
            return False
        if target is not self._state.status:
            logger.debug(
                "[opencode-server] %s -> %s (%s)",
                self._state.status.value, target.value, signal.value,
            )
        self._state.status = target
        for key, value in changes.items():
            setattr(self._state, key, value)
        return True

    # ── notifications ──

    def subscribe(self) -> asyncio.Queue[SupervisorEvent]:
        queue: asyncio.Queue[SupervisorEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SupervisorEvent]) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    def _notify(self, kind: str, **data: Any) -> None:
        event = SupervisorEvent(kind=kind, data=data)
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    # ── health ──

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._health_timeout),
            )
        return self._http

    async def check_health(self) -> bool:
        """True if GET /global/health answers 200 with ``healthy: true``."""
        try:
            async with self._session().get(f"{self.url}/global/health") as resp:
                if resp.status != 200:
                    return False
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
            return False
        return isinstance(data, dict) and data.get("healthy") is True

    async def connect(self) -> bool:
        """Adopt a server that is already healthy on our port."""
        if not await self.check_health():
            return False
        self._apply(SupervisorSignal.CONNECTED, pid=0, error=None)
        self._we_started = False
        logger.info("[opencode-server] connected to existing server at %s", self.url)
        self._notify("connected", port=self._state.port)
        return True

    # ── start ──

    async def start(self) -> None:
        """Spawn the server and wait for it to become healthy.

        Concurrent callers share the in-flight start.
        """
        if self._state.status is ServerStatus.RUNNING:
            return
        if self._start_task is None or self._start_task.done():
            self._start_task = asyncio.ensure_future(self._start())
        await asyncio.shield(self._start_task)

    def _argv(self) -> list[str]:
        if self._command:
            return list(self._command)
        result = self._resolver.resolve_binary("opencode") if self._resolver else None
        if result is None:
            raise ExecutableNotFoundError("opencode", INSTALL_HINT)
        return [result.path, "serve", "--port", str(self._state.port)]

    async def _start(self) -> None:
        self._stop_requested = False
        self._apply(SupervisorSignal.START, pid=None, error=None)
        self._notify("starting", port=self._state.port)

        try:
            argv = await asyncio.to_thread(self._argv)
        except ExecutableNotFoundError as exc:
            self._fail(str(exc))
            raise

        if self._resolver is not None:
            env = await asyncio.to_thread(self._resolver.build_env, "opencode")
        else:
            env = dict(os.environ)
        logger.info("[opencode-server] starting: %s", " ".join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            self._fail(str(exc))
            raise ProcessCrashError("opencode server", None, str(exc)) from exc

        self.spawn_count += 1
        self._process = process
        self._we_started = True
        self._state.pid = process.pid
        self._pump_tasks = [
            asyncio.ensure_future(self._pump(process.stdout, logging.DEBUG)),
            asyncio.ensure_future(self._pump(process.stderr, logging.WARNING)),
        ]
        self._exit_task = asyncio.ensure_future(self._watch_exit(process))
        await self.wait_for_ready()

    def _fail(self, message: str) -> None:
        self._apply(SupervisorSignal.FAILED, error=message)
        self._notify("error", error=message)

    async def _pump(self, stream: asyncio.StreamReader | None, level: int) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.log(level, "[opencode-server] %s", text)

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        was_running = self._state.status is ServerStatus.RUNNING
        we_started = self._we_started and process is self._process
        logger.info("[opencode-server] process exited with code %s", returncode)
        self._apply(SupervisorSignal.EXITED, pid=None)
        self._notify("exit", returncode=returncode)
        if was_running and we_started:
            logger.warning("[opencode-server] server crashed (rc=%s)", returncode)
            self._notify("crash", returncode=returncode)
        if process is self._process:
            self._process = None
            self._we_started = False

    async def wait_for_ready(self) -> None:
        """Poll health until healthy, the child exits, or the timeout passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._startup_timeout
        while loop.time() < deadline:
            if await self.check_health():
                self._apply(SupervisorSignal.HEALTHY)
                logger.info("[opencode-server] ready on port %d", self._state.port)
                self._notify("ready", port=self._state.port)
                return
            process = self._process
            if process is None or process.returncode is not None:
                returncode = process.returncode if process is not None else None
                await self._kill()
                if self._stop_requested:
                    raise ProcessCrashError("opencode server", returncode, "server stopped during startup")
                message = "server exited before becoming healthy"
                self._fail(message)
                raise ProcessCrashError("opencode server", returncode, message)
            await asyncio.sleep(self._health_interval)

        await self._kill()
        error = StartupTimeoutError(self._startup_timeout)
        self._fail(str(error))
        raise error

    async def _kill(self) -> None:
        process = self._process
        if process is None:
            return
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await self._wait_exit()

    async def _wait_exit(self) -> None:
        if self._exit_task is not None:
            await asyncio.shield(self._exit_task)
        for task in self._pump_tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._pump_tasks = []

    # ── entry points ──

    async def ensure_running(self) -> None:
        """Make sure a healthy server is reachable, adopting one if possible."""
        if self._state.status is ServerStatus.RUNNING:
            if await self.check_health():
                return
            logger.warning("[opencode-server] server stopped responding, restarting")
            if self._we_started:
                await self._kill()
            self._apply(SupervisorSignal.UNHEALTHY)

        if self._start_task is not None and not self._start_task.done():
            await asyncio.shield(self._start_task)
            return

        if await self.connect():
            return
        await self.start()

    async def shutdown(self) -> None:
        """Stop the server if we spawned it; leave adopted servers alone."""
        process = self._process
        if not self._we_started or process is None:
            if self._state.status is ServerStatus.RUNNING:
                logger.info("[opencode-server] leaving externally started server running")
            self._apply(SupervisorSignal.RELEASE)
            await self._close_http()
            return

        self._stop_requested = True
        self._apply(SupervisorSignal.STOP)
        self._notify("stopping")
        logger.info("[opencode-server] stopping (pid=%s)", process.pid)
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(asyncio.shield(self._exit_task), self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[opencode-server] did not exit within %ss, killing", self._shutdown_timeout,
            )
            await self._kill()
        await self._wait_exit()

        self._apply(SupervisorSignal.STOPPED, pid=None)
        self._process = None
        self._we_started = False
        self._notify("shutdown")
        await self._close_http()

    async def _close_http(self) -> None:
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
