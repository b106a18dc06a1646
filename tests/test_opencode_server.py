"""OpenCode server supervisor: state machine, adoption, spawn, crash and timeout."""
from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sys

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from agentbridge.engine.errors import (
    ExecutableNotFoundError,
    ProcessCrashError,
    StartupTimeoutError,
)
from agentbridge.engine.providers.opencode_server import (
    TRANSITIONS,
    OpenCodeServer,
    ServerStatus,
    SupervisorSignal,
    next_status,
)

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


@contextlib.asynccontextmanager
async def health_server(healthy: bool = True):
    """A stand-in HTTP endpoint answering /global/health."""
    async def health(request: web.Request) -> web.Response:
        return web.json_response({"healthy": healthy, "version": "test"})

    app = web.Application()
    app.router.add_get("/global/health", health)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


def drain(queue: asyncio.Queue) -> list[str]:
    kinds = []
    while not queue.empty():
        kinds.append(queue.get_nowait().kind)
    return kinds


async def wait_for_kind(queue: asyncio.Queue, kind: str, timeout: float = 5.0) -> list[str]:
    seen = []

    async def _wait() -> None:
        while True:
            event = await queue.get()
            seen.append(event.kind)
            if event.kind == kind:
                return

    await asyncio.wait_for(_wait(), timeout)
    return seen


def test_transition_table() -> None:
    assert next_status(ServerStatus.STOPPED, SupervisorSignal.START) is ServerStatus.STARTING
    assert next_status(ServerStatus.STARTING, SupervisorSignal.HEALTHY) is ServerStatus.RUNNING
    assert next_status(ServerStatus.RUNNING, SupervisorSignal.EXITED) is ServerStatus.STOPPED
    assert next_status(ServerStatus.RUNNING, SupervisorSignal.STOP) is ServerStatus.STOPPING
    assert next_status(ServerStatus.STOPPING, SupervisorSignal.STOPPED) is ServerStatus.STOPPED
    assert next_status(ServerStatus.STARTING, SupervisorSignal.FAILED) is ServerStatus.ERROR
    assert next_status(ServerStatus.ERROR, SupervisorSignal.START) is ServerStatus.STARTING
    # not allowed
    assert next_status(ServerStatus.RUNNING, SupervisorSignal.START) is None
    assert next_status(ServerStatus.STOPPED, SupervisorSignal.HEALTHY) is None
    assert next_status(ServerStatus.STOPPING, SupervisorSignal.START) is None


def test_every_status_is_reachable() -> None:
    targets = set(TRANSITIONS.values())
    assert targets == set(ServerStatus)


@pytest.mark.asyncio
async def test_connect_adopts_existing_server() -> None:
    async with health_server() as http:
        server = OpenCodeServer(port=http.port, command=SLEEPER)
        events = server.subscribe()
        await server.ensure_running()
        await server.ensure_running()

        assert server.status is ServerStatus.RUNNING
        assert server.spawn_count == 0
        assert not server.we_started_server
        assert server.state.pid == 0
        assert drain(events) == ["connected"]

        # leaving an adopted server alone
        await server.shutdown()
        assert server.status is ServerStatus.STOPPED
        assert drain(events) == []


@pytest.mark.asyncio
async def test_ensure_running_twice_spawns_once() -> None:
    async with health_server() as http:
        server = OpenCodeServer(
            port=http.port, command=SLEEPER, startup_timeout=5, health_interval=0.05,
        )
        try:
            await server.start()
            assert server.spawn_count == 1
            assert server.we_started_server

            await server.ensure_running()
            await server.ensure_running()
            assert server.spawn_count == 1
            assert server.status is ServerStatus.RUNNING
        finally:
            await server.shutdown()


@pytest.mark.asyncio
async def test_concurrent_starts_share_one_spawn() -> None:
    async with health_server() as http:
        server = OpenCodeServer(port=http.port, command=SLEEPER, startup_timeout=5)
        try:
            await asyncio.gather(server.start(), server.start(), server.start())
            assert server.spawn_count == 1
        finally:
            await server.shutdown()


@pytest.mark.asyncio
async def test_external_kill_is_a_crash() -> None:
    async with health_server() as http:
        server = OpenCodeServer(port=http.port, command=SLEEPER, startup_timeout=5)
        events = server.subscribe()
        try:
            await server.start()
            pid = server.state.pid
            assert pid
            os.kill(pid, signal.SIGKILL)

            seen = await wait_for_kind(events, "crash")
            assert "exit" in seen
            assert server.status is ServerStatus.STOPPED
            assert not server.we_started_server
        finally:
            await server.shutdown()


@pytest.mark.asyncio
async def test_intentional_shutdown_is_not_a_crash() -> None:
    async with health_server() as http:
        server = OpenCodeServer(port=http.port, command=SLEEPER, startup_timeout=5)
        events = server.subscribe()
        await server.start()
        await server.shutdown()

        kinds = drain(events)
        assert kinds[:2] == ["starting", "ready"]
        assert "stopping" in kinds
        assert "exit" in kinds
        assert kinds[-1] == "shutdown"
        assert "crash" not in kinds
        assert server.status is ServerStatus.STOPPED
        assert server.state.pid is None


@pytest.mark.asyncio
async def test_shutdown_while_starting_ends_stopped() -> None:
    async with health_server(healthy=False) as http:
        server = OpenCodeServer(
            port=http.port, command=SLEEPER, startup_timeout=10, health_interval=0.05,
        )
        events = server.subscribe()
        starting = asyncio.ensure_future(server.start())

        async def _spawned() -> None:
            while server.state.pid is None:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_spawned(), 5)
        assert server.status is ServerStatus.STARTING
        await server.shutdown()

        with pytest.raises(ProcessCrashError) as excinfo:
            await asyncio.wait_for(starting, 5)
        assert "stopped during startup" in str(excinfo.value)
        assert server.status is ServerStatus.STOPPED
        assert server.state.error is None
        kinds = drain(events)
        assert "error" not in kinds
        assert "crash" not in kinds
        assert kinds[-1] == "shutdown"


@pytest.mark.asyncio
async def test_startup_timeout_kills_process() -> None:
    async with health_server(healthy=False) as http:
        server = OpenCodeServer(
            port=http.port, command=SLEEPER, startup_timeout=0.5, health_interval=0.05,
        )
        events = server.subscribe()
        with pytest.raises(StartupTimeoutError):
            await server.start()
        assert server._process is None
        assert server.status is ServerStatus.ERROR
        assert "Server startup timeout" in server.state.error
        kinds = drain(events)
        assert "exit" in kinds
        assert "error" in kinds
        assert "crash" not in kinds
        await server.shutdown()


@pytest.mark.asyncio
async def test_child_exiting_early_fails_start() -> None:
    async with health_server(healthy=False) as http:
        server = OpenCodeServer(
            port=http.port,
            command=[sys.executable, "-c", "raise SystemExit(3)"],
            startup_timeout=5,
            health_interval=0.05,
        )
        with pytest.raises(ProcessCrashError) as excinfo:
            await server.start()
        assert "exited" in str(excinfo.value)
        assert server.status is ServerStatus.ERROR
        await server.shutdown()


@pytest.mark.asyncio
async def test_missing_binary() -> None:
    server = OpenCodeServer(resolver=None, port=1)
    with pytest.raises(ExecutableNotFoundError):
        await server.start()
    assert server.status is ServerStatus.ERROR
    await server.shutdown()


@pytest.mark.asyncio
async def test_unhealthy_adopted_server_is_replaced() -> None:
    state = {"healthy": True}

    async def health(request: web.Request) -> web.Response:
        return web.json_response({"healthy": state["healthy"]})

    app = web.Application()
    app.router.add_get("/global/health", health)
    http = TestServer(app, host="127.0.0.1")
    await http.start_server()
    try:
        server = OpenCodeServer(port=http.port, command=SLEEPER, startup_timeout=0.3, health_interval=0.05)
        await server.ensure_running()
        assert server.status is ServerStatus.RUNNING

        state["healthy"] = False
        with pytest.raises(StartupTimeoutError):
            await server.ensure_running()
        assert server.spawn_count == 1
        await server.shutdown()
    finally:
        await http.close()
