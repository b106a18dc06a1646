from __future__ import annotations

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from agentbridge.engine.errors import BackendNetworkError
from agentbridge.engine.providers.opencode_client import (
    OpenCodeClient,
    ProviderModel,
    decode_sse,
    is_watcher_noise,
    parse_model_id,
)
from fake_opencode import FakeOpenCode, idle_event


def test_parse_model_id() -> None:
    assert parse_model_id("openai/gpt-5") == {"providerID": "openai", "modelID": "gpt-5"}
    assert parse_model_id("claude-sonnet") == {"providerID": "anthropic", "modelID": "claude-sonnet"}
    known = [ProviderModel(id="openrouter/llama-3", name="llama-3", display_name="Llama 3")]
    assert parse_model_id("llama-3", known) == {"providerID": "openrouter", "modelID": "llama-3"}


def test_is_watcher_noise() -> None:
    def watcher(path: str) -> dict:
        return {"type": "file.watcher.updated", "properties": {"file": path}}

    assert is_watcher_noise(watcher("/p/.git/objects/ab/cd"))
    assert is_watcher_noise(watcher("/p/.git/logs/HEAD"))
    assert is_watcher_noise(watcher("/p/bun.lock"))
    assert not is_watcher_noise(watcher("/p/src/app.py"))
    assert not is_watcher_noise({"type": "file.edited", "properties": {"file": "x.lock"}})


def test_decode_sse() -> None:
    assert decode_sse("", '{"directory": "/d", "payload": {"type": "session.idle", "properties": {}}}') == {
        "type": "session.idle", "properties": {},
    }
    assert decode_sse("message", '{"type": "todo.updated", "properties": {"todos": []}}')["type"] == "todo.updated"
    assert decode_sse("session.idle", '{"sessionID": "s"}') == {
        "type": "session.idle", "properties": {"sessionID": "s"},
    }
    assert decode_sse("", "not json") is None
    assert decode_sse("", '{"no": "type"}') is None


@pytest.mark.asyncio
async def test_session_and_prompt_requests() -> None:
    async with FakeOpenCode() as fake:
        async with OpenCodeClient(fake.url) as client:
            health = await client.health()
            assert health["healthy"] is True

            session_id = await client.create_session("agentbridge-sub", "/work")
            assert session_id == "ses_1"
            assert fake.sessions["ses_1"]["directory"] == "/work"
            assert (await client.get_session(session_id))["id"] == session_id
            assert await client.get_session("ses_missing") is None

            ok = await client.prompt_async(
                session_id,
                [{"type": "text", "text": "hi"}],
                directory="/work",
                agent="plan",
                model={"providerID": "anthropic", "modelID": "claude-sonnet"},
            )
            assert ok
            _, body, directory = fake.prompts[0]
            assert body == {
                "parts": [{"type": "text", "text": "hi"}],
                "agent": "plan",
                "model": {"providerID": "anthropic", "modelID": "claude-sonnet"},
            }
            assert directory == "/work"
            assert not await client.prompt_async("ses_missing", [])

            assert await client.abort_session(session_id)
            assert fake.aborted == [session_id]
            assert await client.reply_question("que_1", [["Yes"]])
            assert fake.replies == [("que_1", [["Yes"]])]
            assert await client.respond_permission(session_id, "per_1", "always")
            assert fake.permissions == [(session_id, "per_1", "always")]
            assert await client.set_auth("anthropic", "sk-test")


@pytest.mark.asyncio
async def test_list_providers_is_cached() -> None:
    async with FakeOpenCode() as fake:
        async with OpenCodeClient(fake.url) as client:
            snapshot = await client.list_providers()
            assert [m.id for m in snapshot.models] == [
                "anthropic/claude-sonnet", "anthropic/claude-haiku", "openai/gpt-5",
            ]
            assert snapshot.models[0].display_name == "Claude Sonnet"
            assert snapshot.models[2].name == "gpt-5"
            assert snapshot.connected == ["anthropic"]

            await client.list_providers()
            assert fake.provider_calls == 1
            await client.list_providers(force_refresh=True)
            assert fake.provider_calls == 2

            assert client.parse_model_id("claude-haiku") == {
                "providerID": "anthropic", "modelID": "claude-haiku",
            }
            client.invalidate_models()
            assert client.cached_models == []


@pytest.mark.asyncio
async def test_unreachable_server_raises_network_error() -> None:
    # nothing listens on port 9 locally
    async with OpenCodeClient("http://127.0.0.1:9", timeout=2) as client:
        assert await client.health() is None
        with pytest.raises(BackendNetworkError):
            await client.create_session("x")
        snapshot = await client.list_providers()
        assert snapshot.models == []


@pytest.mark.asyncio
async def test_event_stream_yields_decoded_events() -> None:
    async with FakeOpenCode() as fake:
        async with OpenCodeClient(fake.url) as client:
            opened = asyncio.Event()
            stream = client.events(opened=opened)
            first = await asyncio.wait_for(stream.__anext__(), 5)
            assert opened.is_set()
            assert first["type"] == "server.connected"

            fake.push({"type": "todo.updated", "properties": {"todos": []}}, idle_event("s"))
            second = await asyncio.wait_for(stream.__anext__(), 5)
            third = await asyncio.wait_for(stream.__anext__(), 5)
            assert second["type"] == "todo.updated"
            assert third == idle_event("s")
            await stream.aclose()


@pytest.mark.asyncio
async def test_event_stream_handles_named_events_and_large_lines() -> None:
    big = "x" * 300_000

    async def events(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        await response.write(b": keepalive\r\n\r\n")
        await response.write(b"event: session.idle\r\ndata: {\"sessionID\": \"s1\"}\r\n\r\n")
        payload = '{"type": "message.part.updated", "properties": {"part": {"text": "%s"}}}' % big
        # split mid-line to exercise reassembly
        data = f"data: {payload}\n\n".encode()
        await response.write(data[:1000])
        await response.write(data[1000:])
        return response

    app = web.Application()
    app.router.add_get("/global/event", events)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        async with OpenCodeClient(f"http://127.0.0.1:{server.port}") as client:
            received = [event async for event in client.events()]
    finally:
        await server.close()

    assert received[0] == {"type": "session.idle", "properties": {"sessionID": "s1"}}
    assert received[1]["properties"]["part"]["text"] == big
    assert len(received) == 2


@pytest.mark.asyncio
async def test_event_stream_http_error() -> None:
    async def events(request: web.Request) -> web.Response:
        return web.Response(status=500)

    app = web.Application()
    app.router.add_get("/global/event", events)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        async with OpenCodeClient(f"http://127.0.0.1:{server.port}") as client:
            with pytest.raises(BackendNetworkError):
                async for _ in client.events():
                    pass
    finally:
        await server.close()
