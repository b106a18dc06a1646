"""In-process stand-in for the OpenCode HTTP server, built on aiohttp."""
from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

from aiohttp import web
from aiohttp.test_utils import TestServer

EventScript = Callable[[str, dict[str, Any]], list[dict[str, Any]]]

PROVIDERS = {
    "all": [
        {
            "id": "anthropic",
            "models": {
                "claude-sonnet": {"id": "claude-sonnet", "name": "Claude Sonnet"},
                "claude-haiku": {"id": "claude-haiku", "name": "Claude Haiku"},
            },
        },
        {"id": "openai", "models": {"gpt-5": {"name": "GPT-5"}}},
    ],
    "connected": ["anthropic"],
}


def idle_event(session_id: str) -> dict[str, Any]:
    return {
        "type": "session.status",
        "properties": {"sessionID": session_id, "status": {"type": "idle"}},
    }


class FakeOpenCode:
    """Records requests and pushes scripted events to SSE subscribers."""

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.prompts: list[tuple[str, dict[str, Any], str | None]] = []
        self.replies: list[tuple[str, list[list[str]]]] = []
        self.rejected: list[str] = []
        self.permissions: list[tuple[str, str, str]] = []
        self.aborted: list[str] = []
        self.summarized: list[str] = []
        self.provider_calls = 0
        self.healthy = True
        self.on_prompt: EventScript = lambda session_id, body: [idle_event(session_id)]
        self.on_reply: EventScript = lambda request_id, body: []
        self._subscribers: list[asyncio.Queue] = []
        self._counter = 0
        self.server: TestServer | None = None

    # ── lifecycle ──

    async def __aenter__(self) -> FakeOpenCode:
        app = web.Application()
        app.router.add_get("/global/health", self._health)
        app.router.add_get("/global/event", self._events)
        app.router.add_get("/event", self._events)
        app.router.add_get("/provider", self._providers)
        app.router.add_put("/auth/{provider}", self._ok)
        app.router.add_post("/session", self._create_session)
        app.router.add_get("/session/{id}", self._get_session)
        app.router.add_post("/session/{id}/prompt_async", self._prompt)
        app.router.add_post("/session/{id}/abort", self._abort)
        app.router.add_post("/session/{id}/summarize", self._summarize)
        app.router.add_post("/session/{id}/permissions/{permission}", self._permission)
        app.router.add_post("/question/{id}/reply", self._reply)
        app.router.add_post("/question/{id}/reject", self._reject)
        self.server = TestServer(app, host="127.0.0.1")
        await self.server.start_server()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(None)
        assert self.server is not None
        await self.server.close()

    @property
    def port(self) -> int:
        assert self.server is not None
        return self.server.port

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def push(self, *events: dict[str, Any], directory: str = "/tmp") -> None:
        for event in events:
            for queue in list(self._subscribers):
                queue.put_nowait({"directory": directory, "payload": event})

    # ── handlers ──

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({"healthy": self.healthy, "version": "0.0.0-test"})

    async def _ok(self, request: web.Request) -> web.Response:
        return web.json_response(True)

    async def _providers(self, request: web.Request) -> web.Response:
        self.provider_calls += 1
        return web.json_response(PROVIDERS)

    async def _create_session(self, request: web.Request) -> web.Response:
        body = await request.json()
        self._counter += 1
        session_id = f"ses_{self._counter}"
        self.sessions[session_id] = {
            "id": session_id,
            "title": body.get("title"),
            "directory": request.query.get("directory"),
        }
        return web.json_response(self.sessions[session_id])

    async def _get_session(self, request: web.Request) -> web.Response:
        session = self.sessions.get(request.match_info["id"])
        if session is None:
            return web.json_response({"name": "NotFoundError"}, status=404)
        return web.json_response(session)

    async def _prompt(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if session_id not in self.sessions:
            return web.json_response({"name": "NotFoundError"}, status=404)
        body = await request.json()
        self.prompts.append((session_id, body, request.query.get("directory")))
        events = self.on_prompt(session_id, body)
        asyncio.get_running_loop().call_soon(lambda: self.push(*events))
        return web.Response(status=204)

    async def _abort(self, request: web.Request) -> web.Response:
        self.aborted.append(request.match_info["id"])
        return web.json_response(True)

    async def _summarize(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        self.summarized.append(session_id)
        self.push(
            {"type": "message.part.updated", "properties": {"part": {
                "id": "prt_c", "type": "compaction", "auto": False, "sessionID": session_id,
            }}},
            idle_event(session_id),
        )
        return web.json_response(True)

    async def _permission(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.permissions.append(
            (request.match_info["id"], request.match_info["permission"], body.get("response")),
        )
        return web.json_response(True)

    async def _reply(self, request: web.Request) -> web.Response:
        request_id = request.match_info["id"]
        body = await request.json()
        self.replies.append((request_id, body.get("answers")))
        self.push(*self.on_reply(request_id, body))
        return web.json_response(True)

    async def _reject(self, request: web.Request) -> web.Response:
        request_id = request.match_info["id"]
        self.rejected.append(request_id)
        session_id = next(iter(self.sessions), "")
        self.push(
            {"type": "question.rejected", "properties": {"sessionID": session_id, "requestID": request_id}},
            idle_event(session_id),
        )
        return web.json_response(True)

    async def _events(self, request: web.Request) -> web.StreamResponse:
        # subscribed before the headers go out, so no pushed event is missed
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        try:
            await response.prepare(request)
            await response.write(b": connected\n\n")
            await response.write(
                b'data: {"payload": {"type": "server.connected", "properties": {}}}\n\n',
            )
            while True:
                item = await queue.get()
                if item is None:
                    break
                await response.write(f"data: {json.dumps(item)}\n\n".encode("utf-8"))
        except ConnectionResetError:
            pass
        finally:
            self._subscribers.remove(queue)
        return response
