"""OpenCodeProvider against an in-process fake server."""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from agentbridge.adapters.chunks import (
    AskUserQuestion,
    AskUserQuestionResult,
    AskUserQuestionTimeout,
    Chunk,
    SystemCompact,
    TextDelta,
)
from agentbridge.engine.providers.base import ChatOptions, ImageAttachment
from agentbridge.engine.providers.opencode_client import OpenCodeClient
from agentbridge.engine.providers.opencode_provider import (
    OpenCodeProvider,
    build_parts,
    event_session_id,
)
from fake_opencode import FakeOpenCode, idle_event

OnChunk = Callable[[Chunk], Awaitable[None]]


def text_part(session_id: str, part_id: str, delta: str) -> dict:
    return {
        "type": "message.part.updated",
        "properties": {
            "part": {"id": part_id, "type": "text", "sessionID": session_id},
            "delta": delta,
        },
    }


def question(session_id: str, request_id: str = "que_1") -> dict:
    return {"type": "question.asked", "properties": {
        "id": request_id,
        "sessionID": session_id,
        "questions": [{
            "question": "Proceed?",
            "header": "Confirm",
            "options": [{"label": "Yes"}, {"label": "No"}],
        }],
    }}


async def run_chat(
    provider: OpenCodeProvider, options: ChatOptions, on_chunk: OnChunk | None = None,
) -> list[Chunk]:
    chunks = []

    async def _consume() -> None:
        async for chunk in provider.chat(options):
            chunks.append(chunk)
            if on_chunk is not None:
                await on_chunk(chunk)

    await asyncio.wait_for(_consume(), timeout=10)
    return chunks


def types(chunks: list[Chunk]) -> list[str]:
    return [c.type for c in chunks]


@pytest.fixture
def options(tmp_path) -> ChatOptions:
    return ChatOptions(sub_chat_id="sub", prompt="hi", cwd=str(tmp_path))


def test_event_session_id_lookup_order() -> None:
    assert event_session_id({"properties": {"sessionID": "a", "part": {"sessionID": "b"}}}) == "a"
    assert event_session_id({"properties": {"part": {"sessionID": "b"}}}) == "b"
    assert event_session_id({"properties": {"info": {"sessionID": "c"}}}) == "c"
    assert event_session_id({"properties": {}}) is None


def test_build_parts_puts_images_first() -> None:
    opts = ChatOptions(
        sub_chat_id="s", prompt="look", cwd="/",
        images=[ImageAttachment(media_type="image/png", base64_data="AAA")],
    )
    assert build_parts(opts) == [
        {"type": "file", "mime": "image/png", "url": "data:image/png;base64,AAA"},
        {"type": "text", "text": "look"},
    ]


@pytest.mark.asyncio
async def test_simple_turn(make_context, options) -> None:
    async with FakeOpenCode() as fake:
        fake.on_prompt = lambda sid, body: [
            text_part(sid, "p1", "Hel"),
            text_part(sid, "p1", "lo"),
            idle_event(sid),
        ]
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)
        try:
            chunks = await run_chat(provider, options)
        finally:
            await provider.shutdown()
            await context.reset()

    assert [c.delta for c in chunks if isinstance(c, TextDelta)] == ["Hel", "lo"]
    assert types(chunks)[:2] == ["start", "start-step"]
    assert chunks[-1].type == "finish"
    assert chunks[-1].message_metadata.session_id == "ses_1"
    assert fake.sessions["ses_1"]["title"] == "agentbridge-sub"
    session_id, body, directory = fake.prompts[0]
    assert body == {"parts": [{"type": "text", "text": "hi"}]}
    assert directory == options.cwd


@pytest.mark.asyncio
async def test_plan_mode_model_and_resume(make_context, options) -> None:
    async with FakeOpenCode() as fake:
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)
        try:
            await run_chat(provider, options)
            options.session_id = "ses_1"
            options.mode = "plan"
            options.model = "openai/gpt-5"
            await run_chat(provider, options)
            options.session_id = "ses_gone"
            await run_chat(provider, options)
        finally:
            await provider.shutdown()
            await context.reset()

    assert [p[0] for p in fake.prompts] == ["ses_1", "ses_1", "ses_2"]
    assert fake.prompts[1][1]["agent"] == "plan"
    assert fake.prompts[1][1]["model"] == {"providerID": "openai", "modelID": "gpt-5"}


@pytest.mark.asyncio
async def test_question_answered_by_user(make_context, options) -> None:
    async with FakeOpenCode() as fake:
        fake.on_prompt = lambda sid, body: [question(sid)]
        fake.on_reply = lambda request_id, body: [
            {"type": "question.replied", "properties": {
                "sessionID": "ses_1", "requestID": request_id, "answers": body["answers"],
            }},
            idle_event("ses_1"),
        ]
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)
        routed = []

        async def answer(chunk: Chunk) -> None:
            if isinstance(chunk, AskUserQuestion):
                assert "que_1" in context.questions
                routed.append(await provider.respond_tool_approval(
                    chunk.tool_use_id, True, updated_input={"answers": {"Proceed?": "Yes"}},
                ))

        try:
            chunks = await run_chat(provider, options, answer)
        finally:
            await provider.shutdown()
            await context.reset()

    assert routed == [True]
    assert fake.replies == [("que_1", [["Yes"]])]
    result = next(c for c in chunks if isinstance(c, AskUserQuestionResult))
    assert result.tool_use_id == "que_1"
    assert result.result == {"answers": {"Proceed?": "Yes"}}
    assert types(chunks).index("ask-user-question") < types(chunks).index("ask-user-question-result")
    assert chunks[-1].type == "finish"
    assert len(context.questions) == 0


@pytest.mark.asyncio
async def test_unanswered_question_times_out(make_context, options) -> None:
    async with FakeOpenCode() as fake:
        fake.on_prompt = lambda sid, body: [question(sid)]
        context = make_context(server_port=fake.port, question_timeout_seconds=0.2)
        provider = OpenCodeProvider(context)
        try:
            chunks = await run_chat(provider, options)
        finally:
            await provider.shutdown()
            await context.reset()

    assert fake.rejected == ["que_1"]
    timeout = next(c for c in chunks if isinstance(c, AskUserQuestionTimeout))
    assert timeout.tool_use_id == "que_1"
    assert next(c for c in chunks if isinstance(c, AskUserQuestionResult)).result == "Skipped"
    assert chunks[-1].type == "finish"


@pytest.mark.asyncio
async def test_permission_request_routes_to_session(make_context, options) -> None:
    async with FakeOpenCode() as fake:
        fake.on_prompt = lambda sid, body: [{"type": "permission.updated", "properties": {
            "id": "per_1", "sessionID": sid, "title": "Run tests?",
        }}]
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)

        async def approve(chunk: Chunk) -> None:
            if isinstance(chunk, AskUserQuestion):
                await provider.respond_tool_approval(
                    "per_1", True, updated_input={"answers": {"Run tests?": "Always"}},
                )
                fake.push(
                    {"type": "permission.replied", "properties": {
                        "sessionID": "ses_1", "permissionID": "per_1", "response": "always",
                    }},
                    idle_event("ses_1"),
                )

        try:
            chunks = await run_chat(provider, options, approve)
        finally:
            await provider.shutdown()
            await context.reset()

    assert fake.permissions == [("ses_1", "per_1", "always")]
    assert next(c for c in chunks if isinstance(c, AskUserQuestionResult)).result == "always"


@pytest.mark.asyncio
async def test_declined_question_is_rejected(make_context, options) -> None:
    async with FakeOpenCode() as fake:
        fake.on_prompt = lambda sid, body: [question(sid)]
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)

        async def decline(chunk: Chunk) -> None:
            if isinstance(chunk, AskUserQuestion):
                await provider.respond_tool_approval(chunk.tool_use_id, False)

        try:
            chunks = await run_chat(provider, options, decline)
        finally:
            await provider.shutdown()
            await context.reset()

    assert fake.rejected == ["que_1"]
    assert chunks[-1].type == "finish"


@pytest.mark.asyncio
async def test_unknown_question_is_not_routed(make_context) -> None:
    provider = OpenCodeProvider(make_context())
    assert await provider.respond_tool_approval("nope", True) is False


@pytest.mark.asyncio
async def test_other_sessions_and_watcher_noise_are_filtered(make_context, options) -> None:
    async with FakeOpenCode() as fake:
        fake.on_prompt = lambda sid, body: [
            text_part("ses_other", "x", "not mine"),
            {"type": "file.watcher.updated", "properties": {"file": "/p/.git/objects/ab"}},
            text_part(sid, "p1", "mine"),
            idle_event("ses_other"),
            idle_event(sid),
        ]
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)
        try:
            chunks = await run_chat(provider, options)
        finally:
            await provider.shutdown()
            await context.reset()

    assert [c.delta for c in chunks if isinstance(c, TextDelta)] == ["mine"]
    assert types(chunks).count("finish") == 1


@pytest.mark.asyncio
async def test_cancel_aborts_backend_session(make_context, options) -> None:
    async with FakeOpenCode() as fake:
        fake.on_prompt = lambda sid, body: [text_part(sid, "p1", "working...")]
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)

        async def cancel(chunk: Chunk) -> None:
            if isinstance(chunk, TextDelta):
                assert provider.is_active("sub")
                assert provider.cancel("sub")

        try:
            chunks = await run_chat(provider, options, cancel)
        finally:
            await provider.shutdown()
            await context.reset()

    assert chunks[-1].type == "finish"
    assert fake.aborted == ["ses_1"]
    assert not provider.is_active("sub")


@pytest.mark.asyncio
async def test_session_error_ends_turn(make_context, options) -> None:
    async with FakeOpenCode() as fake:
        fake.on_prompt = lambda sid, body: [{"type": "session.error", "properties": {
            "sessionID": sid,
            "error": {"name": "ProviderAuthError", "data": {"message": "invalid x-api-key"}},
        }}]
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)
        try:
            chunks = await run_chat(provider, options)
        finally:
            await provider.shutdown()
            await context.reset()

    assert types(chunks)[-3:] == ["auth-error", "finish-step", "finish"]


@pytest.mark.asyncio
async def test_broken_event_stream_ends_with_error(make_context, options, monkeypatch) -> None:
    async def broken_events(self, directory=None, opened=None):
        if opened is not None:
            opened.set()
        await asyncio.sleep(0.05)
        raise ConnectionResetError("connection reset by peer")
        yield

    monkeypatch.setattr(OpenCodeClient, "events", broken_events)
    async with FakeOpenCode() as fake:
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)
        try:
            chunks = await run_chat(provider, options)
        finally:
            await provider.shutdown()
            await context.reset()

    assert types(chunks) == ["start", "start-step", "error", "finish-step", "finish"]
    assert "connection reset by peer" in chunks[2].error_text
    assert not provider.is_active("sub")


@pytest.mark.asyncio
async def test_compact_uses_summarize(make_context, options) -> None:
    options.prompt = "/compact"
    async with FakeOpenCode() as fake:
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)
        try:
            chunks = await run_chat(provider, options)
        finally:
            await provider.shutdown()
            await context.reset()

    assert fake.summarized == ["ses_1"]
    assert fake.prompts == []
    assert any(isinstance(c, SystemCompact) for c in chunks)


@pytest.mark.asyncio
async def test_server_unreachable_yields_error_then_finish(make_context, options) -> None:
    context = make_context(server_port=9, server_startup_timeout_seconds=0.2)
    provider = OpenCodeProvider(context)
    try:
        chunks = await run_chat(provider, options)
    finally:
        await provider.shutdown()
        await context.reset()

    assert types(chunks) == ["error", "finish"]
    assert "opencode binary not found" in chunks[0].error_text


@pytest.mark.asyncio
async def test_models_and_auth_status(make_context) -> None:
    async with FakeOpenCode() as fake:
        context = make_context(server_port=fake.port)
        provider = OpenCodeProvider(context)
        try:
            before = await provider.get_auth_status()
            models = await provider.list_models()
            after = await provider.get_auth_status()
        finally:
            await provider.shutdown()
            await context.reset()

    assert before.authenticated is False
    assert before.error == "OpenCode not installed"
    assert "anthropic/claude-sonnet" in [m.id for m in models]
    assert after.authenticated is True
