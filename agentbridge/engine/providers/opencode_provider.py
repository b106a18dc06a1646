"""OpenCode provider.

Talks to the shared local OpenCode server: ensures it is running,
verifies or creates the backend session, subscribes to the event
stream, then sends the prompt asynchronously and translates events for
this session until it goes idle.

Unlike Claude/Codex, models are listed dynamically from the server.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from agentbridge.adapters.chunks import (
    AskUserQuestion,
    AskUserQuestionResult,
    AskUserQuestionTimeout,
    Chunk,
    Error,
    Finish,
)
from agentbridge.adapters.questions import PendingQuestion, answers_to_arrays

from ..errors import BackendNetworkError, BridgeError, error_chunk_for
from ..sessions import ABORTED, ActiveSession, EventQueue, next_or_abort, stop_task
from .base import AuthStatus, ChatOptions, FileChangeTracker, Provider
from .opencode_client import OpenCodeClient, ProviderModel, is_watcher_noise
from .opencode_server import INSTALL_HINT, ServerStatus
from .opencode_transform import create_opencode_transformer

if TYPE_CHECKING:
    from ..context import RuntimeContext

logger = logging.getLogger(__name__)

# Permission option label -> server response
PERMISSION_RESPONSES = {"Allow": "once", "Always": "always", "Deny": "reject"}


def event_session_id(event: dict[str, Any]) -> str | None:
    """The session an event belongs to, wherever the event type keeps it."""
    props = event.get("properties") or {}
    if props.get("sessionID"):
        return props["sessionID"]
    for key in ("part", "info"):
        nested = props.get(key)
        if isinstance(nested, dict) and nested.get("sessionID"):
            return nested["sessionID"]
    return None


def build_parts(options: ChatOptions) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = [
        {"type": "file", "mime": image.media_type, "url": image.data_url}
        for image in options.images
    ]
    parts.append({"type": "text", "text": options.prompt})
    return parts


class OpenCodeProvider(Provider):
    """Provider backed by a local OpenCode server."""

    install_hint = INSTALL_HINT

    def __init__(self, context: RuntimeContext) -> None:
        super().__init__(context)
        self._client: OpenCodeClient | None = None

    @property
    def name(self) -> str:
        return "opencode"

    @property
    def display_name(self) -> str:
        return "OpenCode"

    @property
    def client(self) -> OpenCodeClient:
        url = self._context.server.url
        if self._client is None or self._client.base_url != url:
            self._client = OpenCodeClient(url)
        return self._client

    async def _open_session(self, options: ChatOptions) -> str | None:
        client = self.client
        session_id = options.session_id
        if session_id and await client.get_session(session_id, options.cwd) is None:
            logger.info("[opencode] session %s not found, creating a new one", session_id)
            session_id = None
        if not session_id:
            session_id = await client.create_session(
                f"agentbridge-{options.sub_chat_id}", options.cwd,
            )
            if session_id:
                logger.info("[opencode] created session %s", session_id)
        return session_id

    async def _subscribe(self, events: EventQueue) -> asyncio.Task:
        """Start reading events; returns once the server accepted the stream."""
        opened = asyncio.Event()
        pump = events.start(self.client.events(opened=opened))
        queue = events.queue
        waiter = asyncio.ensure_future(opened.wait())
        done, _ = await asyncio.wait({pump, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if waiter not in done:
            waiter.cancel()
            item = queue.get_nowait() if not queue.empty() else None
            if isinstance(item, BridgeError):
                raise item
            if isinstance(item, Exception):
                raise BackendNetworkError(f"OpenCode event stream failed: {item}") from item
            raise BackendNetworkError("OpenCode event stream closed before it opened")
        return pump

    async def _send(self, options: ChatOptions, session_id: str) -> None:
        client = self.client
        if options.prompt.strip() == "/compact":
            # summarize blocks until compaction ends; progress arrives as events
            task = asyncio.ensure_future(client.summarize_session(session_id, options.cwd))
            task.add_done_callback(_log_send_failure)
            return
        model = client.parse_model_id(options.model) if options.model else None
        ok = await client.prompt_async(
            session_id,
            build_parts(options),
            directory=options.cwd,
            agent="plan" if options.plan_mode else None,
            model=model,
        )
        if not ok:
            raise BackendNetworkError("OpenCode rejected the prompt")

    def _question_timeout(self, deadlines: dict[str, float]) -> float | None:
        if not deadlines:
            return None
        now = asyncio.get_running_loop().time()
        return max(0.0, min(deadlines.values()) - now)

    async def _expire_questions(self, deadlines: dict[str, float]) -> list[Chunk]:
        now = asyncio.get_running_loop().time()
        out: list[Chunk] = []
        for tool_use_id, deadline in list(deadlines.items()):
            if deadline > now:
                continue
            del deadlines[tool_use_id]
            pending = self._context.questions.pop(tool_use_id)
            logger.info("[opencode] question %s timed out", tool_use_id)
            out.append(AskUserQuestionTimeout(tool_use_id=tool_use_id))
            if pending is not None:
                await self._reject(pending)
        return out

    async def _reject(self, pending: PendingQuestion) -> None:
        try:
            if pending.kind == "permission" and pending.session_id:
                await self.client.respond_permission(
                    pending.session_id, pending.question_id, "reject", pending.directory,
                )
            else:
                await self.client.reject_question(pending.question_id, pending.directory)
        except BackendNetworkError as exc:
            logger.warning("[opencode] failed to reject %s: %s", pending.question_id, exc)

    async def _stream(self, options: ChatOptions, session: ActiveSession) -> AsyncIterator[Chunk]:
        await self._context.server.ensure_running()
        session_id = await self._open_session(options)
        if not session_id:
            yield Error(error_text="Failed to create OpenCode session")
            yield Finish()
            return
        session.session_id = session_id

        transformer = create_opencode_transformer(
            emitted_diff_keys=options.emitted_diff_keys, session_id=session_id,
        )
        tracker = FileChangeTracker(options.sub_chat_id, options.on_file_changed)
        question_timeout = self._context.config.question_timeout_seconds
        deadlines: dict[str, float] = {}
        events = EventQueue()
        pump: asyncio.Task | None = None
        stream_error: BridgeError | None = None
        try:
            pump = await self._subscribe(events)
            await self._send(options, session_id)

            while not transformer.done:
                try:
                    event = await next_or_abort(
                        events, session.abort_event, timeout=self._question_timeout(deadlines),
                    )
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    for chunk in await self._expire_questions(deadlines):
                        yield chunk
                    continue
                except BridgeError as exc:
                    stream_error = exc
                    break
                except Exception as exc:
                    logger.warning("[opencode] event stream failed: %r", exc)
                    stream_error = BackendNetworkError(f"OpenCode event stream failed: {exc!r}")
                    break
                if event is ABORTED:
                    return

                owner = event_session_id(event)
                if (owner and owner != session_id) or is_watcher_noise(event):
                    continue

                event_type = event.get("type", "")
                for chunk in transformer.transform(event):
                    if isinstance(chunk, AskUserQuestion):
                        self._context.questions.register(chunk.tool_use_id, PendingQuestion(
                            question_id=chunk.tool_use_id,
                            provider=self.name,
                            sub_chat_id=options.sub_chat_id,
                            directory=options.cwd,
                            questions=chunk.questions,
                            kind="permission" if event_type.startswith("permission.") else "question",
                            session_id=session_id,
                        ))
                        if question_timeout > 0:
                            deadlines[chunk.tool_use_id] = (
                                asyncio.get_running_loop().time() + question_timeout
                            )
                    elif isinstance(chunk, AskUserQuestionResult):
                        deadlines.pop(chunk.tool_use_id, None)
                        self._context.questions.pop(chunk.tool_use_id)
                    tracker.observe(chunk)
                    yield chunk

            error_chunk = None
            if stream_error is not None:
                error_chunk = error_chunk_for(stream_error)
            elif not transformer.done:
                error_chunk = error_chunk_for(
                    BackendNetworkError("OpenCode event stream ended before the session went idle"),
                )
            for chunk in transformer.finalize(error_chunk):
                yield chunk
        finally:
            await stop_task(pump)
            self._context.questions.clear_sub_chat(options.sub_chat_id)
            if session.aborted:
                try:
                    await self.client.abort_session(session_id, options.cwd)
                except BackendNetworkError as exc:
                    logger.warning("[opencode] failed to abort session %s: %s", session_id, exc)

    async def respond_tool_approval(
        self,
        tool_use_id: str,
        approved: bool,
        message: str | None = None,
        updated_input: dict[str, Any] | None = None,
    ) -> bool:
        pending = self._context.questions.get(tool_use_id)
        if pending is None or pending.provider != self.name:
            return False
        self._context.questions.pop(tool_use_id)
        if not approved:
            await self._reject(pending)
            return True

        answers = (updated_input or {}).get("answers") or {}
        if pending.kind == "permission":
            label = next(iter(answers.values()), "Allow") if answers else "Allow"
            if isinstance(label, list):
                label = label[0] if label else "Allow"
            response = PERMISSION_RESPONSES.get(str(label), "once")
            return await self.client.respond_permission(
                pending.session_id or "", pending.question_id, response, pending.directory,
            )
        return await self.client.reply_question(
            pending.question_id,
            answers_to_arrays(pending.questions, answers),
            pending.directory,
        )

    async def list_models(self, force_refresh: bool = False) -> list[ProviderModel]:
        await self._context.server.ensure_running()
        snapshot = await self.client.list_providers(force_refresh=force_refresh)
        return snapshot.models

    async def get_auth_status(self) -> AuthStatus:
        """Authenticated if any provider behind the server is connected."""
        if self._context.server.status is not ServerStatus.RUNNING:
            if not self.is_available():
                return AuthStatus(authenticated=False, error="OpenCode not installed")
            return AuthStatus(authenticated=False, error="Server not running")
        try:
            snapshot = await self.client.list_providers()
        except BridgeError as exc:
            return AuthStatus(authenticated=False, error=f"Auth check failed: {exc}")
        if snapshot.connected:
            logger.info("[opencode] connected providers: %s", ", ".join(snapshot.connected))
            return AuthStatus(authenticated=True, method="api-key")
        return AuthStatus(
            authenticated=False,
            error="No providers connected. Configure API keys in OpenCode.",
        )

    async def shutdown(self) -> None:
        await super().shutdown()
        if self._client is not None:
            await self._client.close()
            self._client = None
        if self._context.has_server:
            await self._context.server.shutdown()


def _log_send_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("[opencode] summarize request failed: %s", exc)
    elif task.result() is False:
        logger.error("[opencode] summarize request was rejected")
