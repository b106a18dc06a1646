"""Per-chat session bookkeeping shared by every provider.

ActiveSessions maps sub_chat_id -> ActiveSession. An entry lives for
exactly one chat() call and is removed in a ``finally`` block.
guarded_stream() wraps a provider's native stream with the guarantees
every caller relies on: abort handling, one terminal error chunk for
orchestrator failures, and a trailing ``finish``.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from agentbridge.adapters.chunks import Chunk, Finish

from .errors import BridgeError, UnknownBackendError, error_chunk_for

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Returned by next_or_abort() when the abort event wins the race.
ABORTED: Any = object()


@dataclass
class ActiveSession:
    """One in-flight chat call."""
    sub_chat_id: str
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    session_id: str | None = None

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()


class ActiveSessions:
    """sub_chat_id -> ActiveSession for one provider."""

    def __init__(self) -> None:
        self._sessions: dict[str, ActiveSession] = {}

    def start(self, sub_chat_id: str, session_id: str | None = None) -> ActiveSession:
        """Register a new call, aborting any call still running for the
        same sub-chat."""
        previous = self._sessions.get(sub_chat_id)
        if previous is not None:
            logger.info(
                "Sub-chat %s already active; aborting previous call",
                sub_chat_id,
            )
            previous.abort_event.set()
        session = ActiveSession(sub_chat_id=sub_chat_id, session_id=session_id)
        self._sessions[sub_chat_id] = session
        return session

    def get(self, sub_chat_id: str) -> ActiveSession | None:
        return self._sessions.get(sub_chat_id)

    def remove(self, session: ActiveSession) -> None:
        """Remove *session* if it is still the registered one."""
        if self._sessions.get(session.sub_chat_id) is session:
            del self._sessions[session.sub_chat_id]

    def cancel(self, sub_chat_id: str) -> ActiveSession | None:
        session = self._sessions.get(sub_chat_id)
        if session is not None:
            session.abort_event.set()
        return session

    def ids(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, sub_chat_id: str) -> bool:
        return sub_chat_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


async def next_or_abort(
    iterator: AsyncIterator[T],
    abort_event: asyncio.Event,
    timeout: float | None = None,
) -> T:
    """Await the next item of *iterator*, racing it against *abort_event*.

    Returns ABORTED if the abort event fires first. Raises
    StopAsyncIteration at the end of the stream and asyncio.TimeoutError
    if *timeout* elapses first. The pending read is cancelled in both
    non-item cases.
    """
    if abort_event.is_set():
        return ABORTED
    read_task = asyncio.ensure_future(iterator.__anext__())
    abort_task = asyncio.ensure_future(abort_event.wait())
    try:
        done, _ = await asyncio.wait(
            {read_task, abort_task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        read_task.cancel()
        abort_task.cancel()
        raise
    abort_task.cancel()

    if read_task in done:
        return read_task.result()

    read_task.cancel()
    try:
        await read_task
    except (asyncio.CancelledError, StopAsyncIteration):
        pass
    if abort_event.is_set():
        return ABORTED
    raise asyncio.TimeoutError()


async def iterate_until_cancelled(
    iterator: AsyncIterator[T],
    abort_event: asyncio.Event,
) -> AsyncIterator[T]:
    """Yield from *iterator* until it ends or *abort_event* is set."""
    while True:
        try:
            item = await next_or_abort(iterator, abort_event)
        except StopAsyncIteration:
            return
        if item is ABORTED:
            return
        yield item


_END: Any = object()


class EventQueue:
    """Items buffered by a background reader task.

    Each __anext__ is a plain queue.get(), so a read cancelled by a
    timeout or an abort loses nothing, and the native iterator is only
    ever driven from the reader task. Whatever the reader raises is
    re-raised to the consumer, followed by the end of the stream.
    """

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    async def pump(self, items: AsyncIterator[Any]) -> None:
        try:
            async for item in items:
                self.queue.put_nowait(item)
        except Exception as exc:
            logger.debug("event reader stopped: %r", exc)
            self.queue.put_nowait(exc)
        finally:
            self.queue.put_nowait(_END)

    def start(self, items: AsyncIterator[Any]) -> asyncio.Task:
        return asyncio.ensure_future(self.pump(items))

    def __aiter__(self) -> EventQueue:
        return self

    async def __anext__(self) -> Any:
        item = await self.queue.get()
        if item is _END:
            # keep later reads ending too
            self.queue.put_nowait(_END)
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


async def stop_task(task: asyncio.Task | None) -> None:
    """Cancel *task* and wait for it to unwind."""
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def guarded_stream(
    sessions: ActiveSessions,
    sub_chat_id: str,
    body: Callable[[ActiveSession], AsyncIterator[Chunk]],
    *,
    provider_name: str = "",
    session_id: str | None = None,
) -> AsyncIterator[Chunk]:
    """Run *body* for one chat call and enforce the terminal contract.

    - chunks are yielded in the order *body* produces them
    - a BridgeError (or anything unexpected) becomes one error chunk
    - nothing is yielded after ``finish``; one is added if *body* ends
      without it (success, error, or cancellation)
    - the session entry is removed even if *body* raises
    """
    session = sessions.start(sub_chat_id, session_id=session_id)
    stream = body(session)
    finished = False
    failure: Chunk | None = None
    try:
        async for chunk in iterate_until_cancelled(stream, session.abort_event):
            yield chunk
            if chunk.type == "finish":
                finished = True
                break
    except BridgeError as exc:
        logger.warning("%s chat %s failed: %s", provider_name, sub_chat_id, exc)
        failure = error_chunk_for(exc)
    except Exception as exc:
        logger.exception("%s chat %s crashed", provider_name, sub_chat_id)
        failure = error_chunk_for(UnknownBackendError(str(exc) or repr(exc)))
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception:
                logger.exception("%s chat %s cleanup failed", provider_name, sub_chat_id)
        sessions.remove(session)
        if session.aborted:
            logger.info("%s chat %s cancelled", provider_name, sub_chat_id)

    if failure is not None:
        yield failure
    if not finished:
        yield Finish()
