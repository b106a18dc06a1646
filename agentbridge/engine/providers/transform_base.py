"""State and block helpers shared by the provider transformers.

Each transformer keeps an explicit state dataclass (a subclass of
TransformState) and a module-level ``step(state, event)`` function that
returns the chunks for one native event. The helpers here enforce the
block rules: start/start-step first, at most one open text block, and
nothing after ``finish``.
"""
from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from agentbridge.adapters.chunks import (
    Chunk,
    Finish,
    FinishStep,
    MessageMetadata,
    MessageMetadataChunk,
    Start,
    StartStep,
    TextDelta,
    TextEnd,
    TextStart,
)

logger = logging.getLogger(__name__)


def gen_id(prefix: str = "text") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:5]}"


@dataclass
class TransformState:
    """Fields every transformer needs for one chat turn."""
    started: bool = False
    start_time: float | None = None
    finished: bool = False
    # Set once an error/auth-error chunk is emitted; callers stop reading.
    errored: bool = False
    session_id: str | None = None
    current_text_id: str | None = None
    current_text: str = ""
    emitted_tool_ids: set[str] = field(default_factory=set)
    finalized_tool_ids: set[str] = field(default_factory=set)
    tool_inputs: dict[str, str] = field(default_factory=dict)
    tool_names: dict[str, str] = field(default_factory=dict)

    @property
    def done(self) -> bool:
        """True once no further native events should be read."""
        return self.finished or self.errored

    def duration_ms(self) -> int | None:
        if self.start_time is None:
            return None
        return int((time.monotonic() - self.start_time) * 1000)


def begin(state: TransformState, out: list[Chunk]) -> None:
    if not state.started:
        state.started = True
        state.start_time = time.monotonic()
        out.append(Start())
        out.append(StartStep())


def open_text(state: TransformState, out: list[Chunk]) -> str:
    close_text(state, out)
    state.current_text_id = gen_id()
    state.current_text = ""
    out.append(TextStart(id=state.current_text_id))
    return state.current_text_id


def append_text(state: TransformState, out: list[Chunk], delta: str) -> None:
    if not delta:
        return
    if state.current_text_id is None:
        open_text(state, out)
    out.append(TextDelta(id=state.current_text_id, delta=delta))
    state.current_text += delta


def close_text(state: TransformState, out: list[Chunk]) -> None:
    if state.current_text_id is not None:
        out.append(TextEnd(id=state.current_text_id))
        state.current_text_id = None
        state.current_text = ""


def finish(
    state: TransformState,
    out: list[Chunk],
    metadata: MessageMetadata | None = None,
) -> None:
    """Close the turn: optional metadata, then finish-step and finish."""
    if state.finished:
        return
    close_text(state, out)
    if metadata is not None:
        out.append(MessageMetadataChunk(message_metadata=metadata))
    out.append(FinishStep())
    out.append(Finish(message_metadata=metadata))
    state.finished = True


def record_error(state: TransformState, out: list[Chunk], chunk: Chunk) -> None:
    close_text(state, out)
    out.append(chunk)
    state.errored = True


def finalize(
    state: TransformState, error_chunk: Chunk | None = None,
) -> list[Chunk]:
    """Chunks that end a turn whose native stream stopped early."""
    out: list[Chunk] = []
    if state.finished:
        return out
    begin(state, out)
    close_text(state, out)
    if error_chunk is not None and not state.errored:
        record_error(state, out, error_chunk)
    finish(state, out)
    return out


S = TypeVar("S", bound=TransformState)


def run_step(
    name: str,
    handlers: dict[Any, Callable[[S, Any, list[Chunk]], None]],
    state: S,
    event: Any,
    key: Any = None,
) -> list[Chunk]:
    """Dispatch one native event; never raises.

    Handlers are looked up by *key*, or by the event's ``type`` field
    when no key is given.
    """
    out: list[Chunk] = []
    if state.finished:
        return out
    try:
        begin(state, out)
        if key is not None:
            event_type = key
        else:
            event_type = event.get("type", "") if isinstance(event, dict) else ""
        handler = handlers.get(event_type)
        if handler is None:
            logger.debug("%s: ignoring event type %r", name, event_type)
        else:
            handler(state, event, out)
    except Exception:
        logger.exception("%s: failed to transform event", name)
    return out


class Transformer(Generic[S]):
    """Object wrapper around a state and its step function."""

    def __init__(
        self,
        state: S,
        step_fn: Callable[[S, Any], list[Chunk]],
    ) -> None:
        self.state = state
        self._step = step_fn

    def transform(self, event: Any) -> list[Chunk]:
        return self._step(self.state, event)

    def finalize(self, error_chunk: Chunk | None = None) -> list[Chunk]:
        return finalize(self.state, error_chunk)

    @property
    def done(self) -> bool:
        return self.state.done
