"""Canonical chunk protocol shared by every provider transformer.

Each chunk is a typed dataclass. On the wire a chunk is a plain JSON
object with a ``type`` discriminator and camelCase keys; use
chunk_to_dict() / dict_to_chunk() to cross that boundary.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any

PROTOCOL_VERSION = 1


@dataclass
class MessageMetadata:
    """Per-turn session and usage counters. Last write wins."""
    session_id: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    cached_input_tokens: int | None = None
    reasoning_tokens: int | None = None
    total_cost_usd: float | None = None
    duration_ms: int | None = None
    result_subtype: str | None = None
    model: str | None = None
    # OpenCode only: diff keys to re-supply on the next turn
    emitted_diff_keys: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            _to_camel(f.name): getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageMetadata:
        valid = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _to_snake(key)
            if name in valid:
                kwargs[name] = value
        return cls(**kwargs)


@dataclass
class Chunk:
    """Base chunk. Unknown wire types decode to this class."""
    type: str = ""


@dataclass
class Start(Chunk):
    type: str = "start"
    message_id: str | None = None


@dataclass
class StartStep(Chunk):
    type: str = "start-step"


@dataclass
class FinishStep(Chunk):
    type: str = "finish-step"


@dataclass
class Finish(Chunk):
    type: str = "finish"
    message_metadata: MessageMetadata | None = None


@dataclass
class TextStart(Chunk):
    type: str = "text-start"
    id: str = ""


@dataclass
class TextDelta(Chunk):
    type: str = "text-delta"
    id: str = ""
    delta: str = ""


@dataclass
class TextEnd(Chunk):
    type: str = "text-end"
    id: str = ""


@dataclass
class Reasoning(Chunk):
    type: str = "reasoning"
    id: str = ""
    text: str = ""


@dataclass
class ToolInputStart(Chunk):
    type: str = "tool-input-start"
    tool_call_id: str = ""
    tool_name: str = ""


@dataclass
class ToolInputDelta(Chunk):
    type: str = "tool-input-delta"
    tool_call_id: str = ""
    input_text_delta: str = ""


@dataclass
class ToolInputAvailable(Chunk):
    type: str = "tool-input-available"
    tool_call_id: str = ""
    tool_name: str = ""
    input: Any = None


@dataclass
class ToolOutputAvailable(Chunk):
    type: str = "tool-output-available"
    tool_call_id: str = ""
    output: Any = None


@dataclass
class ToolOutputError(Chunk):
    type: str = "tool-output-error"
    tool_call_id: str = ""
    error_text: str = ""


@dataclass
class MessageMetadataChunk(Chunk):
    type: str = "message-metadata"
    message_metadata: MessageMetadata = field(default_factory=MessageMetadata)


@dataclass
class Error(Chunk):
    type: str = "error"
    error_text: str = ""
    debug_info: dict[str, Any] | None = None


@dataclass
class AuthError(Chunk):
    type: str = "auth-error"
    error_text: str = ""


@dataclass
class AskUserQuestion(Chunk):
    """Out-of-band question; questions are
    {question, header, options: [{label, description}], multiSelect}."""
    type: str = "ask-user-question"
    tool_use_id: str = ""
    questions: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class AskUserQuestionResult(Chunk):
    type: str = "ask-user-question-result"
    tool_use_id: str = ""
    result: Any = None


@dataclass
class AskUserQuestionTimeout(Chunk):
    type: str = "ask-user-question-timeout"
    tool_use_id: str = ""


@dataclass
class SessionDiff(Chunk):
    """Entries are {file, additions, deletions}."""
    type: str = "session-diff"
    diffs: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class TodoUpdate(Chunk):
    """Entries are {content, status, activeForm?}."""
    type: str = "todo-update"
    todos: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class SessionInit(Chunk):
    type: str = "session-init"
    tools: list[str] = field(default_factory=list)
    mcp_servers: list[dict[str, Any]] = field(default_factory=list)
    plugins: list[dict[str, Any]] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)


@dataclass
class SystemCompact(Chunk):
    type: str = "system-Compact"
    tool_call_id: str = ""
    state: str = "output-available"


# Map of wire type strings to dataclass constructors
_CHUNK_MAP: dict[str, type[Chunk]] = {
    "start": Start,
    "start-step": StartStep,
    "finish-step": FinishStep,
    "finish": Finish,
    "text-start": TextStart,
    "text-delta": TextDelta,
    "text-end": TextEnd,
    "reasoning": Reasoning,
    "tool-input-start": ToolInputStart,
    "tool-input-delta": ToolInputDelta,
    "tool-input-available": ToolInputAvailable,
    "tool-output-available": ToolOutputAvailable,
    "tool-output-error": ToolOutputError,
    "message-metadata": MessageMetadataChunk,
    "error": Error,
    "auth-error": AuthError,
    "ask-user-question": AskUserQuestion,
    "ask-user-question-result": AskUserQuestionResult,
    "ask-user-question-timeout": AskUserQuestionTimeout,
    "session-diff": SessionDiff,
    "todo-update": TodoUpdate,
    "session-init": SessionInit,
    "system-Compact": SystemCompact,
}

TERMINAL_ERROR_TYPES = frozenset({"error", "auth-error"})


def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _to_snake(name: str) -> str:
    out: list[str] = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def chunk_to_dict(chunk: Chunk) -> dict[str, Any]:
    """Convert a typed chunk to its JSON-serializable wire shape."""
    d: dict[str, Any] = {}
    for f in fields(chunk):
        val = getattr(chunk, f.name)
        if val is None:
            continue
        if isinstance(val, MessageMetadata):
            val = val.to_dict()
        d[_to_camel(f.name)] = val
    return d


def dict_to_chunk(data: dict[str, Any]) -> Chunk:
    """Convert a wire dict back to a typed chunk."""
    chunk_type = data.get("type", "")
    cls = _CHUNK_MAP.get(chunk_type, Chunk)
    valid_fields = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        name = _to_snake(key)
        if name not in valid_fields:
            continue
        if name == "message_metadata" and isinstance(value, dict):
            value = MessageMetadata.from_dict(value)
        kwargs[name] = value
    return cls(**kwargs)
