"""claude_agent_sdk messages -> canonical chunks.

Message types handled:
  SystemMessage (subtype init)  session id, tools, MCP servers
  StreamEvent                   raw API stream events (include_partial_messages)
  AssistantMessage              complete assistant content blocks
  UserMessage                   ToolResultBlock content
  ResultMessage                 usage, cost, final status

Text and thinking that already arrived through StreamEvent are not
repeated when the complete AssistantMessage follows; tool inputs are
announced once, from whichever of the two carries a complete input first.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from claude_agent_sdk.types import StreamEvent

from agentbridge.adapters.chunks import (
    Chunk,
    MessageMetadata,
    MessageMetadataChunk,
    Reasoning,
    SessionInit,
    TextDelta,
    TextEnd,
    TextStart,
    ToolInputAvailable,
    ToolInputDelta,
    ToolInputStart,
    ToolOutputAvailable,
    ToolOutputError,
)

from ..errors import classify_error_message, error_chunk_for
from .normalize import normalize_usage
from .transform_base import (
    TransformState,
    Transformer,
    append_text,
    close_text,
    finish,
    gen_id,
    open_text,
    record_error,
    run_step,
)

logger = logging.getLogger(__name__)

# model name the CLI puts on assistant messages it makes up itself
SYNTHETIC_MODEL = "<synthetic>"


@dataclass
class ClaudeTransformState(TransformState):
    # content block index -> (kind, id) for the message being streamed
    blocks: dict[int, tuple[str, str]] = field(default_factory=dict)
    # thinking block id -> accumulated text
    thinking: dict[str, str] = field(default_factory=dict)
    # set by message_start, cleared by the next tool results
    streaming: bool = False
    # tools whose tool-input-available was emitted
    available_tool_ids: set[str] = field(default_factory=set)
    model: str | None = None


def _start_tool(state: ClaudeTransformState, tool_id: str, name: str, out: list[Chunk]) -> None:
    if tool_id in state.emitted_tool_ids:
        return
    close_text(state, out)
    state.emitted_tool_ids.add(tool_id)
    state.tool_names[tool_id] = name
    state.tool_inputs[tool_id] = ""
    out.append(ToolInputStart(tool_call_id=tool_id, tool_name=name))


def _tool_available(
    state: ClaudeTransformState, tool_id: str, name: str, tool_input: Any, out: list[Chunk],
) -> None:
    if tool_id in state.available_tool_ids:
        return
    _start_tool(state, tool_id, name, out)
    state.available_tool_ids.add(tool_id)
    out.append(ToolInputAvailable(tool_call_id=tool_id, tool_name=name, input=tool_input))


def _emit_session(state: ClaudeTransformState, session_id: str | None, out: list[Chunk]) -> None:
    if session_id and session_id != state.session_id:
        state.session_id = session_id
        out.append(MessageMetadataChunk(
            message_metadata=MessageMetadata(session_id=session_id),
        ))


# ── StreamEvent ──

def _on_block_start(state: ClaudeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    index = event.get("index", 0)
    block = event.get("content_block") or {}
    kind = block.get("type")
    if kind == "text":
        text_id = open_text(state, out)
        state.blocks[index] = ("text", text_id)
        if block.get("text"):
            append_text(state, out, block["text"])
    elif kind == "tool_use":
        tool_id = block.get("id") or gen_id("tool")
        state.blocks[index] = ("tool", tool_id)
        _start_tool(state, tool_id, block.get("name") or "unknown", out)
    elif kind in ("thinking", "redacted_thinking"):
        close_text(state, out)
        thinking_id = gen_id("thinking")
        state.blocks[index] = ("thinking", thinking_id)
        state.thinking[thinking_id] = block.get("thinking") or ""


def _on_block_delta(state: ClaudeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    index = event.get("index", 0)
    delta = event.get("delta") or {}
    kind, block_id = state.blocks.get(index, ("", ""))
    delta_type = delta.get("type")
    if delta_type == "text_delta" and kind == "text":
        if state.current_text_id is None:
            state.blocks[index] = ("text", open_text(state, out))
        append_text(state, out, delta.get("text") or "")
    elif delta_type == "input_json_delta" and kind == "tool":
        partial = delta.get("partial_json") or ""
        if partial and block_id not in state.available_tool_ids:
            state.tool_inputs[block_id] = state.tool_inputs.get(block_id, "") + partial
            out.append(ToolInputDelta(tool_call_id=block_id, input_text_delta=partial))
    elif delta_type == "thinking_delta" and kind == "thinking":
        state.thinking[block_id] = state.thinking.get(block_id, "") + (delta.get("thinking") or "")


def _on_block_stop(state: ClaudeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    index = event.get("index", 0)
    kind, block_id = state.blocks.pop(index, ("", ""))
    if kind == "text":
        close_text(state, out)
    elif kind == "tool":
        raw = state.tool_inputs.get(block_id, "")
        try:
            tool_input = json.loads(raw) if raw else {}
        except ValueError:
            logger.debug("claude: incomplete tool input for %s", block_id)
            return
        _tool_available(state, block_id, state.tool_names.get(block_id, "unknown"), tool_input, out)
    elif kind == "thinking":
        out.append(Reasoning(id=block_id, text=state.thinking.get(block_id, "")))


def _on_stream_event(state: ClaudeTransformState, message: StreamEvent, out: list[Chunk]) -> None:
    _emit_session(state, message.session_id, out)
    event = message.event or {}
    event_type = event.get("type")
    if event_type == "message_start":
        state.streaming = True
        model = (event.get("message") or {}).get("model")
        if model:
            state.model = model
        state.blocks.clear()
    elif event_type == "content_block_start":
        _on_block_start(state, event, out)
    elif event_type == "content_block_delta":
        _on_block_delta(state, event, out)
    elif event_type == "content_block_stop":
        _on_block_stop(state, event, out)
    elif event_type == "message_stop":
        close_text(state, out)


# ── complete messages ──

def _on_system(state: ClaudeTransformState, message: SystemMessage, out: list[Chunk]) -> None:
    data = message.data or {}
    _emit_session(state, data.get("session_id"), out)
    if message.subtype != "init":
        logger.debug("claude: system message subtype=%s", message.subtype)
        return
    if data.get("model"):
        state.model = data["model"]
    servers = []
    for server in data.get("mcp_servers") or []:
        if isinstance(server, dict):
            servers.append({"name": server.get("name", ""), "status": server.get("status", "")})
    out.append(SessionInit(
        tools=list(data.get("tools") or []),
        mcp_servers=servers,
        plugins=list(data.get("plugins") or []),
        skills=list(data.get("skills") or []),
    ))


def _on_assistant(state: ClaudeTransformState, message: AssistantMessage, out: list[Chunk]) -> None:
    error = getattr(message, "error", None)
    if error:
        # e.g. "authentication_failed", "rate_limit", "billing_error"
        text = " ".join(b.text for b in message.content if isinstance(b, TextBlock)) or str(error)
        _record_failure(state, f"{error}: {text}" if text != str(error) else text, out)
        finish(state, out)
        return
    if message.model and message.model != SYNTHETIC_MODEL:
        state.model = message.model
    streamed = state.streaming and message.model != SYNTHETIC_MODEL
    for block in message.content:
        if isinstance(block, TextBlock) and not streamed:
            if block.text:
                close_text(state, out)
                text_id = gen_id()
                out.append(TextStart(id=text_id))
                out.append(TextDelta(id=text_id, delta=block.text))
                out.append(TextEnd(id=text_id))
        elif isinstance(block, ToolUseBlock):
            _tool_available(state, block.id or gen_id("tool"), block.name or "unknown", block.input or {}, out)
        elif isinstance(block, ThinkingBlock) and not streamed:
            close_text(state, out)
            out.append(Reasoning(id=gen_id("thinking"), text=block.thinking or ""))


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(item.get("text") or "")
        return "\n".join(parts)
    return "" if content is None else str(content)


def _on_user(state: ClaudeTransformState, message: UserMessage, out: list[Chunk]) -> None:
    if not isinstance(message.content, list):
        return
    for block in message.content:
        if not isinstance(block, ToolResultBlock):
            continue
        state.streaming = False
        tool_id = block.tool_use_id
        if tool_id in state.finalized_tool_ids:
            continue
        state.finalized_tool_ids.add(tool_id)
        close_text(state, out)
        if block.is_error:
            out.append(ToolOutputError(
                tool_call_id=tool_id,
                error_text=_result_text(block.content) or "Tool execution failed",
            ))
        else:
            output = getattr(message, "tool_use_result", None)
            if output is None:
                output = _result_text(block.content)
            out.append(ToolOutputAvailable(tool_call_id=tool_id, output=output))


def _on_result(state: ClaudeTransformState, message: ResultMessage, out: list[Chunk]) -> None:
    _emit_session(state, message.session_id, out)
    usage = normalize_usage(message.usage)
    subtype = message.subtype or "success"
    cost = message.total_cost_usd
    if cost is None:
        cost = usage.get("total_cost_usd")
    metadata = MessageMetadata(
        session_id=state.session_id,
        input_tokens=usage.get("input_tokens"),
        output_tokens=usage.get("output_tokens"),
        total_tokens=usage.get("total_tokens"),
        cached_input_tokens=usage.get("cached_input_tokens"),
        reasoning_tokens=usage.get("reasoning_tokens"),
        total_cost_usd=cost,
        duration_ms=message.duration_ms or state.duration_ms(),
        result_subtype=subtype,
        model=state.model,
    )
    if message.is_error or subtype != "success":
        _record_failure(state, message.result or subtype.replace("_", " "), out, context="")
    finish(state, out, metadata)


def _record_failure(
    state: ClaudeTransformState, text: str, out: list[Chunk], context: str | None = None,
) -> None:
    exc_class = classify_error_message(text)
    record_error(state, out, error_chunk_for(exc_class(text), context=context))


_HANDLERS = {
    SystemMessage: _on_system,
    StreamEvent: _on_stream_event,
    AssistantMessage: _on_assistant,
    UserMessage: _on_user,
    ResultMessage: _on_result,
}


def step(state: ClaudeTransformState, message: Any) -> list[Chunk]:
    """Translate one SDK message. Never raises."""
    return run_step("claude", _HANDLERS, state, message, type(message))


def create_claude_transformer(
    session_id: str | None = None,
) -> Transformer[ClaudeTransformState]:
    return Transformer(ClaudeTransformState(session_id=session_id), step)
