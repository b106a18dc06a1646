"""Codex ``exec --json`` events -> canonical chunks.

Codex reports work as items with a started/updated/completed lifecycle,
framed by thread.started and turn.completed / turn.failed:

    {"type": "thread.started", "thread_id": "..."}
    {"type": "item.started", "item": {"id": "item_0", "type": "agent_message", ...}}
    {"type": "item.updated", "item": {...cumulative text...}}
    {"type": "item.completed", "item": {...}}
    {"type": "turn.completed", "usage": {"input_tokens": 10, ...}}

Message text and reasoning arrive cumulatively, so deltas are computed by
slicing off what was already forwarded. Reasoning is a pseudo-tool
("Thinking"), not visible text.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from agentbridge.adapters.chunks import (
    Chunk,
    Error,
    MessageMetadata,
    TextDelta,
    TextEnd,
    TextStart,
    TodoUpdate,
    ToolInputAvailable,
    ToolInputDelta,
    ToolInputStart,
    ToolOutputAvailable,
    ToolOutputError,
)

from ..errors import classify_error_message, error_chunk_for
from .normalize import (
    MESSAGE_ITEM_TYPES,
    file_change_tool_name,
    item_field,
    item_tool_name,
    normalize_usage,
)
from .transform_base import (
    TransformState,
    Transformer,
    close_text,
    finish,
    gen_id,
    open_text,
    record_error,
    run_step,
)

logger = logging.getLogger(__name__)


@dataclass
class CodexTransformState(TransformState):
    # item id -> text forwarded so far (messages and reasoning)
    item_content: dict[str, str] = field(default_factory=dict)
    # message item id that owns the open text block
    current_text_item: str | None = None
    # file-change tool call id -> file path, for output enrichment
    file_changes: dict[str, str] = field(default_factory=dict)
    model: str | None = None


def _item_failed(item: dict[str, Any]) -> bool:
    if item.get("status") in ("failed", "error", "declined"):
        return True
    if item.get("success") is False:
        return True
    return bool(item.get("error"))


def _error_text(item: dict[str, Any], default: str) -> str:
    error = item.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or default)
    if isinstance(error, str) and error:
        return error
    output = item_field(item, "output")
    if isinstance(output, str) and output.strip():
        return output
    return default


def _start_tool(state: CodexTransformState, tool_id: str, name: str, out: list[Chunk]) -> None:
    if tool_id in state.emitted_tool_ids or tool_id in state.finalized_tool_ids:
        return
    state.emitted_tool_ids.add(tool_id)
    state.tool_names[tool_id] = name
    out.append(ToolInputStart(tool_call_id=tool_id, tool_name=name))


def _tool_input(item: dict[str, Any], item_type: str, state: CodexTransformState) -> Any:
    """Rebuild the tool input from item fields with normalized names."""
    if item_type in ("command_execution", "local_shell_call"):
        command = item_field(item, "command", "")
        if isinstance(command, list):
            command = " ".join(str(part) for part in command)
        tool_input = {"command": command}
        if item.get("description"):
            tool_input["description"] = item["description"]
        return tool_input
    if item_type == "file_edit":
        return {
            "file_path": item_field(item, "file_path", ""),
            "old_string": item_field(item, "old_string", ""),
            "new_string": item_field(item, "new_string", ""),
        }
    if item_type in ("file_write", "file_create"):
        return {
            "file_path": item_field(item, "file_path", ""),
            "content": item_field(item, "content", ""),
        }
    if item_type == "file_read":
        return {"file_path": item_field(item, "file_path", "")}
    if item_type in ("apply_patch", "apply_patch_call"):
        return {
            "file_path": item_field(item, "file_path", ""),
            "action": item.get("action") or "update_file",
            "diff": item_field(item, "patch", ""),
        }
    if item_type in ("file_tree", "list_directory"):
        tool_input = {"path": item_field(item, "file_path", "")}
        if item.get("pattern"):
            tool_input["pattern"] = item["pattern"]
        return tool_input
    if item_type == "web_search":
        return {"query": item_field(item, "query", "")}
    if item_type in ("browser_action", "browser"):
        return {
            "action": item.get("action") or "",
            "url": item_field(item, "url", ""),
        }
    if item_type == "reasoning":
        text = state.item_content.get(item.get("id", "")) or item_field(item, "text", "")
        return {"text": text}
    if item_type == "todo_list":
        return {"todos": _todos(item)}
    if item_type == "mcp_tool_call":
        return item.get("arguments") or {}
    return {}


def _tool_output(item: dict[str, Any], item_type: str) -> Any:
    if item_type in ("command_execution", "local_shell_call"):
        output = {
            "stdout": item_field(item, "output", ""),
            "exitCode": item_field(item, "exit_code", 0),
        }
        if item.get("stderr"):
            output["stderr"] = item["stderr"]
        return output
    if item_type == "file_read":
        return item_field(item, "content", "")
    if item_type in ("apply_patch", "apply_patch_call"):
        return {"success": True}
    if item_type in ("file_tree", "list_directory", "web_search"):
        results = item.get("results")
        if results is None:
            results = item.get("content")
        return results if results is not None else {"completed": True}
    if item_type in ("browser_action", "browser"):
        return item.get("result") or item.get("content") or {"completed": True}
    if item_type == "reasoning":
        return {"completed": True}
    if item_type == "mcp_tool_call":
        return item.get("result") or {"completed": True}
    return {"success": True}


def _todos(item: dict[str, Any]) -> list[dict[str, Any]]:
    todos = []
    for entry in item.get("items") or []:
        if not isinstance(entry, dict):
            continue
        todos.append({
            "content": entry.get("text") or entry.get("content") or "",
            "status": "completed" if entry.get("completed") else "pending",
        })
    return todos


# ── Event handlers ──

def _on_thread_started(state: CodexTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    state.session_id = event.get("thread_id") or event.get("id") or state.session_id


def _on_item_started(state: CodexTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    item = event.get("item") or {}
    item_id = item.get("id", "")
    item_type = item.get("type", "")

    if item_type in MESSAGE_ITEM_TYPES:
        open_text(state, out)
        state.current_text_item = item_id
        state.item_content[item_id] = ""
        return

    close_text(state, out)
    state.current_text_item = None
    if item_type in ("file_change", "error"):
        return
    name = item_tool_name(item)
    if name is None:
        logger.debug("codex: unhandled item type %r on start", item_type)
        return
    if item_type == "reasoning":
        state.item_content.setdefault(item_id, "")
    _start_tool(state, item_id, name, out)


def _on_item_updated(state: CodexTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    item = event.get("item") or {}
    item_id = item.get("id", "")
    item_type = item.get("type", "")

    if item_type in MESSAGE_ITEM_TYPES:
        text = item_field(item, "text", "")
        if not isinstance(text, str) or not text:
            return
        delta = text[len(state.item_content.get(item_id, "")):]
        if not delta:
            return
        if state.current_text_item != item_id or state.current_text_id is None:
            open_text(state, out)
            state.current_text_item = item_id
        out.append(TextDelta(id=state.current_text_id, delta=delta))
        state.item_content[item_id] = text
        return

    if item_id in state.finalized_tool_ids:
        return

    if item_type == "reasoning":
        text = item_field(item, "text", "")
        if not isinstance(text, str) or not text:
            return
        _start_tool(state, item_id, "Thinking", out)
        previous = state.item_content.get(item_id, "")
        delta = text[len(previous):]
        if delta:
            out.append(ToolInputDelta(tool_call_id=item_id, input_text_delta=delta))
            state.item_content[item_id] = text
        return

    if item_type in ("command_execution", "local_shell_call"):
        command = item_field(item, "command")
        if command:
            _start_tool(state, item_id, "Bash", out)
            out.append(ToolInputDelta(tool_call_id=item_id, input_text_delta=str(command)))


def _complete_message(state: CodexTransformState, item: dict[str, Any], out: list[Chunk]) -> None:
    item_id = item.get("id", "")
    text = item_field(item, "text", "")
    if not isinstance(text, str):
        text = ""
    if item_id not in state.item_content:
        if text:
            close_text(state, out)
            text_id = gen_id()
            out.append(TextStart(id=text_id))
            out.append(TextDelta(id=text_id, delta=text))
            out.append(TextEnd(id=text_id))
            state.item_content[item_id] = text
        return
    if state.current_text_item == item_id and state.current_text_id is not None:
        previous = state.item_content.get(item_id, "")
        if text.startswith(previous) and len(text) > len(previous):
            out.append(TextDelta(id=state.current_text_id, delta=text[len(previous):]))
            state.item_content[item_id] = text
    close_text(state, out)
    state.current_text_item = None


def _complete_file_change(state: CodexTransformState, item: dict[str, Any], out: list[Chunk]) -> None:
    item_id = item.get("id", "")
    if item_id in state.finalized_tool_ids:
        return
    state.finalized_tool_ids.add(item_id)
    failed = _item_failed(item)
    for change in item.get("changes") or []:
        path = item_field(change, "file_path", "")
        kind = change.get("kind", "update")
        if isinstance(kind, dict):
            kind = kind.get("type", "update")
        change_id = f"{item_id}_{path}"
        if change_id in state.finalized_tool_ids:
            continue
        name = file_change_tool_name(kind)
        _start_tool(state, change_id, name, out)
        state.finalized_tool_ids.add(change_id)
        out.append(ToolInputAvailable(
            tool_call_id=change_id,
            tool_name=name,
            input={"file_path": path, "kind": kind},
        ))
        if failed:
            out.append(ToolOutputError(
                tool_call_id=change_id,
                error_text=_error_text(item, "File change failed"),
            ))
        else:
            state.file_changes[change_id] = path
            out.append(ToolOutputAvailable(
                tool_call_id=change_id,
                output={"success": True},
            ))


def _on_item_completed(state: CodexTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    item = event.get("item") or {}
    item_id = item.get("id", "")
    item_type = item.get("type", "")

    if item_type in MESSAGE_ITEM_TYPES:
        _complete_message(state, item, out)
        return

    if item_type == "error":
        message = item.get("message") or item_field(item, "text", "") or "Codex error"
        record_error(state, out, Error(error_text=str(message)))
        return

    if item_type == "file_change":
        close_text(state, out)
        _complete_file_change(state, item, out)
        return

    name = item_tool_name(item)
    if name is None:
        logger.debug("codex: unhandled item type %r on completion", item_type)
        return
    if item_id in state.finalized_tool_ids:
        return
    close_text(state, out)
    _start_tool(state, item_id, name, out)
    state.finalized_tool_ids.add(item_id)
    out.append(ToolInputAvailable(
        tool_call_id=item_id,
        tool_name=name,
        input=_tool_input(item, item_type, state),
    ))
    if _item_failed(item):
        out.append(ToolOutputError(
            tool_call_id=item_id,
            error_text=_error_text(item, f"{name} failed"),
        ))
    else:
        out.append(ToolOutputAvailable(
            tool_call_id=item_id,
            output=_tool_output(item, item_type),
        ))
    if item_type == "todo_list":
        out.append(TodoUpdate(todos=_todos(item)))


def _on_turn_completed(state: CodexTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    usage = normalize_usage(event.get("usage"))
    metadata = MessageMetadata(
        session_id=state.session_id,
        input_tokens=usage.get("input_tokens"),
        output_tokens=usage.get("output_tokens"),
        total_tokens=usage.get("total_tokens"),
        cached_input_tokens=usage.get("cached_input_tokens"),
        reasoning_tokens=usage.get("reasoning_tokens"),
        total_cost_usd=usage.get("total_cost_usd"),
        duration_ms=state.duration_ms(),
        result_subtype="success",
        model=state.model,
    )
    finish(state, out, metadata)


def _on_failure(state: CodexTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    error = event.get("error")
    if isinstance(error, dict):
        message = error.get("message")
    else:
        message = error
    message = message or event.get("message") or "Codex execution failed"
    message = str(message)
    exc_class = classify_error_message(message)
    record_error(state, out, error_chunk_for(exc_class(message), context=""))
    finish(state, out)


def _ignore(state: CodexTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    return None


_HANDLERS = {
    "thread.started": _on_thread_started,
    "turn.started": _ignore,
    "item.started": _on_item_started,
    "item.updated": _on_item_updated,
    "item.completed": _on_item_completed,
    "turn.completed": _on_turn_completed,
    "turn.failed": _on_failure,
    "error": _on_failure,
}


def step(state: CodexTransformState, event: dict[str, Any]) -> list[Chunk]:
    """Translate one Codex event. Never raises."""
    return run_step("codex", _HANDLERS, state, event)


def create_codex_transformer(
    session_id: str | None = None, model: str | None = None,
) -> Transformer[CodexTransformState]:
    state = CodexTransformState(session_id=session_id, model=model)
    return Transformer(state, step)
