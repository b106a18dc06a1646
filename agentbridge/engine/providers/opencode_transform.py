"""OpenCode SSE events -> canonical chunks.

OpenCode streams ``message.part.updated`` events whose part carries a
``type`` (text, tool, reasoning, step-start, step-finish, compaction, ...),
plus separate session.*, question.*, permission.* and todo.* families.

Cross-turn state: completed Write/Edit tools record a diff key
``session:path:md5(before|after)`` in ``emitted_diff_keys``. The set is
exported in the idle metadata and must be seeded into the next turn's
transformer, otherwise ``session.diff`` re-announces files that were
already shown through their tool call.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from agentbridge.adapters.chunks import (
    AskUserQuestion,
    AskUserQuestionResult,
    AuthError,
    Chunk,
    Error,
    FinishStep,
    MessageMetadata,
    Reasoning,
    SessionDiff,
    SystemCompact,
    TextStart,
    TodoUpdate,
    ToolInputAvailable,
    ToolInputDelta,
    ToolInputStart,
    ToolOutputAvailable,
    ToolOutputError,
)

from .diffs import diff_key, structured_patch
from .normalize import normalize_file_path, normalize_tool_input, normalize_tool_name
from .transform_base import (
    TransformState,
    Transformer,
    append_text,
    close_text,
    finish,
    gen_id,
    record_error,
    run_step,
)

logger = logging.getLogger(__name__)

# Events that need no UI representation.
NO_OP_EVENTS = frozenset({
    "session.idle",
    "session.compacted",
    "session.created",
    "session.deleted",
    "message.removed",
    "message.part.removed",
    "command.executed",
    "file.watcher.updated",
    "server.connected",
    "server.heartbeat",
    "lsp.updated",
    "lsp.client.diagnostics",
    "installation.updated",
})

PERMISSION_OPTIONS = [
    {"label": "Allow", "description": "Grant this permission"},
    {"label": "Deny", "description": "Deny this permission"},
]


@dataclass
class OpenCodeTransformState(TransformState):
    # Seeded from the previous turn and exported in the idle metadata.
    emitted_diff_keys: set[str] = field(default_factory=set)
    # question request id -> ordered sub-question texts
    pending_questions: dict[str, list[str]] = field(default_factory=dict)
    # text part id that owns the open text block
    current_text_part: str | None = None
    # latest assistant message {"cost": float, "tokens": {...}}
    assistant_info: dict[str, Any] | None = None
    model: str | None = None


def _ensure_text_part(state: OpenCodeTransformState, part_id: str, out: list[Chunk]) -> None:
    if state.current_text_id is not None and state.current_text_part not in (None, part_id):
        close_text(state, out)
    if state.current_text_id is None:
        state.current_text_id = gen_id()
        state.current_text = ""
        state.current_text_part = part_id
        out.append(TextStart(id=state.current_text_id))


def _close_text(state: OpenCodeTransformState, out: list[Chunk]) -> None:
    close_text(state, out)
    state.current_text_part = None


def _on_text_part(
    state: OpenCodeTransformState,
    part: dict[str, Any],
    delta: str | None,
    out: list[Chunk],
) -> None:
    _ensure_text_part(state, part.get("id", ""), out)
    if delta is None:
        text = part.get("text") or ""
        delta = text[len(state.current_text):] if text.startswith(state.current_text) else ""
    append_text(state, out, delta)


def _tool_output(
    tool_name: str, tool_state: dict[str, Any], tool_input: dict[str, Any],
) -> Any:
    output = tool_state.get("output") or ""
    if tool_name in ("Grep", "Glob"):
        metadata = tool_state.get("metadata") or {}
        count = metadata.get("matches")
        if count is None:
            count = metadata.get("count", 0)
        return {
            "output": output,
            "numFiles": count if isinstance(count, int) else 0,
        }
    if tool_name in ("Write", "Edit"):
        before, after = _before_after(tool_name, tool_input)
        file_path = str(tool_input.get("file_path") or "")
        return {"structuredPatch": structured_patch(file_path, before, after)}
    return output


def _before_after(tool_name: str, tool_input: dict[str, Any]) -> tuple[str, str]:
    if tool_name == "Write":
        return "", str(tool_input.get("content") or "")
    return (
        str(tool_input.get("old_string") or ""),
        str(tool_input.get("new_string") or ""),
    )


def _track_diff(
    state: OpenCodeTransformState,
    tool_name: str,
    tool_state: dict[str, Any],
    tool_input: dict[str, Any],
) -> None:
    raw_path = tool_state.get("title") or tool_input.get("file_path")
    if not raw_path or not isinstance(raw_path, str):
        return
    path = normalize_file_path(raw_path)
    before, after = _before_after(tool_name, tool_input)
    key = diff_key(state.session_id, path, before, after)
    state.emitted_diff_keys.add(key)
    logger.info(
        "Tracked tool completion for dedup: %s (session: %s)",
        path, state.session_id or "unknown",
    )


def _on_tool_part(state: OpenCodeTransformState, part: dict[str, Any], out: list[Chunk]) -> None:
    _close_text(state, out)
    tool_id = part.get("callID") or part.get("id") or ""
    tool_name = normalize_tool_name(part.get("tool") or "unknown")
    if tool_id in state.finalized_tool_ids:
        return

    if tool_id not in state.emitted_tool_ids:
        state.emitted_tool_ids.add(tool_id)
        state.tool_names[tool_id] = tool_name
        state.tool_inputs[tool_id] = ""
        out.append(ToolInputStart(tool_call_id=tool_id, tool_name=tool_name))

    tool_state = part.get("state") or {}
    raw_input = tool_state.get("input")
    if raw_input:
        args = raw_input if isinstance(raw_input, str) else json.dumps(raw_input, indent=2)
        previous = state.tool_inputs.get(tool_id, "")
        if args.startswith(previous):
            delta = args[len(previous):]
        else:
            delta = args
        if delta:
            out.append(ToolInputDelta(tool_call_id=tool_id, input_text_delta=delta))
            state.tool_inputs[tool_id] = args

    status = tool_state.get("status")
    if status not in ("completed", "error"):
        return

    tool_input = normalize_tool_input(
        tool_name, raw_input if isinstance(raw_input, dict) else {},
    )
    state.finalized_tool_ids.add(tool_id)
    out.append(ToolInputAvailable(
        tool_call_id=tool_id, tool_name=tool_name, input=tool_input,
    ))
    if status == "error":
        out.append(ToolOutputError(
            tool_call_id=tool_id,
            error_text=tool_state.get("error") or "Tool execution failed",
        ))
        return

    out.append(ToolOutputAvailable(
        tool_call_id=tool_id,
        output=_tool_output(tool_name, tool_state, tool_input),
    ))
    if tool_name in ("Write", "Edit"):
        _track_diff(state, tool_name, tool_state, tool_input)


def _on_part_updated(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    props = event.get("properties") or {}
    part = props.get("part") or {}
    delta = props.get("delta")
    if part.get("sessionID"):
        state.session_id = part["sessionID"]

    part_type = part.get("type")
    if part_type == "text":
        _on_text_part(state, part, delta, out)
    elif part_type == "tool":
        _on_tool_part(state, part, out)
    elif part_type == "step-start":
        _close_text(state, out)
    elif part_type == "step-finish":
        _close_text(state, out)
        out.append(FinishStep())
    elif part_type == "reasoning":
        _close_text(state, out)
        out.append(Reasoning(id=part.get("id", ""), text=part.get("text") or ""))
    elif part_type == "subtask":
        _close_text(state, out)
        logger.info("Subtask: %s", part.get("description") or part.get("prompt") or "unknown")
    elif part_type == "snapshot":
        logger.info("Snapshot captured")
    elif part_type == "patch":
        logger.info("Patch: %d files", len(part.get("files") or []))
    elif part_type == "agent":
        _close_text(state, out)
        logger.info("Agent: %s", part.get("name") or "unknown")
    elif part_type == "retry":
        error = part.get("error") or {}
        message = (error.get("data") or {}).get("message") or "unknown error"
        logger.info("Retry attempt %s: %s", part.get("attempt") or "?", message)
    elif part_type == "compaction":
        _close_text(state, out)
        logger.info("Compaction occurred (auto: %s)", part.get("auto", True))
        out.append(SystemCompact(tool_call_id=gen_id("compact")))
    else:
        logger.debug("opencode: unhandled part type %r", part_type)


def _mapped_questions(questions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "question": q.get("question", ""),
            "header": q.get("header", ""),
            "options": [
                {"label": o.get("label", ""), "description": o.get("description", "")}
                for o in (q.get("options") or [])
            ],
            "multiSelect": bool(q.get("multiple", q.get("multiSelect", False))),
        }
        for q in questions
    ]


def _on_question_asked(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    props = event.get("properties") or {}
    request_id = props.get("id", "")
    questions = props.get("questions") or []
    state.pending_questions[request_id] = [q.get("question", "") for q in questions]
    mapped = _mapped_questions(questions)
    _close_text(state, out)
    out.append(ToolInputAvailable(
        tool_call_id=request_id,
        tool_name="AskUserQuestion",
        input={"questions": mapped},
    ))
    out.append(AskUserQuestion(tool_use_id=request_id, questions=mapped))


def _on_question_replied(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    props = event.get("properties") or {}
    request_id = props.get("requestID", "")
    answers = props.get("answers") or []
    texts = state.pending_questions.pop(request_id, None) or []
    record: dict[str, str] = {}
    for index, answer in enumerate(answers):
        label = texts[index] if index < len(texts) and texts[index] else f"Question {index + 1}"
        if isinstance(answer, list):
            record[label] = ", ".join(str(a) for a in answer)
        else:
            record[label] = str(answer)
    out.append(ToolOutputAvailable(tool_call_id=request_id, output={"answers": record}))
    out.append(AskUserQuestionResult(tool_use_id=request_id, result={"answers": record}))


def _on_question_rejected(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    props = event.get("properties") or {}
    request_id = props.get("requestID", "")
    state.pending_questions.pop(request_id, None)
    out.append(ToolOutputError(tool_call_id=request_id, error_text="Skipped"))
    out.append(AskUserQuestionResult(tool_use_id=request_id, result="Skipped"))


def _idle_metadata(state: OpenCodeTransformState) -> MessageMetadata:
    info = state.assistant_info or {}
    tokens = info.get("tokens") or {}
    input_tokens = tokens.get("input")
    output_tokens = tokens.get("output")
    total = None
    if input_tokens is not None and output_tokens is not None:
        total = input_tokens + output_tokens
    return MessageMetadata(
        session_id=state.session_id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total,
        cached_input_tokens=(tokens.get("cache") or {}).get("read"),
        reasoning_tokens=tokens.get("reasoning"),
        total_cost_usd=info.get("cost"),
        duration_ms=state.duration_ms(),
        result_subtype="success",
        model=state.model,
        emitted_diff_keys=sorted(state.emitted_diff_keys),
    )


def _on_session_status(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    props = event.get("properties") or {}
    if props.get("sessionID"):
        state.session_id = props["sessionID"]
    status = props.get("status") or {}
    if status.get("type") != "idle":
        return
    _close_text(state, out)
    if state.pending_questions:
        logger.debug("Dropping %d orphaned questions", len(state.pending_questions))
        state.pending_questions.clear()
    finish(state, out, _idle_metadata(state))


def _on_session_updated(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    info = (event.get("properties") or {}).get("info") or {}
    if info.get("id"):
        state.session_id = info["id"]


def session_error_chunk(error: Any) -> Chunk:
    """Classify a session.error payload by its typed ``name``."""
    if isinstance(error, dict) and "name" in error:
        name = error.get("name")
        data = error.get("data") or {}
        message = data.get("message")
        if name == "ProviderAuthError":
            return AuthError(error_text=message or "Authentication failed")
        if name == "APIError":
            if data.get("statusCode") in (401, 403):
                return AuthError(error_text=message or "Unauthorized")
            return Error(error_text=message or "API error")
        if name == "MessageAbortedError":
            return Error(error_text="Message aborted")
        return Error(error_text=message or "Unknown error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return Error(error_text=error["message"])
    return Error(error_text="OpenCode session failed")


def _on_session_error(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    props = event.get("properties") or {}
    if props.get("sessionID"):
        state.session_id = props["sessionID"]
    _close_text(state, out)
    state.pending_questions.clear()
    record_error(state, out, session_error_chunk(props.get("error")))
    finish(state, out)


def _on_permission_updated(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    props = event.get("properties") or {}
    out.append(AskUserQuestion(
        tool_use_id=props.get("id", ""),
        questions=[{
            "question": props.get("title") or "Permission requested",
            "header": "Permission",
            "options": [dict(o) for o in PERMISSION_OPTIONS],
            "multiSelect": False,
        }],
    ))


def _on_permission_replied(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    props = event.get("properties") or {}
    out.append(AskUserQuestionResult(
        tool_use_id=props.get("permissionID", ""),
        result=props.get("response"),
    ))


def _on_session_diff(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    props = event.get("properties") or {}
    if props.get("sessionID"):
        state.session_id = props["sessionID"]
    diffs = []
    for entry in props.get("diff") or []:
        file_path = entry.get("file", "")
        before = entry.get("before")
        after = entry.get("after")
        if before is not None or after is not None:
            key = diff_key(
                state.session_id, normalize_file_path(file_path),
                before or "", after or "",
            )
            if key in state.emitted_diff_keys:
                continue
            state.emitted_diff_keys.add(key)
        diffs.append({
            "file": file_path,
            "additions": entry.get("additions", 0),
            "deletions": entry.get("deletions", 0),
        })
    if diffs:
        out.append(SessionDiff(diffs=diffs))


def _on_todo_updated(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    todos = []
    for todo in (event.get("properties") or {}).get("todos") or []:
        entry = {"content": todo.get("content", ""), "status": todo.get("status", "pending")}
        if todo.get("activeForm"):
            entry["activeForm"] = todo["activeForm"]
        todos.append(entry)
    out.append(TodoUpdate(todos=todos))


def _on_message_updated(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    info = (event.get("properties") or {}).get("info") or {}
    if info.get("role") == "assistant" and info.get("tokens"):
        state.assistant_info = {"cost": info.get("cost"), "tokens": info["tokens"]}
        if info.get("modelID"):
            state.model = info["modelID"]


def _on_file_edited(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    logger.info("File edited: %s", (event.get("properties") or {}).get("file"))


def _on_branch_updated(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    logger.info("Branch updated: %s", (event.get("properties") or {}).get("branch"))


def _ignore(state: OpenCodeTransformState, event: dict[str, Any], out: list[Chunk]) -> None:
    return None


_HANDLERS = {
    "message.part.updated": _on_part_updated,
    "message.updated": _on_message_updated,
    "question.asked": _on_question_asked,
    "question.replied": _on_question_replied,
    "question.rejected": _on_question_rejected,
    "session.status": _on_session_status,
    "session.updated": _on_session_updated,
    "session.error": _on_session_error,
    "session.diff": _on_session_diff,
    "permission.updated": _on_permission_updated,
    "permission.asked": _on_permission_updated,
    "permission.replied": _on_permission_replied,
    "todo.updated": _on_todo_updated,
    "file.edited": _on_file_edited,
    "vcs.branch.updated": _on_branch_updated,
}
_HANDLERS.update({name: _ignore for name in NO_OP_EVENTS})


def step(state: OpenCodeTransformState, event: dict[str, Any]) -> list[Chunk]:
    """Translate one OpenCode event. Never raises."""
    return run_step("opencode", _HANDLERS, state, event)


def create_opencode_transformer(
    emitted_diff_keys: set[str] | list[str] | None = None,
    session_id: str | None = None,
) -> Transformer[OpenCodeTransformState]:
    """Build a transformer, optionally seeded with the previous turn's keys."""
    state = OpenCodeTransformState(
        session_id=session_id,
        emitted_diff_keys=set(emitted_diff_keys or ()),
    )
    return Transformer(state, step)


def parse_sse_event(event_type: str, data: str) -> dict[str, Any] | None:
    """Wrap raw SSE data as ``{"type", "properties"}``; None on bad JSON."""
    try:
        properties = json.loads(data)
    except (TypeError, ValueError) as exc:
        logger.error("Failed to parse SSE event %s: %s", event_type, exc)
        return None
    return {"type": event_type, "properties": properties}
