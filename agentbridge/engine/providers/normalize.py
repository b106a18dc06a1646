"""Field normalization shared by the provider transformers.

Backends disagree on field names. Every normalized field has an explicit
priority order here: the first key present with a non-None value wins.
"""
from __future__ import annotations

from typing import Any, Mapping

# Item/turn backend (Codex) item fields.
ITEM_FIELD_PRIORITY: dict[str, tuple[str, ...]] = {
    "file_path": ("path", "file_path", "filePath", "filename"),
    "command": ("command", "cmd"),
    "output": ("aggregated_output", "output", "stdout", "result"),
    "exit_code": ("exit_code", "exitCode"),
    "content": ("content", "new_content", "text"),
    "old_string": ("old_string", "old_content", "oldString", "before"),
    "new_string": ("new_string", "new_content", "newString", "after"),
    "patch": ("patch", "diff", "input"),
    "query": ("query", "q"),
    "url": ("url", "target"),
    "action": ("action", "type"),
    "text": ("text", "content", "summary"),
}

# Token/cost usage counters across all backends.
USAGE_FIELD_PRIORITY: dict[str, tuple[str, ...]] = {
    "input_tokens": ("input_tokens", "prompt_tokens", "inputTokens", "input"),
    "output_tokens": (
        "output_tokens", "completion_tokens", "outputTokens", "output",
    ),
    "cached_input_tokens": (
        "cached_tokens", "cached_input_tokens", "cache_read_input_tokens",
        "cachedInputTokens",
    ),
    "reasoning_tokens": (
        "reasoning_output_tokens", "reasoning_tokens", "reasoning",
    ),
    "total_cost_usd": ("total_cost_usd", "cost_usd", "cost"),
}

# Item type -> canonical tool name for the item/turn backend.
ITEM_TOOL_NAMES: dict[str, str] = {
    "command_execution": "Bash",
    "local_shell_call": "Bash",
    "file_edit": "Edit",
    "file_write": "Write",
    "file_create": "Write",
    "file_read": "Read",
    "apply_patch": "ApplyPatch",
    "apply_patch_call": "ApplyPatch",
    "file_tree": "Glob",
    "list_directory": "Glob",
    "web_search": "WebSearch",
    "browser_action": "Browser",
    "browser": "Browser",
    "reasoning": "Thinking",
    "todo_list": "TodoWrite",
}

MESSAGE_ITEM_TYPES = frozenset({"agent_message", "message", "assistant_message"})

# Native tool name (lowercased) -> canonical name for the SSE backend.
TOOL_NAME_MAP: dict[str, str] = {
    "shell": "Bash",
    "bash": "Bash",
    "file_read": "Read",
    "read": "Read",
    "file_write": "Write",
    "write": "Write",
    "file_edit": "Edit",
    "edit": "Edit",
    "glob": "Glob",
    "find_files": "Glob",
    "grep": "Grep",
    "search": "Grep",
    "web_search": "WebSearch",
    "webfetch": "WebFetch",
    "thinking": "Thinking",
    "task": "Task",
    "todowrite": "TodoWrite",
    "todoread": "TodoRead",
    "question": "AskUserQuestion",
}

# Path segments that usually mark the project root boundary.
ROOT_INDICATORS = (
    "apps",
    "packages",
    "src",
    "lib",
    "components",
    "pages",
    "api",
    "server",
    "client",
)


def pick(
    mapping: Mapping[str, Any] | None,
    keys: tuple[str, ...],
    default: Any = None,
) -> Any:
    """Return the value of the first key in *keys* that is set."""
    if not mapping:
        return default
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return default


def item_field(item: Mapping[str, Any], name: str, default: Any = None) -> Any:
    """Read a Codex item field using ITEM_FIELD_PRIORITY."""
    return pick(item, ITEM_FIELD_PRIORITY[name], default)


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_usage(usage: Mapping[str, Any] | None) -> dict[str, Any]:
    """Collapse backend usage dicts to canonical counter names.

    Missing counters are omitted. ``total_tokens`` is input + output
    when both are known.
    """
    if not usage:
        return {}
    out: dict[str, Any] = {}
    for name in ("input_tokens", "output_tokens", "cached_input_tokens", "reasoning_tokens"):
        value = _as_int(pick(usage, USAGE_FIELD_PRIORITY[name]))
        if value is not None:
            out[name] = value
    cost = pick(usage, USAGE_FIELD_PRIORITY["total_cost_usd"])
    if isinstance(cost, (int, float)):
        out["total_cost_usd"] = float(cost)
    if "input_tokens" in out and "output_tokens" in out:
        out["total_tokens"] = out["input_tokens"] + out["output_tokens"]
    return out


def item_tool_name(item: Mapping[str, Any]) -> str | None:
    """Canonical tool name for a Codex item, or None for non-tool items."""
    item_type = item.get("type", "")
    if item_type == "mcp_tool_call":
        server = item.get("server") or "unknown"
        tool = item.get("tool") or item.get("tool_name") or item.get("name") or "unknown"
        return f"mcp__{server}__{tool}"
    return ITEM_TOOL_NAMES.get(item_type)


def file_change_tool_name(kind: str) -> str:
    if kind == "add":
        return "Write"
    if kind == "delete":
        return "Delete"
    return "Edit"


def normalize_tool_name(tool_name: str) -> str:
    """Map an SSE-backend tool name to the canonical UI name."""
    return TOOL_NAME_MAP.get(tool_name.lower(), tool_name)


def normalize_file_path(file_path: str) -> str:
    """Reduce an absolute path to the project-relative form used by
    session-level diff summaries.

    Relative paths are returned unchanged. Absolute paths are cut at the
    first ROOT_INDICATORS segment; failing that, the last three segments
    are kept.
    """
    if not file_path or not file_path.startswith("/"):
        return file_path
    parts = file_path.split("/")
    for index, part in enumerate(parts):
        if index > 0 and part in ROOT_INDICATORS:
            return "/".join(parts[index:])
    if len(parts) > 3:
        return "/".join(parts[-3:])
    return file_path


def normalize_tool_input(
    tool_name: str, tool_input: Any,
) -> Any:
    """Rename SSE-backend tool input keys to what the UI expects.

    file_path <- filePath, path
    old_string <- oldString, before   (Edit only)
    new_string <- newString, after    (Edit only)
    pattern <- query                  (Glob only)
    """
    if not isinstance(tool_input, dict):
        return tool_input
    normalized = dict(tool_input)

    if "file_path" not in normalized:
        if "filePath" in normalized:
            normalized["file_path"] = normalized["filePath"]
        elif "path" in normalized:
            normalized["file_path"] = normalized["path"]

    if tool_name == "Edit":
        if "old_string" not in normalized:
            if "oldString" in normalized:
                normalized["old_string"] = normalized["oldString"]
            elif "before" in normalized:
                normalized["old_string"] = normalized["before"]
        if "new_string" not in normalized:
            if "newString" in normalized:
                normalized["new_string"] = normalized["newString"]
            elif "after" in normalized:
                normalized["new_string"] = normalized["after"]

    if tool_name == "Glob" and "query" in normalized and "pattern" not in normalized:
        normalized["pattern"] = normalized["query"]

    return normalized
