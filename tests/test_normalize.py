"""Field-name normalization, independent of any transformer."""
from __future__ import annotations

from agentbridge.engine.providers.normalize import (
    file_change_tool_name,
    item_field,
    item_tool_name,
    normalize_file_path,
    normalize_tool_input,
    normalize_tool_name,
    normalize_usage,
    pick,
)


def test_pick_returns_first_set_key() -> None:
    assert pick({"b": 2, "c": 3}, ("a", "b", "c")) == 2
    assert pick({"a": None, "c": 3}, ("a", "b", "c")) == 3
    assert pick({}, ("a",), "dflt") == "dflt"
    assert pick(None, ("a",)) is None


def test_item_field_priority_prefers_path_over_file_path() -> None:
    assert item_field({"file_path": "b", "path": "a"}, "file_path") == "a"
    assert item_field({"aggregated_output": "x", "output": "y"}, "output") == "x"
    assert item_field({"exitCode": 2}, "exit_code") == 2


def test_normalize_usage_collapses_names_and_totals() -> None:
    usage = normalize_usage({
        "prompt_tokens": "12",
        "completion_tokens": 3,
        "cache_read_input_tokens": 4,
        "cost_usd": 0.5,
    })
    assert usage == {
        "input_tokens": 12,
        "output_tokens": 3,
        "cached_input_tokens": 4,
        "total_cost_usd": 0.5,
        "total_tokens": 15,
    }


def test_normalize_usage_omits_missing_counters() -> None:
    assert normalize_usage(None) == {}
    assert normalize_usage({"input_tokens": 7}) == {"input_tokens": 7}


def test_item_tool_name() -> None:
    assert item_tool_name({"type": "command_execution"}) == "Bash"
    assert item_tool_name({"type": "reasoning"}) == "Thinking"
    assert item_tool_name({"type": "mcp_tool_call", "server": "gh", "tool": "search"}) == "mcp__gh__search"
    assert item_tool_name({"type": "agent_message"}) is None


def test_file_change_tool_name() -> None:
    assert file_change_tool_name("add") == "Write"
    assert file_change_tool_name("delete") == "Delete"
    assert file_change_tool_name("update") == "Edit"


def test_normalize_tool_name_is_case_insensitive() -> None:
    assert normalize_tool_name("bash") == "Bash"
    assert normalize_tool_name("TodoWrite") == "TodoWrite"
    assert normalize_tool_name("custom_tool") == "custom_tool"


def test_normalize_file_path() -> None:
    assert normalize_file_path("src/app.py") == "src/app.py"
    assert normalize_file_path("/home/me/proj/src/app.py") == "src/app.py"
    assert normalize_file_path("/home/me/proj/README.md") == "me/proj/README.md"
    assert normalize_file_path("/a/b") == "/a/b"


def test_normalize_tool_input_edit_and_glob() -> None:
    edit = normalize_tool_input("Edit", {"filePath": "f.py", "oldString": "a", "newString": "b"})
    assert edit["file_path"] == "f.py"
    assert edit["old_string"] == "a"
    assert edit["new_string"] == "b"

    glob = normalize_tool_input("Glob", {"path": "src", "query": "*.py"})
    assert glob["file_path"] == "src"
    assert glob["pattern"] == "*.py"

    assert normalize_tool_input("Bash", "raw") == "raw"
