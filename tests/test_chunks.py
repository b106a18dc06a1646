"""Tests for the canonical chunk wire form."""
from __future__ import annotations

import json

from agentbridge.adapters.chunks import (
    PROTOCOL_VERSION,
    AskUserQuestion,
    Chunk,
    Finish,
    MessageMetadata,
    SystemCompact,
    TextDelta,
    ToolInputAvailable,
    chunk_to_dict,
    dict_to_chunk,
)


def test_protocol_version_is_one() -> None:
    assert PROTOCOL_VERSION == 1


def test_chunk_to_dict_uses_camel_case_and_drops_none() -> None:
    chunk = ToolInputAvailable(tool_call_id="t1", tool_name="Bash", input={"command": "ls"})
    assert chunk_to_dict(chunk) == {
        "type": "tool-input-available",
        "toolCallId": "t1",
        "toolName": "Bash",
        "input": {"command": "ls"},
    }


def test_finish_metadata_serializes_nested() -> None:
    chunk = Finish(message_metadata=MessageMetadata(
        session_id="s1", input_tokens=10, output_tokens=5, emitted_diff_keys=["k"],
    ))
    data = chunk_to_dict(chunk)
    assert data == {
        "type": "finish",
        "messageMetadata": {
            "sessionId": "s1",
            "inputTokens": 10,
            "outputTokens": 5,
            "emittedDiffKeys": ["k"],
        },
    }
    # wire form must be plain JSON
    json.dumps(data)


def test_dict_to_chunk_restores_typed_chunk() -> None:
    chunk = dict_to_chunk({"type": "text-delta", "id": "x", "delta": "hi"})
    assert chunk == TextDelta(id="x", delta="hi")

    finish = dict_to_chunk({"type": "finish", "messageMetadata": {"sessionId": "abc"}})
    assert isinstance(finish, Finish)
    assert finish.message_metadata == MessageMetadata(session_id="abc")


def test_dict_to_chunk_ignores_unknown_keys_and_types() -> None:
    chunk = dict_to_chunk({"type": "ask-user-question", "toolUseId": "q", "extra": 1})
    assert chunk == AskUserQuestion(tool_use_id="q")

    unknown = dict_to_chunk({"type": "future-thing", "payload": 1})
    assert type(unknown) is Chunk
    assert unknown.type == "future-thing"


def test_system_compact_keeps_its_wire_type() -> None:
    data = chunk_to_dict(SystemCompact(tool_call_id="c1"))
    assert data["type"] == "system-Compact"
    assert data["state"] == "output-available"
    assert dict_to_chunk(data) == SystemCompact(tool_call_id="c1")
