"""Adapters package - the canonical chunk protocol and question routing.

Everything a UI consumes lives here: chunk types, their wire form, and
the table that routes user answers back to the backend that asked.
"""
from __future__ import annotations

__all__ = [
    "Chunk",
    "PROTOCOL_VERSION",
    "chunk_to_dict",
    "dict_to_chunk",
    "PendingQuestion",
    "PendingQuestionRegistry",
]

from agentbridge.adapters.chunks import PROTOCOL_VERSION, Chunk, chunk_to_dict, dict_to_chunk
from agentbridge.adapters.questions import PendingQuestion, PendingQuestionRegistry
