"""Routing table for backend questions awaiting a user answer.

When a provider yields an ``ask-user-question`` chunk it registers the
question here under the chunk's toolUseId. The UI later answers with a
labeled record ``{question text: answer}``; the backend wants positional
``list[list[str]]`` answers, so the stored questions are used to reshape.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class PendingQuestion:
    """A question request the backend is blocked on."""
    question_id: str
    provider: str
    sub_chat_id: str = ""
    directory: str | None = None
    questions: list[dict[str, Any]] = field(default_factory=list)
    # "question" or "permission"; permissions are answered per session
    kind: str = "question"
    session_id: str | None = None


def answers_to_arrays(
    questions: list[dict[str, Any]],
    answers: dict[str, Any],
) -> list[list[str]]:
    """Map a labeled answers record onto positional answer lists.

    Each question's answer is looked up by its text, then ``q{index}``,
    then its header. String answers are split on commas.
    """
    result: list[list[str]] = []
    for index, q in enumerate(questions):
        answer = (
            answers.get(q.get("question", ""))
            or answers.get(f"q{index}")
            or answers.get(q.get("header", ""))
            or []
        )
        if isinstance(answer, list):
            result.append([str(a) for a in answer])
        elif isinstance(answer, str) and answer:
            result.append([s.strip() for s in answer.split(",") if s.strip()])
        else:
            result.append([])
    return result


class PendingQuestionRegistry:
    """tool_use_id -> PendingQuestion."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingQuestion] = {}

    def register(self, tool_use_id: str, question: PendingQuestion) -> None:
        self._pending[tool_use_id] = question
        logger.debug(
            "Registered pending %s question %s (tool_use_id=%s)",
            question.provider, question.question_id, tool_use_id,
        )

    def get(self, tool_use_id: str) -> PendingQuestion | None:
        return self._pending.get(tool_use_id)

    def pop(self, tool_use_id: str) -> PendingQuestion | None:
        return self._pending.pop(tool_use_id, None)

    def clear_sub_chat(self, sub_chat_id: str) -> list[str]:
        """Drop every question owned by *sub_chat_id*; returns their ids."""
        dropped = [
            tid for tid, q in self._pending.items()
            if q.sub_chat_id == sub_chat_id
        ]
        for tid in dropped:
            del self._pending[tid]
        return dropped

    def __contains__(self, tool_use_id: str) -> bool:
        return tool_use_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
