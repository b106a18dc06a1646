"""Structured-diff synthesis for file-editing tool outputs.

A structured patch is a list of hunks, each ``{"lines": [...]}`` where
every line keeps its unified-diff prefix (``" "``, ``"-"`` or ``"+"``).
The UI renders these directly without re-reading the file.
"""
from __future__ import annotations

import asyncio
import difflib
import hashlib
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

CONTEXT_LINES = 3


def structured_patch(
    file_path: str, before: str, after: str,
) -> list[dict[str, list[str]]]:
    """Build context-3 hunks from two file contents."""
    diff_lines = difflib.unified_diff(
        before.splitlines(), after.splitlines(),
        fromfile=file_path, tofile=file_path,
        n=CONTEXT_LINES, lineterm="",
    )
    hunks: list[dict[str, list[str]]] = []
    current: list[str] | None = None
    for line in diff_lines:
        if line.startswith("---") and current is None:
            continue
        if line.startswith("+++") and current is None:
            continue
        if line.startswith("@@"):
            current = []
            hunks.append({"lines": current})
            continue
        if current is not None:
            current.append(line)
    return hunks


def count_changes(hunks: list[dict[str, list[str]]]) -> tuple[int, int]:
    """Return (additions, deletions) for a structured patch."""
    additions = deletions = 0
    for hunk in hunks:
        for line in hunk["lines"]:
            if line.startswith("+"):
                additions += 1
            elif line.startswith("-"):
                deletions += 1
    return additions, deletions


def content_hash(before: str, after: str) -> str:
    """md5 of ``before|after``; identifies one concrete file change."""
    return hashlib.md5(f"{before}|{after}".encode("utf-8")).hexdigest()


def diff_key(session_id: str | None, file_path: str, before: str, after: str) -> str:
    """Deduplication key shared by tool completions and session diffs."""
    return f"{session_id or 'unknown'}:{file_path}:{content_hash(before, after)}"


async def read_head_version(cwd: str, rel_path: str) -> str:
    """Content of *rel_path* at HEAD, or "" for untracked/new files."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", "show", f"HEAD:{rel_path}",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=5)
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("git show HEAD:%s failed: %s", rel_path, exc)
        return ""
    if proc.returncode != 0:
        return ""
    return stdout.decode("utf-8", errors="replace")


async def worktree_patch(
    cwd: str, file_path: str,
) -> dict[str, object] | None:
    """Diff a worktree file against HEAD.

    Returns ``{"filePath", "structuredPatch", "additions", "deletions"}``
    or None when nothing changed or the file cannot be read.
    """
    path = Path(file_path)
    if not path.is_absolute():
        path = Path(cwd) / path
    try:
        rel_path = str(path.resolve().relative_to(Path(cwd).resolve()))
    except ValueError:
        rel_path = str(path)

    before = await read_head_version(cwd, rel_path)
    try:
        after = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        after = ""
    except OSError as exc:
        logger.debug("worktree_patch: cannot read %s: %s", path, exc)
        return None

    if before == after:
        return None
    hunks = structured_patch(rel_path, before, after)
    additions, deletions = count_changes(hunks)
    return {
        "filePath": rel_path,
        "structuredPatch": hunks,
        "additions": additions,
        "deletions": deletions,
    }
