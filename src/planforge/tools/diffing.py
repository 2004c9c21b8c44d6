"""Unified diffs and short change summaries for the change log."""

from __future__ import annotations

import difflib
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class FileDiff:
    """Unified diff plus a one-line summary for a single file."""

    diff: str
    summary: str
    added: int
    removed: int


def diff_contents(original: str, updated: str, path: str) -> FileDiff:
    """Compute the unified diff between two snapshots of ``path``."""
    lines = list(
        difflib.unified_diff(
            original.splitlines(keepends=True),
            updated.splitlines(keepends=True),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
        )
    )
    added = sum(1 for line in lines if line.startswith("+") and not line.startswith("+++"))
    removed = sum(1 for line in lines if line.startswith("-") and not line.startswith("---"))
    diff = "".join(line if line.endswith("\n") else f"{line}\n" for line in lines)
    if not original:
        summary = f"Created {path} ({added} line(s))."
    else:
        summary = f"Modified {path}: +{added} / -{removed} line(s)."
    return FileDiff(diff=diff, summary=summary, added=added, removed=removed)


__all__ = ["FileDiff", "diff_contents"]
