"""Minimal git helpers used to honour a project's ignore rules."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Iterable, Sequence


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Read-only view of the git repository rooted at ``root``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    def _run(self, args: Sequence[str], *, stdin: str | None = None) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                ["git", *args],
                cwd=self.root,
                input=stdin,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except FileNotFoundError as error:
            raise GitError("git executable not available") from error

    def ignored_paths(self, paths: Iterable[str]) -> set[str]:
        """Return the subset of ``paths`` excluded by the repository's ignore rules.

        ``git check-ignore`` exits 1 when nothing matches, which is not an error.
        """

        candidates = [path for path in paths if path]
        if not candidates:
            return set()
        result = self._run(["check-ignore", "-z", "--stdin", "--no-index"], stdin="\0".join(candidates) + "\0")
        if result.returncode not in (0, 1):
            message = (result.stderr or "").strip() or "unable to evaluate ignore rules"
            raise GitError(f"git check-ignore failed: {message}")
        return {entry for entry in (result.stdout or "").split("\0") if entry}


__all__ = ["GitError", "GitRepository"]
