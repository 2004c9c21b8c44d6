"""Project exclusion rules applied to plan paths."""

from __future__ import annotations

import fnmatch
import logging
from pathlib import Path
from typing import Iterable, Sequence

from ..tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (".git", ".git/*")


class IgnoreRules:
    """Combine git ignore rules with configured glob patterns."""

    def __init__(
        self,
        patterns: Sequence[str] = DEFAULT_IGNORE_PATTERNS,
        *,
        repository: GitRepository | None = None,
    ) -> None:
        self._patterns = tuple(pattern.strip() for pattern in patterns if pattern and pattern.strip())
        self._repository = repository

    @classmethod
    def for_project(cls, project_root: Path, patterns: Iterable[str] = ()) -> "IgnoreRules":
        """Build rules for ``project_root``, using git when it is a repository."""
        repository: GitRepository | None
        try:
            repository = GitRepository(project_root)
        except GitError:
            repository = None
        return cls((*DEFAULT_IGNORE_PATTERNS, *patterns), repository=repository)

    def _matches_pattern(self, path: str) -> bool:
        bare = path.rstrip("/")
        for pattern in self._patterns:
            if fnmatch.fnmatch(bare, pattern) or fnmatch.fnmatch(path, pattern):
                return True
            if any(fnmatch.fnmatch(part, pattern) for part in bare.split("/")):
                return True
        return False

    def ignored(self, paths: Iterable[str]) -> set[str]:
        """Return the members of ``paths`` excluded by these rules.

        Each candidate may be given with a trailing ``/`` to test directory rules.
        """
        candidates = list(dict.fromkeys(paths))
        matched = {path for path in candidates if self._matches_pattern(path)}
        if self._repository is not None:
            remaining = [path for path in candidates if path not in matched]
            try:
                matched |= self._repository.ignored_paths(remaining)
            except GitError as error:
                LOGGER.warning("Unable to evaluate git ignore rules: %s", error)
        return matched

    def is_ignored(self, path: str, *, directory: bool = False) -> bool:
        candidates = [path, f"{path.rstrip('/')}/"] if directory else [path]
        return bool(self.ignored(candidates))


__all__ = ["DEFAULT_IGNORE_PATTERNS", "IgnoreRules"]
