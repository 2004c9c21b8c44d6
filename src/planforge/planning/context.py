"""Relevant-file context rendered into content-generation prompts."""

from __future__ import annotations

import hashlib
import logging
from typing import Sequence

from ..collaborators import FileSystem

LOGGER = logging.getLogger(__name__)


class RelevantFilesContext:
    """Render ``--- Relevant File ---`` blocks with a per-run cache.

    Cache keys are the content fingerprint of the file set, so a file edited
    behind the engine's back yields a new key. :meth:`invalidate` drops every
    entry that includes a path the engine has just rewritten.
    """

    def __init__(self, filesystem: FileSystem, *, max_file_bytes: int = 1_000_000) -> None:
        self._fs = filesystem
        self._max_file_bytes = max_file_bytes
        self._cache: dict[str, tuple[frozenset[str], str]] = {}

    def _fingerprint(self, path: str) -> str:
        try:
            if self._fs.is_dir(path):
                return f"{path}:dir"
            size = self._fs.size(path)
            if size > self._max_file_bytes:
                return f"{path}:{size}"
            digest = hashlib.sha256(self._fs.read_text(path).encode("utf-8", errors="replace")).hexdigest()
        except FileNotFoundError:
            return f"{path}:missing"
        return f"{path}:{size}:{digest}"

    def invalidate(self, path: str) -> None:
        stale = [key for key, (paths, _) in self._cache.items() if path in paths]
        for key in stale:
            del self._cache[key]

    def render(self, paths: Sequence[str]) -> str:
        if not paths:
            return ""
        ordered = sorted(set(paths))
        key = "|".join(self._fingerprint(path) for path in ordered)
        cached = self._cache.get(key)
        if cached is not None:
            return cached[1]

        blocks: list[str] = []
        for path in ordered:
            rendered = self._render_file(path)
            if rendered:
                blocks.append(rendered)
        text = "\n\n".join(blocks)
        self._cache[key] = (frozenset(ordered), text)
        return text

    def _render_file(self, path: str) -> str:
        try:
            if self._fs.is_dir(path):
                return ""
            if self._fs.size(path) > self._max_file_bytes:
                LOGGER.debug("Skipping %s in prompt context: file too large", path)
                return ""
            content = self._fs.read_text(path)
        except FileNotFoundError:
            return ""
        if "\0" in content:
            LOGGER.debug("Skipping %s in prompt context: binary content", path)
            return ""
        return f"--- Relevant File: {path} ---\n```\n{content}\n```"


__all__ = ["RelevantFilesContext"]
