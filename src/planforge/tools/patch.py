"""Search/replace patch parsing and application.

Model output carries edit blocks delimited by three marker lines::

    <<<<<<< SEARCH
    existing lines
    =======
    replacement lines
    >>>>>>> REPLACE

Blocks are applied in order against the content produced by the previous
block. Each block is located with a layered strategy: an exact substring
match first, then a whitespace-normalised sliding window over lines, and
finally a segmented match when the search text contains an ellipsis
placeholder line such as ``...`` or ``// ... existing code ...``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Mapping, Sequence

from ..telemetry import emit_event

LOGGER = logging.getLogger(__name__)

SEARCH_MARKER = "<<<<<<< SEARCH"
SEPARATOR_MARKER = "======="
REPLACE_MARKER = ">>>>>>> REPLACE"

AmbiguousMatchPolicy = Literal["error", "first"]

_COMMENT_PREFIXES = ("<!--", "/*", "//", "#", "--", "*")
_COMMENT_SUFFIXES = ("-->", "*/")
_ELLIPSES = ("...", "…")
_DEFORMED_MARKER_RE = re.compile(r"^\s*(?:<{3,}|>{3,})\s*(?:search|replace)?\s*$", re.IGNORECASE)
_OPENING_FENCE_RE = re.compile(r"\A(?:[ \t]*\n)*[ \t]*```[^\n]*\n")
_CLOSING_FENCE_RE = re.compile(r"\n[ \t]*```[ \t]*\s*\Z")
_SNIPPET_PLACEHOLDER_RE = re.compile(
    r"(?:\.\.\.|…)\s*(?:rest|existing|remaining|other|unchanged|previous|same)\b",
    re.IGNORECASE,
)


class PatchError(RuntimeError):
    """Raised when a patch block cannot be applied."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class AmbiguousMatchError(PatchError):
    """Raised when a search block matches more than one location."""

    def __init__(
        self,
        message: str,
        *,
        ambiguous_block: str,
        line_numbers: Sequence[int],
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.ambiguous_block = ambiguous_block
        self.line_numbers: tuple[int, ...] = tuple(line_numbers)


class SearchBlockNotFoundError(PatchError):
    """Raised when a search block matches nothing in the current content."""

    def __init__(
        self,
        message: str,
        *,
        missing_block: str,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.missing_block = missing_block


@dataclass(frozen=True, slots=True)
class PatchBlock:
    """Single search/replace pair extracted from model output."""

    search: str
    replace: str


@dataclass(frozen=True, slots=True)
class _Match:
    """Line-level span located for one block, ``end`` exclusive."""

    start: int
    end: int
    gaps: tuple[tuple[int, int], ...] = ()


# --------------------------------------------------------------------- parsing
def _normalise_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def has_patch_markers(text: str) -> bool:
    """Return ``True`` when all three markers appear on their own lines."""
    seen = {line.strip() for line in _normalise_newlines(text).split("\n")}
    return {SEARCH_MARKER, SEPARATOR_MARKER, REPLACE_MARKER} <= seen


def parse_blocks(text: str) -> list[PatchBlock]:
    """Extract ordered search/replace blocks from free-form ``text``."""
    blocks: list[PatchBlock] = []
    state = "idle"
    search_lines: list[str] = []
    replace_lines: list[str] = []

    for line in _normalise_newlines(text).split("\n"):
        marker = line.strip()
        if marker == SEARCH_MARKER:
            if state != "idle":
                LOGGER.debug("Discarding unterminated search/replace block")
            state = "search"
            search_lines = []
            replace_lines = []
            continue
        if state == "search" and marker == SEPARATOR_MARKER:
            state = "replace"
            continue
        if state == "replace" and marker == REPLACE_MARKER:
            search = "\n".join(search_lines)
            if search.strip():
                blocks.append(PatchBlock(search=search, replace="\n".join(replace_lines)))
            else:
                LOGGER.debug("Dropping search/replace block with an empty search section")
            state = "idle"
            continue
        if state == "search":
            search_lines.append(line)
        elif state == "replace":
            replace_lines.append(line)

    return blocks


# ------------------------------------------------------------------ heuristics
def clean_code_output(text: str) -> str:
    """Strip a leading/trailing Markdown code fence from generated content.

    Only the fence lines are removed; whitespace inside the body is kept as
    generated. A closing fence is only stripped after an opening one.
    """
    body, opened = _OPENING_FENCE_RE.subn("", text, count=1)
    if not opened:
        return text
    return _CLOSING_FENCE_RE.sub("", body, count=1)


def contains_deformed_markers(text: str) -> bool:
    """Return ``True`` when output carries broken or unbalanced edit markers."""
    lines = [line.strip() for line in _normalise_newlines(text).split("\n")]
    counts = {marker: 0 for marker in (SEARCH_MARKER, SEPARATOR_MARKER, REPLACE_MARKER)}
    for line in lines:
        if line in counts:
            counts[line] += 1
            continue
        if _DEFORMED_MARKER_RE.match(line):
            return True
    if counts[SEARCH_MARKER] == 0 and counts[REPLACE_MARKER] == 0:
        return False
    if counts[SEARCH_MARKER] != counts[REPLACE_MARKER]:
        return True
    return counts[SEPARATOR_MARKER] < counts[SEARCH_MARKER]


def is_likely_partial_snippet(text: str, original: str) -> bool:
    """Return ``True`` when a full-file rewrite looks like a truncated fragment."""
    candidate = text.strip()
    if not candidate:
        return True
    original_lines = [line for line in _normalise_newlines(original).split("\n") if line.strip()]
    candidate_lines = [line for line in _normalise_newlines(candidate).split("\n") if line.strip()]
    known = {_normalise_line(line) for line in original_lines}
    for line in candidate_lines:
        if _normalise_line(line) in known:
            continue
        if _is_placeholder_line(line) or _SNIPPET_PLACEHOLDER_RE.search(line):
            return True

    if len(original_lines) >= 20 and len(candidate_lines) < len(original_lines) * 0.3:
        return True
    return False


# -------------------------------------------------------------------- matching
def _normalise_line(line: str) -> str:
    return " ".join(line.split())


def _is_placeholder_line(line: str) -> bool:
    stripped = line.strip()
    for prefix in _COMMENT_PREFIXES:
        if stripped.startswith(prefix):
            stripped = stripped[len(prefix) :].strip()
            break
    for suffix in _COMMENT_SUFFIXES:
        if stripped.endswith(suffix):
            stripped = stripped[: -len(suffix)].strip()
            break
    if stripped in _ELLIPSES:
        return True
    return any(stripped.startswith(mark) for mark in _ELLIPSES) and any(
        stripped.endswith(mark) for mark in _ELLIPSES
    )


def _trim_blank_edges(lines: list[str]) -> list[str]:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def _window_matches(file_lines: Sequence[str], needle: Sequence[str], *, start: int = 0) -> list[int]:
    size = len(needle)
    if size == 0 or size > len(file_lines):
        return []
    target = [_normalise_line(line) for line in needle]
    normalised = [_normalise_line(line) for line in file_lines]
    return [
        index
        for index in range(start, len(file_lines) - size + 1)
        if normalised[index : index + size] == target
    ]


def _split_segments(search_lines: Sequence[str]) -> list[list[str]]:
    segments: list[list[str]] = [[]]
    for line in search_lines:
        if _is_placeholder_line(line):
            segments.append([])
        else:
            segments[-1].append(line)
    return [trimmed for trimmed in (_trim_blank_edges(segment) for segment in segments) if trimmed]


def _segmented_matches(file_lines: Sequence[str], segments: Sequence[Sequence[str]]) -> list[_Match]:
    matches: list[_Match] = []
    for first in _window_matches(file_lines, segments[0]):
        cursor = first + len(segments[0])
        gaps: list[tuple[int, int]] = []
        complete = True
        for segment in segments[1:]:
            found = _window_matches(file_lines, segment, start=cursor)
            if not found:
                complete = False
                break
            gaps.append((cursor, found[0]))
            cursor = found[0] + len(segment)
        if complete:
            matches.append(_Match(start=first, end=cursor, gaps=tuple(gaps)))
    return matches


def _line_number(content: str, offset: int) -> int:
    return content.count("\n", 0, offset) + 1


def _exact_offsets(content: str, search: str) -> list[int]:
    offsets: list[int] = []
    index = content.find(search)
    while index != -1:
        offsets.append(index)
        index = content.find(search, index + len(search))
    return offsets


def _render_replacement(replace: str, file_lines: Sequence[str], match: _Match) -> list[str]:
    lines = replace.split("\n") if replace else []
    if not match.gaps:
        return lines
    placeholders = [index for index, line in enumerate(lines) if _is_placeholder_line(line)]
    if len(placeholders) != len(match.gaps):
        return lines
    rendered: list[str] = []
    gap_iter = iter(match.gaps)
    for line in lines:
        if _is_placeholder_line(line):
            gap_start, gap_end = next(gap_iter)
            rendered.extend(file_lines[gap_start:gap_end])
        else:
            rendered.append(line)
    return rendered


def _ambiguous(block: PatchBlock, line_numbers: Sequence[int], *, strategy: str) -> AmbiguousMatchError:
    joined = ", ".join(str(number) for number in line_numbers)
    return AmbiguousMatchError(
        f"Search block matches {len(line_numbers)} locations (lines {joined}).",
        ambiguous_block=block.search,
        line_numbers=line_numbers,
        details={"strategy": strategy},
    )


def _apply_block(content: str, block: PatchBlock, policy: AmbiguousMatchPolicy) -> tuple[str, str]:
    search = _normalise_newlines(block.search)
    replace = _normalise_newlines(block.replace)

    offsets = _exact_offsets(content, search)
    if len(offsets) > 1 and policy == "error":
        raise _ambiguous(block, [_line_number(content, offset) for offset in offsets], strategy="exact")
    if offsets:
        if len(offsets) > 1:
            LOGGER.warning(
                "Search block matches %d locations; applying to the first (line %d)",
                len(offsets),
                _line_number(content, offsets[0]),
            )
        offset = offsets[0]
        return content[:offset] + replace + content[offset + len(search) :], "exact"

    file_lines = content.split("\n")
    search_lines = _trim_blank_edges(search.split("\n"))
    matches = [_Match(start=index, end=index + len(search_lines)) for index in _window_matches(file_lines, search_lines)]
    strategy = "fuzzy"
    if not matches and any(_is_placeholder_line(line) for line in search_lines):
        segments = _split_segments(search_lines)
        if len(segments) >= 2:
            matches = _segmented_matches(file_lines, segments)
            strategy = "wildcard"

    if not matches:
        raise SearchBlockNotFoundError(
            "Search block was not found in the current file content.",
            missing_block=block.search,
        )
    if len(matches) > 1 and policy == "error":
        raise _ambiguous(block, [match.start + 1 for match in matches], strategy=strategy)
    if len(matches) > 1:
        LOGGER.warning(
            "Search block matches %d locations; applying to the first (line %d)",
            len(matches),
            matches[0].start + 1,
        )

    match = matches[0]
    replacement = _render_replacement(replace, file_lines, match)
    updated = [*file_lines[: match.start], *replacement, *file_lines[match.end :]]
    return "\n".join(updated), strategy


def apply_blocks(
    content: str,
    blocks: Iterable[PatchBlock],
    *,
    ambiguous_match_policy: AmbiguousMatchPolicy = "error",
    path: str | None = None,
) -> str:
    """Apply ``blocks`` in order to ``content`` and return the new content.

    Raises :class:`AmbiguousMatchError` or :class:`SearchBlockNotFoundError`
    for the first block that cannot be placed; earlier blocks are not kept.

    Re-applying the same blocks to the result is not idempotent in general:
    it fails with :class:`SearchBlockNotFoundError` once the search text is
    gone, but matches again (and repeats the edit) when the replacement still
    contains the search text.
    """
    newline = "\r\n" if "\r\n" in content else "\n"
    working = _normalise_newlines(content)
    strategies: list[str] = []
    for index, block in enumerate(blocks, start=1):
        try:
            working, strategy = _apply_block(working, block, ambiguous_match_policy)
        except PatchError as error:
            error.details.setdefault("block_index", index)
            if path:
                error.details.setdefault("path", path)
            emit_event(
                "patch_block_failed",
                path=path,
                block_index=index,
                error_type=type(error).__name__,
                message=str(error),
            )
            raise
        strategies.append(strategy)

    emit_event("patch_applied", path=path, blocks=len(strategies), strategies=strategies)
    if newline != "\n":
        working = working.replace("\n", newline)
    return working


__all__ = [
    "AmbiguousMatchError",
    "AmbiguousMatchPolicy",
    "PatchBlock",
    "PatchError",
    "REPLACE_MARKER",
    "SEARCH_MARKER",
    "SEPARATOR_MARKER",
    "SearchBlockNotFoundError",
    "apply_blocks",
    "clean_code_output",
    "contains_deformed_markers",
    "has_patch_markers",
    "is_likely_partial_snippet",
    "parse_blocks",
]
