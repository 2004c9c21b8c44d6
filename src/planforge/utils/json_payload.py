"""Helpers for salvaging JSON objects embedded in model output."""

from __future__ import annotations

import re

_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_+-]*[ \t]*\n?|\n?```\s*$")
_STRING_LITERAL_RE = re.compile(r'"((?:\\.|[^"\\])*)"', re.DOTALL)
_CONTROL_ESCAPES = {
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


class JsonPayloadError(ValueError):
    """Raised when no JSON object can be located in a payload."""


def strip_code_fence(payload: str) -> str:
    """Remove Markdown-style code fences that wrap a payload."""
    if "```" not in payload:
        return payload
    return _FENCE_RE.sub("", payload.strip()).strip()


def normalise_json_string(payload: str) -> str:
    """Normalise common non-JSON characters emitted by models."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def strip_trailing_commas(payload: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    if not payload:
        return payload
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def extract_json_object(payload: str) -> str:
    """Return the outermost ``{...}`` span of ``payload``."""
    text = strip_code_fence(payload.strip())
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise JsonPayloadError("Could not find a valid JSON object within the response.")
    return text[start : end + 1]


def escape_control_characters(payload: str) -> str:
    """Escape raw control characters that appear inside JSON string literals."""

    def _escape(match: re.Match[str]) -> str:
        body = match.group(1)
        escaped: list[str] = []
        for char in body:
            if char in _CONTROL_ESCAPES:
                escaped.append(_CONTROL_ESCAPES[char])
            elif ord(char) < 0x20:
                escaped.append(f"\\u{ord(char):04x}")
            else:
                escaped.append(char)
        return f'"{"".join(escaped)}"'

    return _STRING_LITERAL_RE.sub(_escape, payload)


__all__ = [
    "JsonPayloadError",
    "escape_control_characters",
    "extract_json_object",
    "normalise_json_string",
    "strip_code_fence",
    "strip_trailing_commas",
]
