"""Transient-versus-terminal classification of step failures."""

from __future__ import annotations

from ..cancellation import is_cancellation

TRANSIENT_STEP_MARKERS: tuple[str, ...] = (
    "quota exceeded",
    "rate limit exceeded",
    "network issue",
    "ai service unavailable",
    "timeout",
    "parsing failed",
    "overloaded",
)

TRANSIENT_GENERATION_MARKERS: tuple[str, ...] = (
    "quota",
    "rate limit",
    "network issue",
    "service unavailable",
    "timeout",
    "parsing failed",
    "overloaded",
)


def _message(error: BaseException | str) -> str:
    return (error if isinstance(error, str) else str(error)).lower()


def is_transient_error(error: BaseException | str) -> bool:
    """Return ``True`` when a step failure is expected to clear on its own."""
    if isinstance(error, BaseException) and is_cancellation(error):
        return False
    text = _message(error)
    return any(marker in text for marker in TRANSIENT_STEP_MARKERS)


def is_transient_generation_error(error: BaseException | str) -> bool:
    """Looser check used while retrying a single content-generation call."""
    if isinstance(error, BaseException) and is_cancellation(error):
        return False
    text = _message(error)
    return any(marker in text for marker in TRANSIENT_GENERATION_MARKERS)


__all__ = [
    "TRANSIENT_GENERATION_MARKERS",
    "TRANSIENT_STEP_MARKERS",
    "is_transient_error",
    "is_transient_generation_error",
]
