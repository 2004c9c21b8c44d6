"""Per-run change log and archived change sets used for revert and prompting."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from .store import ChangeLogStore

LOGGER = logging.getLogger(__name__)

MAX_CHANGE_SETS_IN_PROMPT = 3
MAX_CHANGES_PER_SET_IN_PROMPT = 3


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class HistoryRecord(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class ChangeType(str, Enum):
    """Kind of filesystem change recorded for a path."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class FileChangeEntry(HistoryRecord):
    """Single recorded change with before/after snapshots."""

    file_path: str
    change_type: ChangeType
    summary: str = ""
    diff_content: str = ""
    original_content: Optional[str] = None
    new_content: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class ChangeSet(HistoryRecord):
    """Changes made by one completed plan run."""

    id: str
    summary: str
    changes: List[FileChangeEntry] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)


class ProjectChangeLog:
    """Append-only change log for the current run plus archived change sets.

    When a :class:`ChangeLogStore` is supplied, archived sets are loaded from
    and written through to it.
    """

    def __init__(self, store: "ChangeLogStore | None" = None) -> None:
        self._store = store
        self._changes: list[FileChangeEntry] = []
        self._completed: list[ChangeSet] = list(store.list_change_sets()) if store is not None else []

    def log_change(self, entry: FileChangeEntry) -> FileChangeEntry:
        if entry.change_type is ChangeType.CREATED and entry.file_path.endswith("/"):
            entry = entry.model_copy(update={"file_path": entry.file_path.rstrip("/")})
        self._changes.append(entry)
        LOGGER.debug("Logged %s change for %s", entry.change_type.value, entry.file_path)
        return entry

    def get_change_log(self) -> list[FileChangeEntry]:
        """Return a copy of the current run's entries."""
        return list(self._changes)

    def clear(self) -> None:
        self._changes.clear()

    def save_as_completed_plan(self, summary: str) -> ChangeSet | None:
        """Archive the current entries as a change set and start a fresh log."""
        if not self._changes:
            LOGGER.debug("No changes to archive for %r", summary)
            return None
        change_set = ChangeSet(id=str(uuid.uuid4()), summary=summary, changes=list(self._changes))
        self._completed.append(change_set)
        if self._store is not None:
            self._store.save_change_set(change_set)
        self._changes.clear()
        return change_set

    def last_completed_plan(self) -> ChangeSet | None:
        return self._completed[-1] if self._completed else None

    def completed_plans(self) -> list[ChangeSet]:
        return list(self._completed)

    def pop_last_completed_plan(self) -> ChangeSet | None:
        if not self._completed:
            return None
        change_set = self._completed.pop()
        if self._store is not None:
            self._store.delete_change_set(change_set.id)
        return change_set

    def clear_completed_plans(self) -> None:
        self._completed.clear()
        if self._store is not None:
            self._store.clear()


def format_recent_changes_for_prompt(change_sets: Sequence[ChangeSet]) -> str:
    """Summarise the most recent change sets for inclusion in a prompt."""
    if not change_sets:
        return ""
    lines = ["--- Recent Project Changes ---"]
    recent = list(change_sets)[-MAX_CHANGE_SETS_IN_PROMPT:]
    for change_set in reversed(recent):
        stamp = change_set.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        lines.append(f"Plan: {change_set.summary} ({stamp})")
        for change in change_set.changes[:MAX_CHANGES_PER_SET_IN_PROMPT]:
            detail = f": {change.summary}" if change.summary else ""
            lines.append(f"  - [{change.change_type.value}] {change.file_path}{detail}")
        remaining = len(change_set.changes) - MAX_CHANGES_PER_SET_IN_PROMPT
        if remaining > 0:
            lines.append(f"  ...and {remaining} more changes.")
    lines.append("--- End Recent Project Changes ---")
    return "\n".join(lines)


__all__ = [
    "ChangeSet",
    "ChangeType",
    "FileChangeEntry",
    "ProjectChangeLog",
    "format_recent_changes_for_prompt",
    "utc_now",
]
