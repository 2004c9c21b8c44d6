"""Change history: per-run log, persisted change sets, and revert."""

from .changelog import (
    ChangeSet,
    ChangeType,
    FileChangeEntry,
    ProjectChangeLog,
    format_recent_changes_for_prompt,
)
from .revert import RevertError, RevertReport, RevertService
from .store import ChangeLogStore

__all__ = [
    "ChangeLogStore",
    "ChangeSet",
    "ChangeType",
    "FileChangeEntry",
    "ProjectChangeLog",
    "RevertError",
    "RevertReport",
    "RevertService",
    "format_recent_changes_for_prompt",
]
