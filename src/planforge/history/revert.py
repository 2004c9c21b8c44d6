"""Undo the file changes recorded in an archived change set."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..collaborators import FileSystem
from .changelog import ChangeSet, ChangeType

LOGGER = logging.getLogger(__name__)


class RevertError(RuntimeError):
    """Raised when a recorded change cannot be undone."""


@dataclass(slots=True)
class RevertReport:
    """Paths touched while reverting a change set."""

    reverted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class RevertService:
    """Apply recorded changes in reverse chronological order."""

    def __init__(self, filesystem: FileSystem) -> None:
        self._fs = filesystem

    def revert(self, change_set: ChangeSet) -> RevertReport:
        report = RevertReport()
        for change in reversed(change_set.changes):
            path = change.file_path
            if change.change_type is ChangeType.CREATED:
                if self._fs.is_dir(path):
                    LOGGER.info("Leaving created directory %s in place", path)
                    report.skipped.append(path)
                    continue
                try:
                    self._fs.delete(path)
                except FileNotFoundError:
                    LOGGER.info("Created file %s is already gone", path)
                    report.skipped.append(path)
                    continue
            else:
                if change.original_content is None:
                    raise RevertError(f"No original content recorded for {path}; cannot revert.")
                self._fs.write_text(path, change.original_content)
            report.reverted.append(path)
        return report


__all__ = ["RevertError", "RevertReport", "RevertService"]
