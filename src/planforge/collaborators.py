"""Contracts for the services the execution engine drives, plus local defaults."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Protocol, Sequence

from .cancellation import CancellationToken
from .tools.commands import ProcessResult

if TYPE_CHECKING:
    from .planning.correction import SelfCorrectionRequest

LOGGER = logging.getLogger(__name__)


class StepFailureChoice(str, Enum):
    """Options offered to the user when a step cannot complete."""

    RETRY = "Retry Step"
    SKIP = "Skip Step"
    CANCEL = "Cancel Plan"


class ContentGenerator(Protocol):
    """Content-generation collaborator contract."""

    def generate(
        self,
        prompt_parts: Sequence[str],
        *,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> str: ...


class FileSystem(Protocol):
    """Workspace-relative file access; missing files raise ``FileNotFoundError``."""

    def exists(self, path: str) -> bool: ...

    def is_dir(self, path: str) -> bool: ...

    def size(self, path: str) -> int: ...

    def read_text(self, path: str) -> str: ...

    def write_text(self, path: str, content: str) -> None: ...

    def create_directory(self, path: str) -> None: ...

    def delete(self, path: str) -> None: ...


class ProcessRunner(Protocol):
    """Process-execution collaborator contract."""

    def spawn(
        self,
        executable: str,
        args: Sequence[str],
        cwd: Path,
        cancellation: CancellationToken,
    ) -> ProcessResult: ...


class UserInteraction(Protocol):
    """Blocking prompts raised by the engine; implementations may block."""

    def choose_failure_action(self, step_label: str, error_message: str) -> StepFailureChoice | None: ...

    def approve_command(self, command_display: str) -> bool | None: ...

    def report_progress(self, message: str) -> None: ...


class SymbolLookup(Protocol):
    """Resolve the enclosing symbol of a line, for ambiguity reports."""

    def enclosing_symbol(self, path: str, content: str, line: int) -> str | None: ...


class SelfCorrectionScheduler(Protocol):
    """Receives the follow-up request when a run ends with diagnostic errors."""

    def schedule(self, request: "SelfCorrectionRequest") -> None: ...


class WorkspacePathError(ValueError):
    """Raised when a path escapes the workspace root."""


class WorkspaceFileSystem:
    """Local filesystem collaborator rooted at a project directory."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    def resolve(self, path: str) -> Path:
        candidate = (self.root / path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise WorkspacePathError(f"Path escapes the workspace: {path}")
        return candidate

    def exists(self, path: str) -> bool:
        return self.resolve(path).exists()

    def is_dir(self, path: str) -> bool:
        return self.resolve(path).is_dir()

    def size(self, path: str) -> int:
        return self.resolve(path).stat().st_size

    def read_text(self, path: str) -> str:
        target = self.resolve(path)
        if target.is_dir():
            raise IsADirectoryError(f"Expected a file but found a directory: {path}")
        with target.open("r", encoding="utf-8", errors="replace", newline="") as handle:
            return handle.read()

    def write_text(self, path: str, content: str) -> None:
        """Write atomically, creating parent directories as needed."""
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            os.replace(temp_name, target)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def create_directory(self, path: str) -> None:
        self.resolve(path).mkdir(parents=True, exist_ok=True)

    def delete(self, path: str) -> None:
        target = self.resolve(path)
        if target.is_dir():
            raise IsADirectoryError(f"Refusing to delete directory: {path}")
        target.unlink()


@dataclass(slots=True)
class HeadlessInteraction:
    """Non-interactive policy for hosts without a user present."""

    approve_commands: bool = False
    failure_choice: StepFailureChoice = StepFailureChoice.CANCEL

    def choose_failure_action(self, step_label: str, error_message: str) -> StepFailureChoice | None:
        LOGGER.warning("%s failed: %s (choosing %s)", step_label, error_message, self.failure_choice.value)
        return self.failure_choice

    def approve_command(self, command_display: str) -> bool | None:
        return self.approve_commands

    def report_progress(self, message: str) -> None:
        LOGGER.info(message)


__all__ = [
    "ContentGenerator",
    "FileSystem",
    "HeadlessInteraction",
    "ProcessRunner",
    "SelfCorrectionScheduler",
    "StepFailureChoice",
    "SymbolLookup",
    "UserInteraction",
    "WorkspaceFileSystem",
    "WorkspacePathError",
]
