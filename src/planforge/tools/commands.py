"""Shell-free command parsing and cancellable process execution."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

CANCELLED_EXIT_CODE = 130
MISSING_EXECUTABLE_EXIT_CODE = 127
_DISPLAY_ARG_LIMIT = 100


class CommandFailedError(RuntimeError):
    """Raised when a plan command cannot be parsed or exits non-zero."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class ParsedCommand:
    """Executable plus arguments split from a command line."""

    executable: str
    args: list[str]

    def display(self) -> str:
        """Return a readable form with overly long arguments truncated."""
        shown = [
            f"{arg[: _DISPLAY_ARG_LIMIT - 3]}..." if len(arg) > _DISPLAY_ARG_LIMIT else arg
            for arg in self.args
        ]
        return " ".join([self.executable, *shown])


@dataclass(slots=True)
class ProcessResult:
    """Captured output of a finished process."""

    stdout: str
    stderr: str
    exit_code: int
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


def parse_command_line(command: str) -> ParsedCommand:
    """Split ``command`` into executable and arguments, honouring quotes."""
    try:
        parts = shlex.split(command, posix=True)
    except ValueError as error:
        raise CommandFailedError(f"Unable to parse command '{command}': {error}") from error
    if not parts:
        raise CommandFailedError("Command is empty.")
    return ParsedCommand(executable=parts[0], args=parts[1:])


def _terminate(process: subprocess.Popen[str]) -> None:
    if process.poll() is not None:
        return
    LOGGER.info("Terminating process %s after cancellation", process.pid)
    process.terminate()
    try:
        process.wait(timeout=2.0)
    except subprocess.TimeoutExpired:
        process.kill()


class SubprocessRunner:
    """Process-execution collaborator backed by :mod:`subprocess` (no shell)."""

    def spawn(
        self,
        executable: str,
        args: Sequence[str],
        cwd: Path,
        cancellation: CancellationToken,
    ) -> ProcessResult:
        cancellation.raise_if_cancelled()
        command = [executable, *args]
        try:
            process = subprocess.Popen(  # noqa: S603 - approved plan command, no shell
                command,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError:
            return ProcessResult(
                stdout="",
                stderr=f"Executable not available: {executable}",
                exit_code=MISSING_EXECUTABLE_EXIT_CODE,
            )

        unregister = cancellation.on_cancel(lambda: _terminate(process))
        try:
            stdout, stderr = process.communicate()
        finally:
            unregister()

        if cancellation.is_cancelled:
            return ProcessResult(stdout=stdout, stderr=stderr, exit_code=CANCELLED_EXIT_CODE, cancelled=True)
        return ProcessResult(stdout=stdout, stderr=stderr, exit_code=process.returncode)


__all__ = [
    "CANCELLED_EXIT_CODE",
    "CommandFailedError",
    "ParsedCommand",
    "ProcessResult",
    "SubprocessRunner",
    "parse_command_line",
]
