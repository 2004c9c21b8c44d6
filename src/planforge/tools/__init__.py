"""Workspace tools used by the execution engine."""

from .commands import CommandFailedError, ParsedCommand, ProcessResult, SubprocessRunner, parse_command_line
from .diffing import FileDiff, diff_contents
from .patch import (
    AmbiguousMatchError,
    PatchBlock,
    PatchError,
    SearchBlockNotFoundError,
    apply_blocks,
    parse_blocks,
)
from .symbols import PythonSymbolLookup
from .vcs import GitError, GitRepository

__all__ = [
    "AmbiguousMatchError",
    "CommandFailedError",
    "FileDiff",
    "GitError",
    "GitRepository",
    "ParsedCommand",
    "PatchBlock",
    "PatchError",
    "ProcessResult",
    "PythonSymbolLookup",
    "SearchBlockNotFoundError",
    "SubprocessRunner",
    "apply_blocks",
    "diff_contents",
    "parse_blocks",
    "parse_command_line",
]
