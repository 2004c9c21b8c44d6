"""Typed plan records consumed by the execution engine."""

from __future__ import annotations

import re
from enum import Enum
from pathlib import PurePosixPath
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


class PlanRecord(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class StepAction(str, Enum):
    """Kinds of operation a plan step may perform."""

    CREATE_DIRECTORY = "create_directory"
    CREATE_FILE = "create_file"
    MODIFY_FILE = "modify_file"
    RUN_COMMAND = "run_command"


def normalise_workspace_path(raw: str) -> str:
    """Return ``raw`` as a clean workspace-relative POSIX path.

    Raises ``ValueError`` for empty, absolute, or traversing paths.
    """
    candidate = (raw or "").strip().replace("\\", "/")
    if not candidate:
        raise ValueError("path is missing or empty")
    if candidate.startswith("/") or _DRIVE_PREFIX.match(candidate):
        raise ValueError(f"path '{raw}' must be relative to the workspace root")
    parts = PurePosixPath(candidate).parts
    if ".." in parts:
        raise ValueError(f"path '{raw}' must not contain '..' segments")
    cleaned = PurePosixPath(*parts).as_posix() if parts else ""
    if cleaned in {"", "."}:
        raise ValueError(f"path '{raw}' does not name a file or directory")
    return cleaned


class _PathStep(PlanRecord):
    path: str
    description: str = ""

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        return normalise_workspace_path(value)


class CreateDirectoryStep(_PathStep):
    """Create a directory (and parents) inside the workspace."""

    action: Literal["create_directory"] = "create_directory"


class CreateFileStep(_PathStep):
    """Create a file from literal content or from a generation prompt."""

    action: Literal["create_file"] = "create_file"
    content: Optional[str] = None
    generate_prompt: Optional[str] = None
    use_context_agent: Optional[bool] = None

    @model_validator(mode="after")
    def _exactly_one_source(self) -> "CreateFileStep":
        has_content = self.content is not None
        has_prompt = bool(self.generate_prompt and self.generate_prompt.strip())
        if has_content == has_prompt:
            raise ValueError("create_file requires exactly one of 'content' or 'generate_prompt'")
        return self


class ModifyFileStep(_PathStep):
    """Edit an existing file according to a natural-language prompt."""

    action: Literal["modify_file"] = "modify_file"
    modification_prompt: str

    @field_validator("modification_prompt")
    @classmethod
    def _check_prompt(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("modify_file requires a non-empty 'modification_prompt'")
        return value


class RunCommandStep(PlanRecord):
    """Run a shell-free command from the workspace root."""

    action: Literal["run_command"] = "run_command"
    command: str
    description: str = ""

    @field_validator("command")
    @classmethod
    def _check_command(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("run_command requires a non-empty 'command'")
        return value.strip()


PlanStep = Annotated[
    Union[CreateDirectoryStep, CreateFileStep, ModifyFileStep, RunCommandStep],
    Field(discriminator="action"),
]


class ExecutionPlan(PlanRecord):
    """Validated, ordered plan ready for execution."""

    description: str
    steps: List[PlanStep] = Field(min_length=1)


def describe_step(step: PlanStep) -> str:
    """Return the step's description or a readable default."""
    if step.description.strip():
        return step.description.strip()
    if isinstance(step, CreateDirectoryStep):
        return f"Create directory: {step.path}"
    if isinstance(step, CreateFileStep):
        return f"Create file: {step.path}"
    if isinstance(step, ModifyFileStep):
        return f"Modify: {step.path}"
    return f"Run command: {step.command}"


__all__ = [
    "CreateDirectoryStep",
    "CreateFileStep",
    "ExecutionPlan",
    "ModifyFileStep",
    "PlanRecord",
    "PlanStep",
    "RunCommandStep",
    "StepAction",
    "describe_step",
    "normalise_workspace_path",
]
