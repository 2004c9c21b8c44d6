"""Parse and validate untrusted plan payloads into :class:`ExecutionPlan` objects."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from ..utils.json_payload import (
    JsonPayloadError,
    escape_control_characters,
    extract_json_object,
    normalise_json_string,
    strip_trailing_commas,
)
from .ignore import IgnoreRules
from .ordering import order_steps
from .schema import (
    CreateDirectoryStep,
    CreateFileStep,
    ExecutionPlan,
    ModifyFileStep,
    PlanStep,
    RunCommandStep,
    StepAction,
    normalise_workspace_path,
)

LOGGER = logging.getLogger(__name__)

_PATH_ACTIONS = {StepAction.CREATE_DIRECTORY, StepAction.CREATE_FILE, StepAction.MODIFY_FILE}
_KEY_ALIASES = {
    "generatePrompt": "generate_prompt",
    "modificationPrompt": "modification_prompt",
    "useContentAgent": "use_context_agent",
    "useContextAgent": "use_context_agent",
    "use_content_agent": "use_context_agent",
}


class PlanValidationError(RuntimeError):
    """Raised when a plan payload cannot be turned into an executable plan."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class PlanValidationResult:
    """Outcome of :func:`validate_plan`: exactly one of ``plan`` / ``error`` is set."""

    plan: Optional[ExecutionPlan] = None
    error: Optional[str] = None
    skipped_paths: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.plan is not None

    def unwrap(self) -> ExecutionPlan:
        if self.plan is None:
            raise PlanValidationError(self.error or "Plan validation failed.")
        return self.plan


def parse_plan_payload(raw: str | Mapping[str, Any]) -> dict[str, Any]:
    """Decode a raw model response (or pre-parsed mapping) into a plan mapping."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if not isinstance(raw, str):
        raise PlanValidationError("Plan payload must be a JSON string or an object.")

    try:
        candidate = extract_json_object(normalise_json_string(raw))
    except JsonPayloadError as error:
        raise PlanValidationError(str(error)) from error

    candidate = escape_control_characters(candidate)
    last_error: json.JSONDecodeError | None = None
    for attempt in (candidate, strip_trailing_commas(candidate)):
        try:
            data = json.loads(attempt)
        except json.JSONDecodeError as error:
            last_error = error
            continue
        if not isinstance(data, dict):
            raise PlanValidationError("Plan payload must be a JSON object.")
        return data
    raise PlanValidationError(f"Failed to parse plan JSON: {last_error}")


def _step_fields(raw_step: Mapping[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in raw_step.items():
        fields[_KEY_ALIASES.get(key, key)] = value
    return fields


def _fail(step_number: int, message: str) -> PlanValidationError:
    return PlanValidationError(
        f"Plan validation failed at step {step_number}: {message}",
        details={"step": step_number},
    )


def _is_ordinal(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value > 0
    return isinstance(value, float) and value.is_integer() and value > 0


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _build_step(step_number: int, raw_step: Any) -> PlanStep:
    if not isinstance(raw_step, Mapping):
        raise _fail(step_number, "step must be an object.")
    fields = _step_fields(raw_step)

    try:
        action = StepAction(fields.get("action"))
    except ValueError:
        action = None
    if not _is_ordinal(fields.get("step")) or action is None:
        raise PlanValidationError(
            f"Step {step_number} has an invalid structure: it needs a positive numeric 'step' "
            "and an 'action' of create_directory, create_file, modify_file, or run_command.",
            details={"step": step_number},
        )

    description = fields.get("description")
    description = description.strip() if isinstance(description, str) else ""

    path = ""
    if action in _PATH_ACTIONS:
        if not isinstance(fields.get("path"), str):
            raise _fail(step_number, f"'{action.value}' requires a 'path' string.")
        try:
            path = normalise_workspace_path(fields["path"])
        except ValueError as error:
            raise _fail(step_number, str(error)) from error

    try:
        if action is StepAction.CREATE_DIRECTORY:
            return CreateDirectoryStep(path=path, description=description)

        if action is StepAction.CREATE_FILE:
            content = fields.get("content")
            prompt = fields.get("generate_prompt")
            has_content = isinstance(content, str)
            has_prompt = _non_empty_string(prompt)
            if has_content == has_prompt:
                raise _fail(step_number, "create_file requires exactly one of 'content' or 'generate_prompt'.")
            flag = fields.get("use_context_agent")
            return CreateFileStep(
                path=path,
                description=description,
                content=content if has_content else None,
                generate_prompt=prompt if has_prompt else None,
                use_context_agent=flag if isinstance(flag, bool) else None,
            )

        if action is StepAction.MODIFY_FILE:
            prompt = fields.get("modification_prompt")
            if not _non_empty_string(prompt):
                raise _fail(step_number, "modify_file requires a non-empty 'modification_prompt'.")
            return ModifyFileStep(path=path, description=description, modification_prompt=prompt)

        command = fields.get("command")
        if not _non_empty_string(command):
            raise _fail(step_number, "run_command requires a non-empty 'command'.")
        return RunCommandStep(command=command, description=description)
    except ValidationError as error:
        raise _fail(step_number, error.errors()[0].get("msg", str(error))) from error


def validate_plan(
    raw: str | Mapping[str, Any],
    project_root: Path,
    *,
    ignore_rules: IgnoreRules | None = None,
) -> PlanValidationResult:
    """Validate ``raw`` into an ordered, consolidated :class:`ExecutionPlan`.

    Steps whose path is excluded by ``ignore_rules`` are dropped with a
    warning; any other rule violation rejects the whole plan.
    """
    try:
        plan, skipped = _validate(raw, project_root, ignore_rules)
    except PlanValidationError as error:
        LOGGER.info("Plan rejected: %s", error)
        return PlanValidationResult(error=str(error))
    return PlanValidationResult(plan=plan, skipped_paths=skipped)


def _validate(
    raw: str | Mapping[str, Any],
    project_root: Path,
    ignore_rules: IgnoreRules | None,
) -> tuple[ExecutionPlan, list[str]]:
    data = parse_plan_payload(raw)

    description = data.get("planDescription", data.get("description"))
    if not _non_empty_string(description):
        raise PlanValidationError("Plan is missing a non-empty 'planDescription' string.")
    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list):
        raise PlanValidationError("Plan is missing a 'steps' array.")
    if not raw_steps:
        raise PlanValidationError("Plan contains no steps.")

    steps = [_build_step(index, raw_step) for index, raw_step in enumerate(raw_steps, start=1)]

    rules = ignore_rules if ignore_rules is not None else IgnoreRules.for_project(project_root)
    candidates: list[str] = []
    for step in steps:
        if isinstance(step, RunCommandStep):
            continue
        candidates.append(step.path)
        if isinstance(step, CreateDirectoryStep):
            candidates.append(f"{step.path}/")
    ignored = rules.ignored(candidates)

    kept: list[PlanStep] = []
    skipped: list[str] = []
    for step in steps:
        if not isinstance(step, RunCommandStep) and (step.path in ignored or f"{step.path}/" in ignored):
            LOGGER.warning("Skipping plan step for ignored path %s", step.path)
            skipped.append(step.path)
            continue
        kept.append(step)

    if not kept:
        raise PlanValidationError("Plan contains no executable steps after removing ignored paths.")

    return ExecutionPlan(description=description.strip(), steps=order_steps(kept)), skipped


__all__ = [
    "PlanValidationError",
    "PlanValidationResult",
    "parse_plan_payload",
    "validate_plan",
]
