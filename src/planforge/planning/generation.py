"""Ask the model for a plan and validate it, feeding rejections back."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..cancellation import CancellationToken
from ..collaborators import ContentGenerator
from ..config import ExecutionSettings
from ..prompts import PLAN_JSON_INSTRUCTION, render_plan_request
from ..telemetry import emit_event
from .ignore import IgnoreRules
from .schema import ExecutionPlan
from .validator import PlanValidationError, validate_plan

LOGGER = logging.getLogger(__name__)


def generate_validated_plan(
    generator: ContentGenerator,
    *,
    goal: str,
    project_root: Path,
    settings: Optional[ExecutionSettings] = None,
    project_context: str = "",
    recent_changes: str = "",
    diagnostics: str = "",
    ignore_rules: Optional[IgnoreRules] = None,
    cancellation: Optional[CancellationToken] = None,
) -> ExecutionPlan:
    """Return the first plan that validates, retrying with the rejection reason."""
    settings = settings or ExecutionSettings()
    cancellation = cancellation or CancellationToken()
    if ignore_rules is None:
        ignore_rules = IgnoreRules.for_project(project_root, settings.ignore_patterns)

    previous_error = ""
    attempts = settings.max_plan_parse_retries + 1
    for attempt in range(1, attempts + 1):
        cancellation.raise_if_cancelled()
        raw = generator.generate(
            render_plan_request(
                goal,
                project_context=project_context,
                recent_changes=recent_changes,
                diagnostics=diagnostics,
                previous_error=previous_error,
            ),
            model=settings.models.for_plan(),
            system_instruction=PLAN_JSON_INSTRUCTION,
            cancellation=cancellation,
        )
        result = validate_plan(raw, project_root, ignore_rules=ignore_rules)
        if result.ok:
            emit_event("plan_generated", attempt=attempt, steps=len(result.unwrap().steps))
            return result.unwrap()
        previous_error = result.error or "Plan validation failed."
        LOGGER.warning("Plan attempt %d/%d rejected: %s", attempt, attempts, previous_error)

    raise PlanValidationError(
        f"Failed to produce a valid plan after {attempts} attempt(s): {previous_error}",
        details={"attempts": attempts},
    )


__all__ = ["generate_validated_plan"]
