"""Self-correction cycle scheduled after a run that leaves diagnostic errors."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Deque, List, Optional, Sequence

from ..cancellation import CancellationToken
from ..collaborators import ContentGenerator
from ..telemetry import emit_event
from .ignore import IgnoreRules

if TYPE_CHECKING:
    from .executor import PlanExecutionSummary, PlanExecutor

LOGGER = logging.getLogger(__name__)

CORRECTION_GOAL_TEMPLATE = (
    "The previous plan \"{description}\" finished, but these files still report errors: {files}. "
    "Produce a plan that fixes only those errors. Do not recreate files that are already correct "
    "and only modify files listed as having errors."
)


@dataclass(slots=True)
class SelfCorrectionRequest:
    """Follow-up work requested by a run that ended with error diagnostics."""

    plan_description: str
    project_root: Path
    error_files: List[str]
    affected_files: List[str]
    diagnostics: str
    cycle: int = 1

    def goal(self) -> str:
        return CORRECTION_GOAL_TEMPLATE.format(
            description=self.plan_description,
            files=", ".join(self.error_files),
        )


class SelfCorrectionCycle:
    """Queue correction requests and replay them through the executor.

    ``schedule`` only records the request so the run that produced it can
    finish first; :meth:`run_pending` drains the queue, generating a fresh
    plan per request and executing it in correction mode.
    """

    def __init__(
        self,
        generator: ContentGenerator,
        *,
        max_cycles: int = 1,
        ignore_rules: Optional[IgnoreRules] = None,
        recent_changes: str = "",
    ) -> None:
        self._generator = generator
        self._max_cycles = max_cycles
        self._ignore_rules = ignore_rules
        self._recent_changes = recent_changes
        self._pending: Deque[SelfCorrectionRequest] = deque()

    @property
    def pending(self) -> Sequence[SelfCorrectionRequest]:
        return tuple(self._pending)

    def schedule(self, request: SelfCorrectionRequest) -> None:
        if request.cycle > self._max_cycles:
            LOGGER.warning(
                "Self-correction limit reached (%d); leaving errors in %s for the user",
                self._max_cycles,
                ", ".join(request.error_files),
            )
            emit_event("self_correction_skipped", cycle=request.cycle, error_files=request.error_files)
            return
        LOGGER.info("Scheduling self-correction cycle %d for %s", request.cycle, ", ".join(request.error_files))
        emit_event("self_correction_scheduled", cycle=request.cycle, error_files=request.error_files)
        self._pending.append(request)

    def run_pending(
        self,
        executor: "PlanExecutor",
        cancellation: Optional[CancellationToken] = None,
    ) -> List["PlanExecutionSummary"]:
        """Generate and execute a correction plan for every queued request."""
        from .executor import PlanExecutionContext
        from .generation import generate_validated_plan

        cancellation = cancellation or CancellationToken()
        summaries: List["PlanExecutionSummary"] = []
        while self._pending:
            cancellation.raise_if_cancelled()
            request = self._pending.popleft()
            plan = generate_validated_plan(
                self._generator,
                goal=request.goal(),
                project_root=request.project_root,
                settings=executor.settings,
                recent_changes=self._recent_changes,
                diagnostics=request.diagnostics,
                ignore_rules=self._ignore_rules,
                cancellation=cancellation,
            )
            context = PlanExecutionContext(
                project_root=request.project_root,
                relevant_files=tuple(request.affected_files),
                is_correction_mode=True,
                correction_cycle=request.cycle,
            )
            summaries.append(executor.execute_plan(plan, context, cancellation))
        return summaries


__all__ = ["CORRECTION_GOAL_TEMPLATE", "SelfCorrectionCycle", "SelfCorrectionRequest"]
