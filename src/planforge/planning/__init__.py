"""
Plan schema, validation, ordering, and execution.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "ExecutionPlan": "planforge.planning.schema",
    "PlanStep": "planforge.planning.schema",
    "PlanValidationError": "planforge.planning.validator",
    "PlanValidationResult": "planforge.planning.validator",
    "validate_plan": "planforge.planning.validator",
    "order_steps": "planforge.planning.ordering",
    "PlanExecutionContext": "planforge.planning.executor",
    "PlanExecutionSummary": "planforge.planning.executor",
    "PlanExecutor": "planforge.planning.executor",
    "PlanOutcome": "planforge.planning.executor",
    "SelfCorrectionCycle": "planforge.planning.correction",
    "SelfCorrectionRequest": "planforge.planning.correction",
    "generate_validated_plan": "planforge.planning.generation",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import planning helpers so schema users avoid executor imports."""
    if name in _EXPORTS:
        module = import_module(_EXPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
