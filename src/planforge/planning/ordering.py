"""Fixed-priority step ordering and per-file modification merging."""

from __future__ import annotations

from typing import Iterable

from .schema import CreateDirectoryStep, CreateFileStep, ModifyFileStep, PlanStep, RunCommandStep

MODIFICATION_SEPARATOR = "\n\n---\n\n"


def order_steps(steps: Iterable[PlanStep]) -> list[PlanStep]:
    """Return directories, files, merged modifications, then commands.

    Relative order inside each bucket is preserved. ``ModifyFile`` steps that
    share a path collapse into one step at the position of the first, with
    their prompts joined in encounter order.
    """
    directories: list[PlanStep] = []
    files: list[PlanStep] = []
    commands: list[PlanStep] = []
    modifications: dict[str, list[ModifyFileStep]] = {}

    for step in steps:
        if isinstance(step, CreateDirectoryStep):
            directories.append(step)
        elif isinstance(step, CreateFileStep):
            files.append(step)
        elif isinstance(step, ModifyFileStep):
            modifications.setdefault(step.path, []).append(step)
        elif isinstance(step, RunCommandStep):
            commands.append(step)
        else:  # pragma: no cover - guarded by the discriminated union
            raise TypeError(f"Unsupported plan step: {step!r}")

    merged: list[PlanStep] = []
    for path, group in modifications.items():
        if len(group) == 1:
            merged.append(group[0])
            continue
        merged.append(
            ModifyFileStep(
                path=path,
                modification_prompt=MODIFICATION_SEPARATOR.join(item.modification_prompt for item in group),
                description=f"Modify: {path}",
            )
        )

    return [*directories, *files, *merged, *commands]


__all__ = ["MODIFICATION_SEPARATOR", "order_steps"]
