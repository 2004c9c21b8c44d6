"""CLI commands for validating and executing planforge plans."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .cancellation import CancellationToken
from .collaborators import HeadlessInteraction, StepFailureChoice, UserInteraction, WorkspaceFileSystem
from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    ExecutionSettings,
    default_config,
    load_config,
    resolve_execution_settings,
    write_config,
)
from .diagnostics import StaticCheckDiagnosticProvider, parse_static_checks
from .history import ChangeLogStore, ProjectChangeLog, RevertError, RevertService, format_recent_changes_for_prompt
from .models import LLMClient, LLMClientError, ResponsesClient
from .planning.correction import SelfCorrectionCycle
from .planning.executor import PlanExecutionContext, PlanExecutionSummary, PlanExecutor, PlanOutcome
from .planning.generation import generate_validated_plan
from .planning.ignore import IgnoreRules
from .planning.schema import ExecutionPlan, describe_step
from .planning.validator import PlanValidationError, validate_plan
from .tools.commands import SubprocessRunner
from .tools.patch import AmbiguousMatchError, PatchError, SearchBlockNotFoundError, apply_blocks, parse_blocks
from .tools.symbols import PythonSymbolLookup

APP_HELP = "planforge CLI: validate and execute AI-generated change plans."

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine progress to stderr."),
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _load_config_or_default(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        return default_config()
    try:
        return load_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _resolve_root(config: Dict[str, Any], config_path: Path, root: Optional[Path]) -> Path:
    if root is not None:
        return root.resolve()
    project = config.get("project") or {}
    raw = project.get("repo_root") if isinstance(project, dict) else None
    repo_root = Path(str(raw or "."))
    if not repo_root.is_absolute():
        repo_root = config_path.resolve().parent / repo_root
    return repo_root.resolve()


class ConsoleInteraction:
    """Terminal prompts for step failures and command approval."""

    _CHOICES = {
        "r": StepFailureChoice.RETRY,
        "s": StepFailureChoice.SKIP,
        "c": StepFailureChoice.CANCEL,
    }

    def choose_failure_action(self, step_label: str, error_message: str) -> StepFailureChoice | None:
        typer.echo(f"{step_label} failed: {error_message}")
        answer = typer.prompt("[r]etry step, [s]kip step, or [c]ancel plan", default="c")
        return self._CHOICES.get(answer.strip().lower()[:1])

    def approve_command(self, command_display: str) -> bool | None:
        return typer.confirm(f"Run command `{command_display}`?", default=False)

    def report_progress(self, message: str) -> None:
        typer.echo(message)


class _OfflineClient(LLMClient):
    """Generator used with --offline: any request for generated content fails."""

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1)

    def _raw_invoke(self, payload: Dict[str, Any], *, on_chunk=None) -> str:
        raise LLMClientError("Offline mode: content generation is unavailable; supply literal content instead.")


def _build_client(settings: ExecutionSettings, *, offline: bool) -> LLMClient:
    if offline:
        typer.echo("Using offline client; only literal file content can be written.")
        return _OfflineClient()
    try:
        return ResponsesClient(model=settings.models.default)
    except ValueError as error:
        typer.echo(
            "No API key given. Set PLANFORGE_API_KEY or OPENAI_API_KEY, "
            "or re-run with --offline to execute a plan with literal content."
        )
        raise typer.Exit(code=1) from error


def _render_plan(plan: ExecutionPlan) -> None:
    typer.echo(f"Plan: {plan.description}")
    for index, step in enumerate(plan.steps, start=1):
        typer.echo(f"  {index}. [{step.action}] {describe_step(step)}")


def _render_summary(summary: PlanExecutionSummary) -> None:
    typer.echo(f"Outcome: {summary.outcome.value}")
    for record in summary.steps:
        suffix = f" ({record.error})" if record.error else ""
        typer.echo(f"- {record.label} -> {record.status}{suffix}")
    if summary.affected_files:
        typer.echo(f"Files changed: {', '.join(summary.affected_files)}")
    if summary.error_files:
        typer.echo(f"Files with errors: {', '.join(summary.error_files)}")
    if summary.error:
        typer.echo(f"Error: {summary.error}")


@app.command()
def init(
    config: Path = typer.Option(Path(DEFAULT_CONFIG_NAME), "--config", "-c", help="Configuration file to create."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration."),
) -> None:
    """Write a default configuration file."""
    if config.exists() and not force:
        typer.echo(f"Configuration already exists at {config}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config, default_config())
    typer.echo(f"Created configuration at {config}.")


@app.command()
def validate(
    plan_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON plan to validate."),
    root: Optional[Path] = typer.Option(None, "--root", help="Project root the plan applies to."),
    config: Path = typer.Option(Path(DEFAULT_CONFIG_NAME), "--config", "-c", help="Path to the configuration file."),
) -> None:
    """Validate a plan and print its execution order."""
    config_data = _load_config_or_default(config)
    project_root = _resolve_root(config_data, config, root)
    settings = resolve_execution_settings(config_data, base_dir=project_root)
    result = validate_plan(
        plan_file.read_text(encoding="utf-8"),
        project_root,
        ignore_rules=IgnoreRules.for_project(project_root, settings.ignore_patterns),
    )
    if not result.ok:
        typer.echo(f"Invalid plan: {result.error}")
        raise typer.Exit(code=1)
    for path in result.skipped_paths:
        typer.echo(f"Skipped ignored path: {path}")
    _render_plan(result.unwrap())


@app.command("apply-blocks")
def apply_blocks_command(
    target: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to edit in place."),
    blocks_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File holding Search/Replace blocks."),
    policy: str = typer.Option("error", "--ambiguous", help="Ambiguous match policy: error or first."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the result instead of writing it."),
) -> None:
    """Apply Search/Replace blocks to a file."""
    if policy not in {"error", "first"}:
        raise typer.BadParameter("Use 'error' or 'first'.", param_hint="--ambiguous")
    blocks = parse_blocks(blocks_file.read_text(encoding="utf-8"))
    if not blocks:
        typer.echo("No Search/Replace blocks found.")
        raise typer.Exit(code=1)
    original = target.read_text(encoding="utf-8")
    try:
        updated = apply_blocks(original, blocks, ambiguous_match_policy=policy, path=target.as_posix())  # type: ignore[arg-type]
    except AmbiguousMatchError as error:
        typer.echo(f"Ambiguous match at lines {', '.join(str(line) for line in error.line_numbers)}.")
        raise typer.Exit(code=1) from error
    except SearchBlockNotFoundError as error:
        typer.echo(f"Search block not found:\n{error.missing_block}")
        raise typer.Exit(code=1) from error
    except PatchError as error:
        typer.echo(f"Patch failed: {error}")
        raise typer.Exit(code=1) from error
    if dry_run:
        typer.echo(updated)
        return
    target.write_text(updated, encoding="utf-8")
    typer.echo(f"Applied {len(blocks)} block(s) to {target}.")


@app.command()
def run(
    goal: Optional[str] = typer.Argument(None, help="Goal to plan for when no --plan file is given."),
    plan_file: Optional[Path] = typer.Option(None, "--plan", "-p", exists=True, dir_okay=False, help="JSON plan to execute."),
    root: Optional[Path] = typer.Option(None, "--root", help="Project root the plan applies to."),
    config: Path = typer.Option(Path(DEFAULT_CONFIG_NAME), "--config", "-c", help="Path to the configuration file."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Approve commands and cancel on failures without prompting."),
    offline: bool = typer.Option(False, "--offline", help="Do not call the model; literal content only."),
) -> None:
    """Execute a plan file, or generate one for GOAL and execute it."""
    if plan_file is None and not goal:
        raise typer.BadParameter("Provide a GOAL or --plan.", param_hint="GOAL")
    config_data = _load_config_or_default(config)
    project_root = _resolve_root(config_data, config, root)
    settings = resolve_execution_settings(config_data, base_dir=project_root)
    ignore_rules = IgnoreRules.for_project(project_root, settings.ignore_patterns)
    client = _build_client(settings, offline=offline)
    cancellation = CancellationToken()

    with ChangeLogStore.from_config(config_data, base=project_root) as store:
        change_log = ProjectChangeLog(store)
        recent = format_recent_changes_for_prompt(change_log.completed_plans())

        if plan_file is not None:
            result = validate_plan(plan_file.read_text(encoding="utf-8"), project_root, ignore_rules=ignore_rules)
            if not result.ok:
                typer.echo(f"Invalid plan: {result.error}")
                raise typer.Exit(code=1)
            plan = result.unwrap()
        else:
            try:
                plan = generate_validated_plan(
                    client,
                    goal=str(goal),
                    project_root=project_root,
                    settings=settings,
                    recent_changes=recent,
                    ignore_rules=ignore_rules,
                    cancellation=cancellation,
                )
            except (PlanValidationError, LLMClientError) as error:
                typer.echo(f"Could not produce a plan: {error}")
                raise typer.Exit(code=1) from error
        _render_plan(plan)

        diagnostics = StaticCheckDiagnosticProvider(
            root=project_root,
            checks=parse_static_checks((config_data.get("diagnostics") or {}).get("static_checks")),
            cancellation=cancellation,
            check_timeout_seconds=settings.diagnostics.check_timeout_seconds,
        )
        interaction: UserInteraction = HeadlessInteraction(approve_commands=True) if yes else ConsoleInteraction()
        correction = SelfCorrectionCycle(
            client,
            max_cycles=0 if offline else settings.max_self_correction_cycles,
            ignore_rules=ignore_rules,
            recent_changes=recent,
        )
        executor = PlanExecutor(
            generator=client,
            filesystem=WorkspaceFileSystem(project_root),
            diagnostics=diagnostics,
            change_log=change_log,
            interaction=interaction,
            process_runner=SubprocessRunner(),
            settings=settings,
            symbol_lookup=PythonSymbolLookup(),
            self_correction=correction,
        )
        summary = executor.execute_plan(plan, PlanExecutionContext(project_root=project_root), cancellation)
        _render_summary(summary)
        for follow_up in correction.run_pending(executor, cancellation):
            typer.echo("Self-correction pass:")
            _render_summary(follow_up)
            summary = follow_up

    if summary.outcome in {PlanOutcome.FAILED, PlanOutcome.CANCELLED}:
        raise typer.Exit(code=1)


@app.command()
def history(
    root: Optional[Path] = typer.Option(None, "--root", help="Project root."),
    config: Path = typer.Option(Path(DEFAULT_CONFIG_NAME), "--config", "-c", help="Path to the configuration file."),
    as_json: bool = typer.Option(False, "--json", help="Emit change sets as JSON."),
) -> None:
    """List archived change sets, newest first."""
    config_data = _load_config_or_default(config)
    project_root = _resolve_root(config_data, config, root)
    with ChangeLogStore.from_config(config_data, base=project_root) as store:
        change_sets = store.list_change_sets()
    if as_json:
        typer.echo(json.dumps([item.model_dump(mode="json") for item in reversed(change_sets)], indent=2))
        return
    if not change_sets:
        typer.echo("No recorded changes.")
        return
    for change_set in reversed(change_sets):
        typer.echo(f"{change_set.id} {change_set.timestamp:%Y-%m-%d %H:%M:%S} {change_set.summary}")
        for change in change_set.changes:
            typer.echo(f"  - [{change.change_type.value}] {change.file_path}")


@app.command()
def revert(
    root: Optional[Path] = typer.Option(None, "--root", help="Project root."),
    config: Path = typer.Option(Path(DEFAULT_CONFIG_NAME), "--config", "-c", help="Path to the configuration file."),
) -> None:
    """Undo the most recent archived change set."""
    config_data = _load_config_or_default(config)
    project_root = _resolve_root(config_data, config, root)
    with ChangeLogStore.from_config(config_data, base=project_root) as store:
        change_log = ProjectChangeLog(store)
        change_set = change_log.last_completed_plan()
        if change_set is None:
            typer.echo("Nothing to revert.")
            return
        try:
            report = RevertService(WorkspaceFileSystem(project_root)).revert(change_set)
        except RevertError as error:
            typer.echo(f"Revert failed: {error}")
            raise typer.Exit(code=1) from error
        change_log.pop_last_completed_plan()
    typer.echo(f"Reverted '{change_set.summary}'.")
    for path in report.reverted:
        typer.echo(f"  restored {path}")
    for path in report.skipped:
        typer.echo(f"  skipped {path}")


if __name__ == "__main__":
    app()
