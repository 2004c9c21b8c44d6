"""Plan execution: ordered step loop, retry/escalation, and post-run diagnostics."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

from ..cancellation import (
    ERROR_OPERATION_CANCELLED,
    CancellationToken,
    OperationCancelledError,
    is_cancellation,
    run_cancellable,
)
from ..collaborators import (
    ContentGenerator,
    FileSystem,
    ProcessRunner,
    SelfCorrectionScheduler,
    StepFailureChoice,
    SymbolLookup,
    UserInteraction,
)
from ..config import ExecutionSettings
from ..diagnostics import DiagnosticProvider, collect_error_files, format_diagnostics_for_prompt
from ..history.changelog import ChangeSet, ChangeType, FileChangeEntry, ProjectChangeLog
from ..prompts import (
    FILE_CONTENT_INSTRUCTION,
    INTEGRITY_INSTRUCTION,
    MODIFICATION_INSTRUCTION,
    ambiguity_error_note,
    integrity_error_note,
    not_found_error_note,
    parsing_error_note,
    render_create_file_prompt,
    render_integrity_prompt,
    render_modify_file_prompt,
)
from ..telemetry import emit_event, write_run_log
from ..tools.commands import CommandFailedError, SubprocessRunner, parse_command_line
from ..tools.diffing import diff_contents
from ..tools.patch import (
    AmbiguousMatchError,
    SearchBlockNotFoundError,
    apply_blocks,
    clean_code_output,
    contains_deformed_markers,
    has_patch_markers,
    is_likely_partial_snippet,
    parse_blocks,
)
from .context import RelevantFilesContext
from .correction import SelfCorrectionRequest
from .ordering import order_steps
from .retry import is_transient_error, is_transient_generation_error
from .schema import (
    CreateDirectoryStep,
    CreateFileStep,
    ExecutionPlan,
    ModifyFileStep,
    PlanStep,
    RunCommandStep,
    describe_step,
)

LOGGER = logging.getLogger(__name__)

_REFUSAL_PHRASES = (
    "i'm sorry",
    "i am sorry",
    "i cannot",
    "i can't",
    "as an ai",
    "i'm unable",
    "i am unable",
)
_MIN_REWRITE_CHARS = 10


class PlanOutcome(str, Enum):
    """Final classification of a plan run."""

    SUCCESS = "success"
    SUCCESS_WITH_ERRORS = "success_with_errors"
    CANCELLED = "cancelled"
    FAILED = "failed"


class StepExecutionError(RuntimeError):
    """Raised when a step fails for a reason other than cancellation."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class PlanExecutionContext:
    """Caller-supplied inputs for one run."""

    project_root: Path
    relevant_files: Sequence[str] = ()
    project_context: str = ""
    is_correction_mode: bool = False
    correction_cycle: int = 0


@dataclass(slots=True)
class StepRetryState:
    """Per-step counters driving automatic retries."""

    transient_attempt: int = 0


@dataclass(slots=True)
class StepRecord:
    """What happened to one step."""

    index: int
    label: str
    status: str
    attempts: int = 1
    error: Optional[str] = None


@dataclass(slots=True)
class PlanExecutionSummary:
    """Result of :meth:`PlanExecutor.execute_plan`."""

    plan: ExecutionPlan
    outcome: PlanOutcome
    steps: list[StepRecord] = field(default_factory=list)
    affected_files: list[str] = field(default_factory=list)
    error_files: list[str] = field(default_factory=list)
    error: Optional[str] = None
    change_set: Optional[ChangeSet] = None
    self_correction_scheduled: bool = False

    @property
    def completed_steps(self) -> list[StepRecord]:
        return [record for record in self.steps if record.status == "completed"]

    @property
    def skipped_steps(self) -> list[StepRecord]:
        return [record for record in self.steps if record.status == "skipped"]


@dataclass(slots=True)
class _RunState:
    plan: ExecutionPlan
    context: PlanExecutionContext
    files: RelevantFilesContext
    affected: dict[str, None] = field(default_factory=dict)

    def mark_affected(self, path: str) -> None:
        self.affected[path] = None
        self.files.invalidate(path)


class PlanExecutor:
    """Execute validated plans against a workspace through injected collaborators."""

    def __init__(
        self,
        *,
        generator: ContentGenerator,
        filesystem: FileSystem,
        diagnostics: DiagnosticProvider,
        change_log: ProjectChangeLog,
        interaction: UserInteraction,
        process_runner: ProcessRunner | None = None,
        settings: ExecutionSettings | None = None,
        symbol_lookup: SymbolLookup | None = None,
        self_correction: SelfCorrectionScheduler | None = None,
    ) -> None:
        self._generator = generator
        self._fs = filesystem
        self._diagnostics = diagnostics
        self._change_log = change_log
        self._interaction = interaction
        self._runner = process_runner or SubprocessRunner()
        self._settings = settings or ExecutionSettings()
        self._symbols = symbol_lookup
        self._self_correction = self_correction

    @property
    def settings(self) -> ExecutionSettings:
        return self._settings

    # ------------------------------------------------------------------ run
    def execute_plan(
        self,
        plan: ExecutionPlan,
        context: PlanExecutionContext,
        cancellation: CancellationToken | None = None,
    ) -> PlanExecutionSummary:
        """Run every step of ``plan`` and classify the outcome."""
        cancellation = cancellation or CancellationToken()
        steps = order_steps(plan.steps)
        run = _RunState(
            plan=plan,
            context=context,
            files=RelevantFilesContext(self._fs, max_file_bytes=self._settings.max_context_file_bytes),
        )
        summary = PlanExecutionSummary(plan=plan, outcome=PlanOutcome.FAILED)
        emit_event(
            "plan_started",
            description=plan.description,
            steps=len(steps),
            correction_mode=context.is_correction_mode,
        )

        try:
            for index, step in enumerate(steps, start=1):
                cancellation.raise_if_cancelled()
                summary.steps.append(self._run_step(step, index, len(steps), run, cancellation))
            summary.error_files = collect_error_files(
                self._diagnostics,
                list(run.affected),
                cancellation,
                self._settings.diagnostics,
            )
            summary.outcome = PlanOutcome.SUCCESS_WITH_ERRORS if summary.error_files else PlanOutcome.SUCCESS
        except Exception as error:  # noqa: BLE001 - every failure is reported through the summary
            if is_cancellation(error):
                LOGGER.info("Plan cancelled: %s", plan.description)
                summary.outcome = PlanOutcome.CANCELLED
                summary.error = ERROR_OPERATION_CANCELLED
            else:
                LOGGER.error("Plan failed: %s", error)
                summary.outcome = PlanOutcome.FAILED
                summary.error = str(error)

        summary.affected_files = list(run.affected)
        label = plan.description
        if summary.outcome is PlanOutcome.CANCELLED:
            label = f"{label} (Cancelled)"
        elif summary.outcome is PlanOutcome.FAILED:
            label = f"{label} (Failed)"
        summary.change_set = self._change_log.save_as_completed_plan(label)

        if summary.outcome is PlanOutcome.SUCCESS_WITH_ERRORS and self._self_correction is not None:
            self._self_correction.schedule(self._build_correction_request(summary, context))
            summary.self_correction_scheduled = True

        emit_event(
            "plan_finished",
            description=plan.description,
            outcome=summary.outcome,
            affected_files=summary.affected_files,
            error_files=summary.error_files,
            error=summary.error,
        )
        if self._settings.log_dir is not None:
            write_run_log(self._settings.log_dir, plan.description, {"summary": summary})
        return summary

    def _build_correction_request(
        self,
        summary: PlanExecutionSummary,
        context: PlanExecutionContext,
    ) -> SelfCorrectionRequest:
        diagnostics = {path: self._diagnostics.get_diagnostics(path) for path in summary.affected_files}
        clean = [path for path, items in diagnostics.items() if not items]
        return SelfCorrectionRequest(
            plan_description=summary.plan.description,
            project_root=context.project_root,
            error_files=list(summary.error_files),
            affected_files=list(summary.affected_files),
            diagnostics=format_diagnostics_for_prompt(diagnostics, clean_files=clean),
            cycle=context.correction_cycle + 1,
        )

    # ---------------------------------------------------------------- steps
    def _run_step(
        self,
        step: PlanStep,
        index: int,
        total: int,
        run: _RunState,
        cancellation: CancellationToken,
    ) -> StepRecord:
        label = f"Step {index}/{total}: {describe_step(step)}"
        limit = self._settings.max_transient_step_retries
        retry = StepRetryState()
        attempts = 0

        while True:
            cancellation.raise_if_cancelled()
            attempts += 1
            progress = label if retry.transient_attempt == 0 else f"{label} (Auto-retry {retry.transient_attempt}/{limit})"
            self._interaction.report_progress(progress)
            emit_event("step_started", index=index, total=total, action=step.action, attempt=attempts)
            try:
                status = self._execute_step(step, run, cancellation)
            except Exception as error:
                if is_cancellation(error):
                    raise
                if isinstance(step, RunCommandStep):
                    emit_event("step_failed", index=index, terminal=True, error=str(error))
                    raise
                message = str(error)
                emit_event("step_failed", index=index, terminal=False, error=message)
                if is_transient_error(error) and retry.transient_attempt < limit:
                    retry.transient_attempt += 1
                    delay = self._settings.step_retry_delay(retry.transient_attempt)
                    LOGGER.warning("%s hit a transient error (%s); retrying in %.1fs", label, message, delay)
                    cancellation.sleep(delay)
                    continue

                choice = self._ask_failure_choice(label, message, cancellation)
                if choice is StepFailureChoice.RETRY:
                    retry.transient_attempt = 0
                    continue
                if choice is StepFailureChoice.SKIP:
                    LOGGER.warning("%s skipped by user after error: %s", label, message)
                    return StepRecord(index=index, label=label, status="skipped", attempts=attempts, error=message)
                raise OperationCancelledError() from error

            emit_event("step_finished", index=index, status=status)
            return StepRecord(index=index, label=label, status=status, attempts=attempts)

    def _ask_failure_choice(
        self,
        label: str,
        message: str,
        cancellation: CancellationToken,
    ) -> StepFailureChoice:
        try:
            choice = run_cancellable(
                lambda: self._interaction.choose_failure_action(label, message),
                cancellation,
            )
        except OperationCancelledError:
            return StepFailureChoice.CANCEL
        return choice or StepFailureChoice.CANCEL

    def _execute_step(self, step: PlanStep, run: _RunState, cancellation: CancellationToken) -> str:
        if isinstance(step, CreateDirectoryStep):
            self._fs.create_directory(step.path)
            return "completed"
        if isinstance(step, CreateFileStep):
            return self._create_file(step, run, cancellation)
        if isinstance(step, ModifyFileStep):
            return self._modify_file(step, run, cancellation)
        return self._run_command(step, run, cancellation)

    # ----------------------------------------------------------------- files
    def _has_error_diagnostics(self, path: str) -> bool:
        return any(item.is_error for item in self._diagnostics.get_diagnostics(path))

    def _diagnostics_prompt(self, path: str, run: _RunState) -> str:
        if not run.context.is_correction_mode:
            return ""
        items = self._diagnostics.get_diagnostics(path)
        if not items:
            return ""
        return "\n".join([f"Diagnostics for {path}:", *(item.render() for item in items)])

    def _project_context(self, run: _RunState) -> str:
        parts = [run.context.project_context.strip(), run.files.render(list(run.context.relevant_files))]
        return "\n\n".join(part for part in parts if part)

    def _progress_callback(self, path: str) -> Callable[[str], None]:
        received = [0]

        def _on_chunk(chunk: str) -> None:
            received[0] += len(chunk)
            LOGGER.debug("Generating %s: %d characters received", path, received[0])

        return _on_chunk

    def _generate(
        self,
        parts: Sequence[str],
        *,
        path: str,
        model: str,
        system_instruction: str,
        cancellation: CancellationToken,
    ) -> str:
        """Generate content, retrying transient collaborator failures."""
        limit = self._settings.max_transient_step_retries
        attempt = 0
        while True:
            cancellation.raise_if_cancelled()
            try:
                return self._generator.generate(
                    parts,
                    model=model,
                    system_instruction=system_instruction,
                    on_chunk=self._progress_callback(path),
                    cancellation=cancellation,
                )
            except Exception as error:
                if is_cancellation(error) or not is_transient_generation_error(error) or attempt >= limit:
                    raise
                attempt += 1
                LOGGER.warning("Generation for %s failed (%s); retry %d/%d", path, error, attempt, limit)
                cancellation.sleep(self._settings.generation_retry_seconds * attempt)

    def _write_file(self, path: str, content: str, run: _RunState, *, original: str | None = None) -> str:
        if original is None:
            try:
                original = self._fs.read_text(path)
            except FileNotFoundError:
                original = None
        if original is not None and original == content:
            LOGGER.info("%s is already as desired; no changes written", path)
            return "completed"

        self._fs.write_text(path, content)
        change = diff_contents(original or "", content, path)
        self._change_log.log_change(
            FileChangeEntry(
                file_path=path,
                change_type=ChangeType.CREATED if original is None else ChangeType.MODIFIED,
                summary=change.summary,
                diff_content=change.diff,
                original_content=original,
                new_content=content,
            )
        )
        run.mark_affected(path)
        self._interaction.report_progress(change.summary)
        return "completed"

    def _create_file(
        self,
        step: CreateFileStep,
        run: _RunState,
        cancellation: CancellationToken,
    ) -> str:
        path = step.path
        if run.context.is_correction_mode and self._fs.exists(path) and not self._has_error_diagnostics(path):
            LOGGER.info("Skipping create of %s: file exists and has no errors", path)
            return "skipped"

        if step.content is not None:
            content = step.content
        else:
            parts = render_create_file_prompt(
                path=path,
                instructions=step.generate_prompt or "",
                plan_description=run.plan.description,
                project_context=self._project_context(run),
                diagnostics=self._diagnostics_prompt(path, run),
            )
            raw = self._generate(
                parts,
                path=path,
                model=self._settings.models.for_content(),
                system_instruction=FILE_CONTENT_INSTRUCTION,
                cancellation=cancellation,
            )
            content = clean_code_output(raw)
        cancellation.raise_if_cancelled()
        return self._write_file(path, content, run)

    def _modify_file(
        self,
        step: ModifyFileStep,
        run: _RunState,
        cancellation: CancellationToken,
    ) -> str:
        path = step.path
        try:
            original = self._fs.read_text(path)
        except FileNotFoundError:
            LOGGER.warning("%s does not exist; creating it from the modification prompt", path)
            fallback = CreateFileStep(
                path=path,
                generate_prompt=step.modification_prompt,
                description=step.description,
            )
            return self._create_file(fallback, run, cancellation)

        if run.context.is_correction_mode and not self._has_error_diagnostics(path):
            LOGGER.info("Skipping modification of %s: no errors reported", path)
            return "skipped"

        updated = self._generate_modification(step, original, run, cancellation)
        cancellation.raise_if_cancelled()
        return self._write_file(path, updated, run, original=original)

    def _generate_modification(
        self,
        step: ModifyFileStep,
        original: str,
        run: _RunState,
        cancellation: CancellationToken,
    ) -> str:
        path = step.path
        limit = self._settings.max_transient_step_retries
        attempt = 0
        clarification = ""

        def _retry(note: str) -> None:
            nonlocal attempt, clarification
            attempt += 1
            clarification = f"{clarification}\n\n{note}".strip()
            cancellation.sleep(self._settings.clarification_delay_seconds)

        while attempt <= limit:
            parts = render_modify_file_prompt(
                path=path,
                instructions=step.modification_prompt,
                original_content=original,
                plan_description=run.plan.description,
                project_context=self._project_context(run),
                diagnostics=self._diagnostics_prompt(path, run),
                clarification=clarification,
            )
            try:
                raw = self._generator.generate(
                    parts,
                    model=self._settings.models.for_content(),
                    system_instruction=MODIFICATION_INSTRUCTION,
                    on_chunk=self._progress_callback(path),
                    cancellation=cancellation,
                )
            except Exception as error:
                if is_cancellation(error) or not is_transient_generation_error(error) or attempt >= limit:
                    raise
                attempt += 1
                LOGGER.warning("Generation for %s failed (%s); retry %d/%d", path, error, attempt, limit)
                cancellation.sleep(self._settings.generation_retry_seconds * attempt)
                continue

            if has_patch_markers(raw):
                blocks = parse_blocks(raw)
                if not blocks:
                    if attempt < limit:
                        _retry(parsing_error_note())
                        continue
                    raise StepExecutionError(f"Unable to parse Search/Replace blocks for {path}.")
                try:
                    return apply_blocks(
                        original,
                        blocks,
                        ambiguous_match_policy=self._settings.ambiguous_match_policy,  # type: ignore[arg-type]
                        path=path,
                    )
                except AmbiguousMatchError as error:
                    if attempt < limit:
                        locations = self._describe_locations(path, original, error.line_numbers)
                        _retry(ambiguity_error_note(locations, error.ambiguous_block))
                        continue
                    lines = ", ".join(str(number) for number in error.line_numbers)
                    raise StepExecutionError(
                        f"Ambiguous match found at lines {lines} and max retries reached.",
                        details={"path": path, "lines": list(error.line_numbers)},
                    ) from error
                except SearchBlockNotFoundError as error:
                    if attempt < limit:
                        _retry(not_found_error_note(error.missing_block))
                        continue
                    raise StepExecutionError(
                        "SEARCH block not found and max retries reached.",
                        details={"path": path, "missing_block": error.missing_block},
                    ) from error

            candidate = clean_code_output(raw)
            if candidate == original:
                LOGGER.info("Output for %s matches the current file", path)
                return candidate
            reason = self._rewrite_rejection_reason(raw, candidate, original, cancellation, check_remote=attempt < limit)
            if reason is None:
                LOGGER.info("No Search/Replace blocks for %s; treating output as a full rewrite", path)
                return candidate
            if attempt < limit:
                LOGGER.warning("Rejected output for %s: %s", path, reason)
                _retry(integrity_error_note(reason))
                continue
            raise StepExecutionError(f"Output for {path} rejected: {reason}", details={"path": path})

        raise StepExecutionError(f"Modification of {path} failed after maximum autonomous retries.")

    def _describe_locations(self, path: str, content: str, line_numbers: Sequence[int]) -> list[str]:
        locations: list[str] = []
        for line in line_numbers:
            symbol = self._symbols.enclosing_symbol(path, content, line) if self._symbols is not None else None
            locations.append(f"Line {line} (inside `{symbol}`)" if symbol else f"Line {line}")
        return locations

    def _rewrite_rejection_reason(
        self,
        raw: str,
        candidate: str,
        original: str,
        cancellation: CancellationToken,
        *,
        check_remote: bool,
    ) -> str | None:
        """Return why a marker-free output cannot replace the file, or ``None``."""
        if contains_deformed_markers(raw):
            return "malformed Search/Replace markers"
        if is_likely_partial_snippet(candidate, original):
            return "a partial code snippet without markers"
        opening = candidate.strip()[:200].lower()
        if any(phrase in opening for phrase in _REFUSAL_PHRASES):
            return "an explanation or refusal instead of file content"
        if len(candidate.strip()) < _MIN_REWRITE_CHARS and len(original.strip()) >= _MIN_REWRITE_CHARS:
            return "output too short to be a complete file"
        if not check_remote or not self._settings.enable_integrity_check:
            return None
        return self._integrity_check(candidate, original, cancellation)

    def _integrity_check(self, candidate: str, original: str, cancellation: CancellationToken) -> str | None:
        try:
            verdict = self._generator.generate(
                render_integrity_prompt(candidate, original),
                model=self._settings.models.for_integrity(),
                system_instruction=INTEGRITY_INSTRUCTION,
                cancellation=cancellation,
            )
        except Exception as error:  # noqa: BLE001 - the secondary check is advisory
            if is_cancellation(error):
                raise
            LOGGER.warning("Integrity check failed: %s", error)
            return None
        first_line = next((line.strip() for line in verdict.splitlines() if line.strip()), "")
        if not first_line.upper().startswith("INVALID"):
            return None
        _, _, reason = first_line.partition(":")
        return reason.strip() or "output failed the integrity check"

    # -------------------------------------------------------------- commands
    def _run_command(self, step: RunCommandStep, run: _RunState, cancellation: CancellationToken) -> str:
        parsed = parse_command_line(step.command)
        display = parsed.display()
        if self._settings.require_command_approval:
            approved = run_cancellable(lambda: self._interaction.approve_command(display), cancellation)
            if not approved:
                LOGGER.info("Command skipped by user: %s", display)
                self._interaction.report_progress(f"Skipped command: {display}")
                return "skipped"

        result = self._runner.spawn(parsed.executable, parsed.args, run.context.project_root, cancellation)
        if result.cancelled:
            raise OperationCancelledError()
        emit_event("command_finished", command=display, exit_code=result.exit_code)
        if result.exit_code != 0:
            detail = (result.stderr.strip() or result.stdout.strip()).splitlines()[-5:]
            raise CommandFailedError(
                f"Command `{display}` failed with exit code {result.exit_code}: {' '.join(detail)}".strip(),
                details={"exit_code": result.exit_code, "stdout": result.stdout, "stderr": result.stderr},
            )
        if result.stdout.strip():
            LOGGER.info("Command `%s` output:\n%s", display, result.stdout.strip())
        return "completed"


__all__ = [
    "PlanExecutionContext",
    "PlanExecutionSummary",
    "PlanExecutor",
    "PlanOutcome",
    "StepExecutionError",
    "StepRecord",
    "StepRetryState",
]
