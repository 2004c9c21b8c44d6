from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

from planforge.cancellation import ERROR_OPERATION_CANCELLED, CancellationToken
from planforge.collaborators import StepFailureChoice
from planforge.config import ExecutionSettings
from planforge.diagnostics import Diagnostic, DiagnosticSettings, DiagnosticSeverity
from planforge.history.changelog import ChangeType, ProjectChangeLog
from planforge.planning.executor import PlanExecutionContext, PlanExecutor, PlanOutcome
from planforge.planning.schema import (
    CreateDirectoryStep,
    CreateFileStep,
    ExecutionPlan,
    ModifyFileStep,
    RunCommandStep,
)
from planforge.prompts import INTEGRITY_INSTRUCTION, MODIFICATION_INSTRUCTION
from planforge.tools.commands import ProcessResult
from planforge.tools.symbols import PythonSymbolLookup


class MemoryFileSystem:
    def __init__(self, files: dict[str, str] | None = None) -> None:
        self.files = dict(files or {})
        self.directories: set[str] = set()
        self.operations: list[tuple[str, str]] = []

    def exists(self, path: str) -> bool:
        return path in self.files or path in self.directories

    def is_dir(self, path: str) -> bool:
        return path in self.directories

    def size(self, path: str) -> int:
        return len(self.read_text(path).encode("utf-8"))

    def read_text(self, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def write_text(self, path: str, content: str) -> None:
        self.operations.append(("write", path))
        self.files[path] = content

    def create_directory(self, path: str) -> None:
        self.operations.append(("mkdir", path))
        self.directories.add(path)

    def delete(self, path: str) -> None:
        del self.files[path]


class FlakyFileSystem(MemoryFileSystem):
    def __init__(self, failures: Sequence[Exception], files: dict[str, str] | None = None) -> None:
        super().__init__(files)
        self.failures = list(failures)

    def write_text(self, path: str, content: str) -> None:
        if self.failures:
            raise self.failures.pop(0)
        super().write_text(path, content)


class ReadOnlyPathFileSystem(MemoryFileSystem):
    def __init__(self, read_only: set[str], files: dict[str, str] | None = None) -> None:
        super().__init__(files)
        self.read_only = read_only

    def write_text(self, path: str, content: str) -> None:
        if path in self.read_only:
            raise PermissionError(f"read-only file: {path}")
        super().write_text(path, content)


class ScriptedGenerator:
    def __init__(self, responses: Sequence[Any] = (), *, integrity: str = "VALID") -> None:
        self.responses = list(responses)
        self.integrity = integrity
        self.calls: list[tuple[str | None, list[str]]] = []

    def generate(self, prompt_parts, *, model=None, system_instruction=None, on_chunk=None, cancellation=None):
        self.calls.append((system_instruction, list(prompt_parts)))
        if system_instruction == INTEGRITY_INSTRUCTION:
            return self.integrity
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if on_chunk is not None:
            on_chunk(item)
        return item

    def prompts_for(self, instruction: str) -> list[str]:
        return ["\n".join(parts) for system, parts in self.calls if system == instruction]


class StaticDiagnostics:
    def __init__(self, mapping: dict[str, list[Diagnostic]] | None = None) -> None:
        self.mapping = mapping or {}
        self.waited: list[str] = []
        self.polls: dict[str, int] = {}

    def get_diagnostics(self, path: str) -> list[Diagnostic]:
        self.polls[path] = self.polls.get(path, 0) + 1
        return list(self.mapping.get(path, []))

    def wait_for_stable(self, path: str, cancellation: CancellationToken, timeout: float) -> None:
        self.waited.append(path)


class RecordingInteraction:
    def __init__(self, choices: Sequence[StepFailureChoice] = (), *, approve: bool = True) -> None:
        self.choices = list(choices)
        self.approve = approve
        self.failures: list[tuple[str, str]] = []
        self.progress: list[str] = []
        self.approvals: list[str] = []

    def choose_failure_action(self, step_label: str, error_message: str) -> StepFailureChoice | None:
        self.failures.append((step_label, error_message))
        return self.choices.pop(0) if self.choices else StepFailureChoice.CANCEL

    def approve_command(self, command_display: str) -> bool | None:
        self.approvals.append(command_display)
        return self.approve

    def report_progress(self, message: str) -> None:
        self.progress.append(message)


class FakeRunner:
    def __init__(self, results: Sequence[ProcessResult] = ()) -> None:
        self.results = list(results)
        self.calls: list[list[str]] = []

    def spawn(self, executable, args, cwd, cancellation) -> ProcessResult:
        self.calls.append([executable, *args])
        return self.results.pop(0)


class RecordingScheduler:
    def __init__(self) -> None:
        self.requests: list[Any] = []

    def schedule(self, request: Any) -> None:
        self.requests.append(request)


def _settings(**overrides: Any) -> ExecutionSettings:
    values: dict[str, Any] = {
        "step_retry_base_seconds": 0.0,
        "step_retry_increment_seconds": 0.0,
        "generation_retry_seconds": 0.0,
        "clarification_delay_seconds": 0.0,
        "require_command_approval": False,
        "diagnostics": DiagnosticSettings(check_interval_seconds=0.0, required_stable_checks=2),
    }
    values.update(overrides)
    return ExecutionSettings(**values)


def _executor(
    filesystem: MemoryFileSystem,
    *,
    generator: ScriptedGenerator | None = None,
    diagnostics: StaticDiagnostics | None = None,
    interaction: RecordingInteraction | None = None,
    runner: FakeRunner | None = None,
    scheduler: RecordingScheduler | None = None,
    settings: ExecutionSettings | None = None,
) -> PlanExecutor:
    return PlanExecutor(
        generator=generator or ScriptedGenerator(),
        filesystem=filesystem,
        diagnostics=diagnostics or StaticDiagnostics(),
        change_log=ProjectChangeLog(),
        interaction=interaction or RecordingInteraction(),
        process_runner=runner or FakeRunner(),
        settings=settings or _settings(),
        symbol_lookup=PythonSymbolLookup(),
        self_correction=scheduler,
    )


def _plan(*steps: Any, description: str = "Test plan") -> ExecutionPlan:
    return ExecutionPlan(description=description, steps=list(steps))


def _context(**overrides: Any) -> PlanExecutionContext:
    return PlanExecutionContext(project_root=Path("/workspace"), **overrides)


def _blocks(search: str, replace: str) -> str:
    return f"<<<<<<< SEARCH\n{search}\n=======\n{replace}\n>>>>>>> REPLACE\n"


def test_directories_are_created_before_files_with_single_change_entry() -> None:
    filesystem = MemoryFileSystem()
    executor = _executor(filesystem)
    plan = _plan(
        CreateFileStep(path="src/x/a.ts", content="foo"),
        CreateDirectoryStep(path="src/x"),
    )

    summary = executor.execute_plan(plan, _context())

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.operations == [("mkdir", "src/x"), ("write", "src/x/a.ts")]
    assert summary.change_set is not None
    assert [(entry.file_path, entry.change_type) for entry in summary.change_set.changes] == [
        ("src/x/a.ts", ChangeType.CREATED)
    ]
    assert summary.affected_files == ["src/x/a.ts"]


def test_modify_file_applies_search_replace_blocks() -> None:
    original = "def total(values):\n    return sum(values)\n"
    filesystem = MemoryFileSystem({"calc.py": original})
    generator = ScriptedGenerator([_blocks("    return sum(values)", "    return sum(values) + 1")])
    executor = _executor(filesystem, generator=generator)

    summary = executor.execute_plan(
        _plan(ModifyFileStep(path="calc.py", modification_prompt="add one")),
        _context(),
    )

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.files["calc.py"] == "def total(values):\n    return sum(values) + 1\n"
    entry = summary.change_set.changes[0]
    assert entry.change_type is ChangeType.MODIFIED
    assert entry.original_content == original
    assert "+    return sum(values) + 1" in entry.diff_content


def test_same_path_modifications_use_one_generation_pass() -> None:
    filesystem = MemoryFileSystem({"a.ts": "export const a = 1;\n"})
    generator = ScriptedGenerator([_blocks("export const a = 1;", "import b from './b';\nexport const a = 1;")])
    executor = _executor(filesystem, generator=generator)
    plan = _plan(
        ModifyFileStep(path="a.ts", modification_prompt="add import"),
        ModifyFileStep(path="a.ts", modification_prompt="add export"),
    )

    summary = executor.execute_plan(plan, _context())

    assert summary.outcome is PlanOutcome.SUCCESS
    prompts = generator.prompts_for(MODIFICATION_INSTRUCTION)
    assert len(prompts) == 1
    assert prompts[0].index("add import") < prompts[0].index("add export")


def test_ambiguous_match_retries_with_symbol_locations() -> None:
    original = "def first():\n    x = 1\n\n\ndef second():\n    x = 1\n"
    filesystem = MemoryFileSystem({"mod.py": original})
    generator = ScriptedGenerator(
        [
            _blocks("    x = 1", "    x = 2"),
            _blocks("def second():\n    x = 1", "def second():\n    x = 2"),
        ]
    )
    executor = _executor(filesystem, generator=generator)

    summary = executor.execute_plan(
        _plan(ModifyFileStep(path="mod.py", modification_prompt="bump second")),
        _context(),
    )

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.files["mod.py"] == "def first():\n    x = 1\n\n\ndef second():\n    x = 2\n"
    retry_prompt = generator.prompts_for(MODIFICATION_INSTRUCTION)[1]
    assert "[AMBIGUITY ERROR]" in retry_prompt
    assert "Line 2 (inside `first`)" in retry_prompt
    assert "Line 6 (inside `second`)" in retry_prompt


def test_not_found_exhaustion_escalates_and_skip_leaves_file_untouched() -> None:
    original = "alpha\nbeta\n"
    filesystem = MemoryFileSystem({"notes.txt": original})
    generator = ScriptedGenerator([_blocks("gamma", "delta"), _blocks("gamma", "delta")])
    interaction = RecordingInteraction([StepFailureChoice.SKIP])
    executor = _executor(
        filesystem,
        generator=generator,
        interaction=interaction,
        settings=_settings(max_transient_step_retries=1),
    )

    summary = executor.execute_plan(
        _plan(ModifyFileStep(path="notes.txt", modification_prompt="rename gamma")),
        _context(),
    )

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.files["notes.txt"] == original
    assert "[NOT FOUND ERROR]" in generator.prompts_for(MODIFICATION_INSTRUCTION)[1]
    assert len(interaction.failures) == 1
    assert "SEARCH block not found" in interaction.failures[0][1]
    assert [record.status for record in summary.steps] == ["skipped"]
    assert summary.change_set is None


def test_rejected_rewrite_adds_integrity_note_before_retry() -> None:
    original = 'print("hello world")\n'
    filesystem = MemoryFileSystem({"hello.py": original})
    generator = ScriptedGenerator(
        [
            "I'm sorry, I cannot help with that request.",
            _blocks('print("hello world")', 'print("hello planforge")'),
        ]
    )
    executor = _executor(filesystem, generator=generator)

    summary = executor.execute_plan(
        _plan(ModifyFileStep(path="hello.py", modification_prompt="greet planforge")),
        _context(),
    )

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.files["hello.py"] == 'print("hello planforge")\n'
    assert "[OUTPUT INTEGRITY ERROR]" in generator.prompts_for(MODIFICATION_INSTRUCTION)[1]


def test_full_rewrite_is_accepted_after_integrity_check() -> None:
    filesystem = MemoryFileSystem({"settings.py": "DEBUG = True\nPORT = 8000\n"})
    generator = ScriptedGenerator(["DEBUG = False\nPORT = 8080\n"])
    executor = _executor(filesystem, generator=generator)

    summary = executor.execute_plan(
        _plan(ModifyFileStep(path="settings.py", modification_prompt="production values")),
        _context(),
    )

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.files["settings.py"] == "DEBUG = False\nPORT = 8080\n"
    assert len(generator.prompts_for(INTEGRITY_INSTRUCTION)) == 1


def test_identical_content_is_a_noop() -> None:
    filesystem = MemoryFileSystem({"README.md": "hello\n"})
    executor = _executor(filesystem)

    summary = executor.execute_plan(_plan(CreateFileStep(path="README.md", content="hello\n")), _context())

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.operations == []
    assert summary.affected_files == []
    assert summary.change_set is None


def test_modify_missing_file_falls_back_to_creation() -> None:
    filesystem = MemoryFileSystem()
    generator = ScriptedGenerator(["```python\nVALUE = 1\n```"])
    executor = _executor(filesystem, generator=generator)

    summary = executor.execute_plan(
        _plan(ModifyFileStep(path="pkg/values.py", modification_prompt="define VALUE")),
        _context(),
    )

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.files["pkg/values.py"] == "VALUE = 1"
    assert summary.change_set.changes[0].change_type is ChangeType.CREATED


def test_failing_command_aborts_without_retry() -> None:
    filesystem = MemoryFileSystem()
    runner = FakeRunner([ProcessResult(stdout="", stderr="boom", exit_code=2)])
    interaction = RecordingInteraction()
    executor = _executor(filesystem, runner=runner, interaction=interaction)
    plan = _plan(
        CreateFileStep(path="a.txt", content="a"),
        RunCommandStep(command="make build"),
        RunCommandStep(command="make test"),
    )

    summary = executor.execute_plan(plan, _context())

    assert summary.outcome is PlanOutcome.FAILED
    assert runner.calls == [["make", "build"]]
    assert interaction.failures == []
    assert "exit code 2" in (summary.error or "")
    assert summary.change_set.summary == "Test plan (Failed)"


def test_declined_command_is_skipped() -> None:
    runner = FakeRunner()
    interaction = RecordingInteraction(approve=False)
    executor = _executor(
        MemoryFileSystem(),
        runner=runner,
        interaction=interaction,
        settings=_settings(require_command_approval=True),
    )

    summary = executor.execute_plan(_plan(RunCommandStep(command="rm -rf build")), _context())

    assert summary.outcome is PlanOutcome.SUCCESS
    assert interaction.approvals == ["rm -rf build"]
    assert runner.calls == []
    assert [record.status for record in summary.steps] == ["skipped"]


def test_transient_failure_retries_automatically() -> None:
    filesystem = FlakyFileSystem([OSError("Network issue while writing")])
    interaction = RecordingInteraction()
    executor = _executor(filesystem, interaction=interaction)

    summary = executor.execute_plan(_plan(CreateFileStep(path="a.txt", content="data")), _context())

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.files["a.txt"] == "data"
    assert "Step 1/1: Create file: a.txt (Auto-retry 1/3)" in interaction.progress
    assert interaction.failures == []
    assert summary.steps[0].attempts == 2


def test_user_retry_resets_the_transient_counter() -> None:
    filesystem = FlakyFileSystem([OSError("timeout"), OSError("timeout")])
    interaction = RecordingInteraction([StepFailureChoice.RETRY])
    executor = _executor(filesystem, interaction=interaction, settings=_settings(max_transient_step_retries=1))

    summary = executor.execute_plan(_plan(CreateFileStep(path="a.txt", content="data")), _context())

    assert summary.outcome is PlanOutcome.SUCCESS
    assert len(interaction.failures) == 1
    assert summary.steps[0].attempts == 3
    assert interaction.progress.count("Step 1/1: Create file: a.txt") == 2


def test_cancel_choice_stops_the_plan_and_archives_partial_changes() -> None:
    filesystem = ReadOnlyPathFileSystem({"b.txt"}, {"a.txt": "old"})
    interaction = RecordingInteraction([StepFailureChoice.CANCEL])
    executor = _executor(filesystem, interaction=interaction)
    plan = _plan(
        CreateFileStep(path="a.txt", content="new"),
        CreateFileStep(path="b.txt", content="b"),
        CreateFileStep(path="c.txt", content="c"),
    )

    summary = executor.execute_plan(plan, _context())

    assert summary.outcome is PlanOutcome.CANCELLED
    assert summary.error == ERROR_OPERATION_CANCELLED
    assert "c.txt" not in filesystem.files
    assert summary.change_set.summary == "Test plan (Cancelled)"
    assert [entry.file_path for entry in summary.change_set.changes] == ["a.txt"]


def test_cancelled_token_prevents_any_step() -> None:
    filesystem = MemoryFileSystem()
    executor = _executor(filesystem)
    token = CancellationToken()
    token.cancel()

    summary = executor.execute_plan(_plan(CreateFileStep(path="a.txt", content="a")), _context(), token)

    assert summary.outcome is PlanOutcome.CANCELLED
    assert filesystem.operations == []
    assert summary.change_set is None


def test_error_diagnostics_schedule_one_self_correction() -> None:
    filesystem = MemoryFileSystem()
    error = Diagnostic(severity=DiagnosticSeverity.ERROR, message="undefined name 'x'", start_line=3)
    diagnostics = StaticDiagnostics({"f1.py": [error]})
    scheduler = RecordingScheduler()
    executor = _executor(filesystem, diagnostics=diagnostics, scheduler=scheduler)
    plan = _plan(
        CreateFileStep(path="f1.py", content="print(x)\n"),
        CreateFileStep(path="f2.py", content="print(1)\n"),
    )

    summary = executor.execute_plan(plan, _context())

    assert summary.outcome is PlanOutcome.SUCCESS_WITH_ERRORS
    assert summary.error_files == ["f1.py"]
    assert sorted(diagnostics.waited) == ["f1.py", "f2.py"]
    assert len(scheduler.requests) == 1
    request = scheduler.requests[0]
    assert request.error_files == ["f1.py"]
    assert request.cycle == 1
    assert "FILES WITH ERRORS: f1.py" in request.diagnostics
    assert "CLEAN FILES (No Errors/Warnings): f2.py" in request.diagnostics
    assert summary.self_correction_scheduled


def test_clean_run_does_not_schedule_correction() -> None:
    scheduler = RecordingScheduler()
    executor = _executor(MemoryFileSystem(), scheduler=scheduler)

    summary = executor.execute_plan(_plan(CreateFileStep(path="ok.py", content="x = 1\n")), _context())

    assert summary.outcome is PlanOutcome.SUCCESS
    assert scheduler.requests == []


def test_post_run_diagnostics_are_polled_until_stable() -> None:
    warning = Diagnostic(severity=DiagnosticSeverity.WARNING, message="unused import")
    diagnostics = StaticDiagnostics({"mod.py": [warning]})
    settings = _settings(
        diagnostics=DiagnosticSettings(timeout_seconds=5.0, check_interval_seconds=0.0, required_stable_checks=3)
    )
    executor = _executor(MemoryFileSystem(), diagnostics=diagnostics, settings=settings)

    summary = executor.execute_plan(_plan(CreateFileStep(path="mod.py", content="import os\n")), _context())

    assert summary.outcome is PlanOutcome.SUCCESS
    assert diagnostics.waited == ["mod.py"]
    # one seeding poll, three matching polls, then the final classification read
    assert diagnostics.polls["mod.py"] == 5


def test_generated_file_keeps_trailing_newline() -> None:
    filesystem = MemoryFileSystem()
    generator = ScriptedGenerator(["def f():\n    return 1\n"])
    executor = _executor(filesystem, generator=generator)

    summary = executor.execute_plan(
        _plan(CreateFileStep(path="f.py", generate_prompt="write f")),
        _context(),
    )

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.files["f.py"] == "def f():\n    return 1\n"


def test_rewrite_matching_the_original_writes_nothing() -> None:
    original = "line one\nline two\nline three\nline four\nline five\n"
    filesystem = MemoryFileSystem({"a.txt": original})
    generator = ScriptedGenerator([original])
    executor = _executor(filesystem, generator=generator)

    summary = executor.execute_plan(
        _plan(ModifyFileStep(path="a.txt", modification_prompt="tidy up")),
        _context(),
    )

    assert summary.outcome is PlanOutcome.SUCCESS
    assert filesystem.operations == []
    assert summary.affected_files == []
    assert summary.change_set is None
    assert generator.prompts_for(INTEGRITY_INSTRUCTION) == []


def test_correction_mode_skips_files_without_errors() -> None:
    filesystem = MemoryFileSystem(
        {
            "clean.py": "value = compute()\n",
            "broken.py": "value = compute(\n",
        }
    )
    error = Diagnostic(severity=DiagnosticSeverity.ERROR, message="'(' was never closed")
    diagnostics = StaticDiagnostics({"broken.py": [error]})
    generator = ScriptedGenerator([_blocks("value = compute(", "value = compute()")])
    executor = _executor(filesystem, generator=generator, diagnostics=diagnostics)
    plan = _plan(
        ModifyFileStep(path="clean.py", modification_prompt="fix errors"),
        ModifyFileStep(path="broken.py", modification_prompt="fix errors"),
        CreateFileStep(path="clean.py", content="overwritten\n"),
    )

    summary = executor.execute_plan(plan, _context(is_correction_mode=True))

    assert filesystem.files["clean.py"] == "value = compute()\n"
    assert filesystem.files["broken.py"] == "value = compute()\n"
    prompts = generator.prompts_for(MODIFICATION_INSTRUCTION)
    assert len(prompts) == 1
    assert "'(' was never closed" in prompts[0]
    assert [record.status for record in summary.steps] == ["skipped", "skipped", "completed"]
