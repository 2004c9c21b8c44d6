from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest

from planforge.planning.ignore import IgnoreRules
from planforge.planning.ordering import MODIFICATION_SEPARATOR, order_steps
from planforge.planning.schema import (
    CreateDirectoryStep,
    CreateFileStep,
    ModifyFileStep,
    RunCommandStep,
    normalise_workspace_path,
)
from planforge.planning.validator import PlanValidationError, parse_plan_payload, validate_plan


def _validate(payload, tmp_path: Path, patterns=()):
    return validate_plan(payload, tmp_path, ignore_rules=IgnoreRules(patterns))


def test_valid_plan_is_ordered_and_modifications_are_merged(tmp_path: Path) -> None:
    payload = {
        "planDescription": "Wire up exports",
        "steps": [
            {"step": 1, "action": "run_command", "command": "npm test"},
            {"step": 2, "action": "modify_file", "path": "a.ts", "modification_prompt": "add import"},
            {"step": 3, "action": "create_file", "path": "src/b.ts", "content": "export {};"},
            {"step": 4, "action": "modify_file", "path": "a.ts", "modificationPrompt": "add export"},
            {"step": 5, "action": "create_directory", "path": "src"},
        ],
    }

    result = _validate(payload, tmp_path)

    assert result.ok
    plan = result.unwrap()
    assert plan.description == "Wire up exports"
    assert [type(step) for step in plan.steps] == [CreateDirectoryStep, CreateFileStep, ModifyFileStep, RunCommandStep]
    merged = plan.steps[2]
    assert merged.path == "a.ts"
    assert merged.modification_prompt == f"add import{MODIFICATION_SEPARATOR}add export"


def test_raw_string_with_prose_and_raw_newlines_is_repaired(tmp_path: Path) -> None:
    raw = (
        "Sure! Here is the plan:\n```json\n"
        '{"planDescription": "Add readme", "steps": [\n'
        '  {"step": 1, "action": "create_file", "path": "README.md", "content": "# Title\nBody\tText"},\n'
        "]}\n```\nLet me know!"
    )

    result = _validate(raw, tmp_path)

    assert result.ok, result.error
    step = result.unwrap().steps[0]
    assert isinstance(step, CreateFileStep)
    assert step.content == "# Title\nBody\tText"


@pytest.mark.parametrize(
    ("path", "fragment"),
    [
        ("/etc/passwd", "relative"),
        ("C:\\temp\\x.txt", "relative"),
        ("../outside.txt", ".."),
        ("src/../../outside.txt", ".."),
    ],
)
def test_unsafe_paths_reject_the_plan(tmp_path: Path, path: str, fragment: str) -> None:
    payload = {
        "planDescription": "Bad path",
        "steps": [
            {"step": 1, "action": "create_directory", "path": "ok"},
            {"step": 2, "action": "create_file", "path": path, "content": "x"},
        ],
    }

    result = _validate(payload, tmp_path)

    assert not result.ok
    assert "step 2" in (result.error or "")
    assert fragment in (result.error or "")


@pytest.mark.parametrize(
    "fields",
    [
        {"content": "x", "generate_prompt": "write x"},
        {},
        {"generatePrompt": "   "},
    ],
)
def test_create_file_requires_exactly_one_source(tmp_path: Path, fields: dict) -> None:
    payload = {
        "planDescription": "Create",
        "steps": [{"step": 1, "action": "create_file", "path": "a.txt", **fields}],
    }

    result = _validate(payload, tmp_path)

    assert not result.ok
    assert "exactly one of 'content' or 'generate_prompt'" in (result.error or "")


def test_structural_errors_name_the_step(tmp_path: Path) -> None:
    missing_ordinal = {"planDescription": "p", "steps": [{"action": "create_directory", "path": "a"}]}
    unknown_action = {"planDescription": "p", "steps": [{"step": 1, "action": "delete_everything"}]}
    empty_command = {"planDescription": "p", "steps": [{"step": 1, "action": "run_command", "command": " "}]}
    empty_prompt = {
        "planDescription": "p",
        "steps": [{"step": 1, "action": "modify_file", "path": "a.py", "modification_prompt": ""}],
    }

    assert "Step 1 has an invalid structure" in (_validate(missing_ordinal, tmp_path).error or "")
    assert "Step 1 has an invalid structure" in (_validate(unknown_action, tmp_path).error or "")
    assert "non-empty 'command'" in (_validate(empty_command, tmp_path).error or "")
    assert "non-empty 'modification_prompt'" in (_validate(empty_prompt, tmp_path).error or "")


def test_top_level_shape_is_required(tmp_path: Path) -> None:
    assert not _validate({"steps": [{"step": 1}]}, tmp_path).ok
    assert not _validate({"planDescription": "p", "steps": []}, tmp_path).ok
    assert not _validate("no json here", tmp_path).ok
    with pytest.raises(PlanValidationError):
        _validate({"planDescription": "p"}, tmp_path).unwrap()


def test_ignored_paths_are_dropped_not_rejected(tmp_path: Path) -> None:
    payload = {
        "planDescription": "Touch deps",
        "steps": [
            {"step": 1, "action": "create_file", "path": "node_modules/x/index.js", "content": ""},
            {"step": 2, "action": "create_file", "path": "src/index.js", "content": ""},
        ],
    }

    result = _validate(payload, tmp_path, patterns=("node_modules",))

    assert result.ok
    assert [step.path for step in result.unwrap().steps] == ["src/index.js"]
    assert result.skipped_paths == ["node_modules/x/index.js"]


def test_plan_with_only_ignored_paths_is_rejected(tmp_path: Path) -> None:
    payload = {
        "planDescription": "Touch git",
        "steps": [{"step": 1, "action": "create_file", "path": ".git/config", "content": ""}],
    }

    result = _validate(payload, tmp_path, patterns=(".git",))

    assert not result.ok
    assert "no executable steps" in (result.error or "")


def test_gitignore_rules_are_honoured(tmp_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=tmp_path, check=True, capture_output=True)
    (tmp_path / ".gitignore").write_text("dist/\n*.log\n", encoding="utf-8")
    rules = IgnoreRules.for_project(tmp_path)
    payload = {
        "planDescription": "Build output",
        "steps": [
            {"step": 1, "action": "create_directory", "path": "dist"},
            {"step": 2, "action": "create_file", "path": "debug.log", "content": ""},
            {"step": 3, "action": "create_file", "path": "app.py", "content": ""},
        ],
    }

    result = validate_plan(payload, tmp_path, ignore_rules=rules)

    assert result.ok
    assert [step.path for step in result.unwrap().steps] == ["app.py"]


def test_normalise_workspace_path_cleans_separators() -> None:
    assert normalise_workspace_path("./src\\pkg/mod.py") == "src/pkg/mod.py"
    assert normalise_workspace_path("src/dir/") == "src/dir"
    with pytest.raises(ValueError):
        normalise_workspace_path("   ")


def test_order_steps_is_idempotent() -> None:
    steps = [
        RunCommandStep(command="make"),
        ModifyFileStep(path="b.py", modification_prompt="one"),
        CreateFileStep(path="a.py", content=""),
        ModifyFileStep(path="b.py", modification_prompt="two"),
        CreateDirectoryStep(path="pkg"),
    ]

    once = order_steps(steps)

    assert order_steps(once) == once
    assert [step.action for step in once] == ["create_directory", "create_file", "modify_file", "run_command"]


def test_parse_plan_payload_accepts_mappings_and_strings() -> None:
    assert parse_plan_payload({"a": 1}) == {"a": 1}
    assert parse_plan_payload('prefix {"a": [1, 2,]} suffix') == {"a": [1, 2]}
    assert json.dumps(parse_plan_payload('{"text": "line\nnext"}')) == '{"text": "line\\nnext"}'
