"""Prompt templates and helpers shared by plan generation and step execution."""

from __future__ import annotations

from typing import Sequence

from .tools.patch import REPLACE_MARKER, SEARCH_MARKER, SEPARATOR_MARKER

PLAN_JSON_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object with a non-empty `planDescription` string and a "
    "non-empty `steps` array. Each step has a positive integer `step`, an `action` "
    "(create_directory, create_file, modify_file, run_command), an optional `description`, and: "
    "`path` for file and directory actions; exactly one of `content` or `generate_prompt` for "
    "create_file; `modification_prompt` for modify_file; `command` for run_command. "
    "Paths are relative to the project root and never contain `..`."
)

FILE_CONTENT_INSTRUCTION = (
    "You write complete, production-ready source files. Return only the file content, with no "
    "explanations and no Markdown fences."
)

MODIFICATION_INSTRUCTION = (
    "You edit existing source files. Prefer targeted edits expressed as one or more blocks:\n"
    f"{SEARCH_MARKER}\n<exact lines from the current file>\n{SEPARATOR_MARKER}\n<replacement lines>\n"
    f"{REPLACE_MARKER}\n"
    "Each SEARCH section must match the current file exactly once. If the whole file must change, "
    "return the FULL new file content instead, with no explanations and no Markdown fences."
)

INTEGRITY_INSTRUCTION = (
    "You review generated file content before it replaces an existing file. Answer with a single "
    "line: `VALID` when the output is a complete file, or `INVALID: <reason>` when it is a "
    "fragment, a truncated snippet, an explanation, or a refusal."
)


def render_section(title: str, body: str) -> str:
    """Format a titled prompt section, or an empty string for empty bodies."""
    if not body or not body.strip():
        return ""
    return f"## {title}\n{body.strip()}"


def render_create_file_prompt(
    *,
    path: str,
    instructions: str,
    plan_description: str,
    project_context: str = "",
    diagnostics: str = "",
) -> list[str]:
    return [
        render_section("Plan", plan_description),
        render_section("Project Context", project_context),
        render_section("Diagnostics", diagnostics),
        render_section("Task", f"Create the file `{path}`.\n{instructions}"),
    ]


def render_modify_file_prompt(
    *,
    path: str,
    instructions: str,
    original_content: str,
    plan_description: str,
    project_context: str = "",
    diagnostics: str = "",
    clarification: str = "",
) -> list[str]:
    return [
        render_section("Plan", plan_description),
        render_section("Project Context", project_context),
        render_section("Diagnostics", diagnostics),
        render_section("Current Content", f"--- {path} ---\n```\n{original_content}\n```"),
        render_section("Task", f"Modify `{path}`.\n{instructions}"),
        render_section("Corrections Required", clarification),
    ]


def render_integrity_prompt(output: str, original_content: str) -> list[str]:
    return [
        render_section("Original File", f"```\n{original_content}\n```"),
        render_section("Proposed Replacement", f"```\n{output}\n```"),
    ]


def render_plan_request(
    goal: str,
    *,
    project_context: str = "",
    recent_changes: str = "",
    diagnostics: str = "",
    previous_error: str = "",
) -> list[str]:
    parts = [
        render_section("Goal", goal),
        render_section("Project Context", project_context),
        render_section("Recent Changes", recent_changes),
        render_section("Diagnostics", diagnostics),
    ]
    if previous_error:
        parts.append(
            render_section(
                "Previous Attempt Rejected",
                f"Your previous plan was invalid: {previous_error}\nReturn a corrected plan.",
            )
        )
    return parts


def parsing_error_note() -> str:
    return (
        "[PARSING ERROR]: Your output contained Search/Replace markers but no valid blocks could be "
        f"parsed. Use exactly `{SEARCH_MARKER}`, `{SEPARATOR_MARKER}`, and `{REPLACE_MARKER}` on their own lines."
    )


def ambiguity_error_note(locations: Sequence[str], block: str) -> str:
    return (
        "[AMBIGUITY ERROR]: The SEARCH block you provided is ambiguous. It matches multiple "
        f"locations in the file: {', '.join(locations)}.\n\nAMBIGUOUS BLOCK:\n```\n{block}\n```\n"
        "Please provide a new SEARCH block that includes more unique surrounding context to uniquely "
        "identify the intended location."
    )


def not_found_error_note(block: str) -> str:
    return (
        "[NOT FOUND ERROR]: The SEARCH block you provided was NOT FOUND in the file.\n\n"
        f"MISSING BLOCK:\n```\n{block}\n```\n"
        "Please review the file content and provide a SEARCH block that EXACTLY matches the existing "
        "code (including whitespace and comments)."
    )


def integrity_error_note(reason: str) -> str:
    return (
        f"[OUTPUT INTEGRITY ERROR]: Your previous output was rejected. Reason: {reason}. Please ensure "
        "you use the exact Search/Replace block format or provide the FULL file content if intended."
    )


__all__ = [
    "FILE_CONTENT_INSTRUCTION",
    "INTEGRITY_INSTRUCTION",
    "MODIFICATION_INSTRUCTION",
    "PLAN_JSON_INSTRUCTION",
    "ambiguity_error_note",
    "integrity_error_note",
    "not_found_error_note",
    "parsing_error_note",
    "render_create_file_prompt",
    "render_integrity_prompt",
    "render_modify_file_prompt",
    "render_plan_request",
    "render_section",
]
