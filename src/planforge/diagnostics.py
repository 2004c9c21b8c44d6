"""Diagnostic records, stabilisation polling, and the static-check provider."""

from __future__ import annotations

import json
import logging
import random
import re
import shlex
import shutil
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

from .cancellation import CancellationToken, OperationCancelledError
from .tools.commands import SubprocessRunner

LOGGER = logging.getLogger(__name__)

_BACKOFF_FACTOR = 1.2
_JITTER_RATIO = 0.2
_MAX_STABILISE_WORKERS = 8
_LOCATION_RE = re.compile(
    r"^(?P<path>[^:\n]+?):(?P<line>\d+)(?::(?P<column>\d+))?:\s*"
    r"(?:(?P<severity>error|warning|note|info)\s*:\s*)?(?P<message>.+)$",
    re.IGNORECASE,
)


class DiagnosticSeverity(str, Enum):
    """Severity levels reported by diagnostic providers."""

    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"
    HINT = "hint"


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """Single diagnostic attached to a range of a workspace file."""

    severity: DiagnosticSeverity
    message: str
    start_line: int = 1
    start_column: int = 1
    end_line: int | None = None
    end_column: int | None = None
    source: str | None = None

    @property
    def is_error(self) -> bool:
        return self.severity is DiagnosticSeverity.ERROR

    def render(self) -> str:
        origin = f" ({self.source})" if self.source else ""
        return f"Line {self.start_line}, Col {self.start_column} [{self.severity.value}]{origin}: {self.message}"


@dataclass(slots=True)
class DiagnosticSettings:
    """Polling bounds applied while waiting for diagnostics to settle."""

    timeout_seconds: float = 10.0
    check_interval_seconds: float = 0.2
    required_stable_checks: int = 5
    max_backoff_extra_seconds: float = 5.0
    check_timeout_seconds: float = 120.0


class DiagnosticProvider(Protocol):
    """Diagnostic collaborator contract."""

    def get_diagnostics(self, path: str) -> list[Diagnostic]: ...

    def wait_for_stable(self, path: str, cancellation: CancellationToken, timeout: float) -> None: ...


def _fingerprint(diagnostics: Iterable[Diagnostic]) -> str:
    entries = [json.dumps(asdict(item), sort_keys=True, default=str) for item in diagnostics]
    return json.dumps(sorted(entries))


def wait_for_diagnostics_to_stabilize(
    provider: DiagnosticProvider,
    path: str,
    cancellation: CancellationToken,
    settings: DiagnosticSettings | None = None,
    *,
    clock: Callable[[], float] = time.monotonic,
    jitter: Callable[[], float] = random.random,
) -> bool:
    """Poll ``provider`` until diagnostics for ``path`` stop changing.

    Returns ``False`` when the timeout elapses first. Unstable polls back off
    exponentially with jitter, capped at the interval plus the configured extra.
    """
    settings = settings or DiagnosticSettings()
    interval = max(settings.check_interval_seconds, 0.0)
    ceiling = interval + max(settings.max_backoff_extra_seconds, 0.0)
    started = clock()
    previous: str | None = None
    stable_checks = 0
    unstable_checks = 0

    while clock() - started < settings.timeout_seconds:
        cancellation.raise_if_cancelled()
        current = _fingerprint(provider.get_diagnostics(path))
        if current == previous:
            stable_checks += 1
            unstable_checks = 0
            if stable_checks >= settings.required_stable_checks:
                return True
            delay = interval
        else:
            stable_checks = 0
            unstable_checks += 1
            previous = current
            backoff = interval * _BACKOFF_FACTOR ** (unstable_checks - 1)
            delay = min(backoff * (1 + jitter() * _JITTER_RATIO), ceiling)
        cancellation.sleep(delay)

    LOGGER.debug("Diagnostics for %s did not stabilise within %.1fs", path, settings.timeout_seconds)
    return False


def _settle(
    provider: DiagnosticProvider,
    path: str,
    cancellation: CancellationToken,
    settings: DiagnosticSettings,
) -> bool:
    """Give the provider its own warm-up, then poll until the results stop changing."""
    provider.wait_for_stable(path, cancellation, settings.timeout_seconds)
    return wait_for_diagnostics_to_stabilize(provider, path, cancellation, settings)


def collect_error_files(
    provider: DiagnosticProvider,
    paths: Sequence[str],
    cancellation: CancellationToken,
    settings: DiagnosticSettings | None = None,
) -> list[str]:
    """Wait for every path concurrently, then return those with Error diagnostics."""
    settings = settings or DiagnosticSettings()
    if not paths:
        return []

    workers = min(len(paths), _MAX_STABILISE_WORKERS)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="planforge-diagnostics") as pool:
        futures = {path: pool.submit(_settle, provider, path, cancellation, settings) for path in paths}
        for path, future in futures.items():
            try:
                future.result()
            except OperationCancelledError:
                raise
            except Exception as error:  # noqa: BLE001 - a provider failure only loses the warm-up
                LOGGER.warning("Diagnostics did not settle for %s: %s", path, error)

    cancellation.raise_if_cancelled()
    return [path for path in paths if any(item.is_error for item in provider.get_diagnostics(path))]


def format_diagnostics_for_prompt(
    diagnostics: Mapping[str, Sequence[Diagnostic]],
    *,
    clean_files: Sequence[str] = (),
) -> str:
    """Render a self-correction diagnostic summary followed by per-file detail."""
    error_files = [path for path, items in diagnostics.items() if any(item.is_error for item in items)]
    warning_files = [
        path
        for path, items in diagnostics.items()
        if path not in error_files and any(item.severity is DiagnosticSeverity.WARNING for item in items)
    ]

    lines = ["--- Self-Correction Diagnostic Summary ---"]
    lines.append("CRITICAL: Prioritize fixing files in the 'FILES WITH ERRORS' list below.")
    if error_files:
        lines.append(f"FILES WITH ERRORS: {', '.join(error_files)}")
    if warning_files:
        lines.append(f"FILES WITH WARNINGS: {', '.join(warning_files)}")
    if clean_files:
        lines.append(f"CLEAN FILES (No Errors/Warnings): {', '.join(clean_files)}")
    lines.append("--- End Summary ---")

    for path in [*error_files, *warning_files]:
        status = "HAS ERRORS" if path in error_files else "HAS WARNINGS"
        lines.append("")
        lines.append(f"--- [{status}] {path} ---")
        for item in diagnostics[path]:
            if item.severity in (DiagnosticSeverity.ERROR, DiagnosticSeverity.WARNING):
                lines.append(item.render())
    return "\n".join(lines)


# ------------------------------------------------------------------ providers
@dataclass(slots=True)
class StaticCheck:
    """Static analysis command run against a single file.

    ``{path}`` in the command is replaced with the workspace-relative path;
    without a placeholder the path is appended.
    """

    name: str
    command: Sequence[str]
    severity: DiagnosticSeverity = DiagnosticSeverity.ERROR
    suffixes: tuple[str, ...] = ()

    def applies_to(self, path: str) -> bool:
        return not self.suffixes or path.endswith(self.suffixes)

    def argv(self, path: str) -> list[str]:
        if any("{path}" in part for part in self.command):
            return [part.replace("{path}", path) for part in self.command]
        return [*self.command, path]


def parse_static_checks(raw: Any) -> list[StaticCheck]:
    """Expand configuration entries into :class:`StaticCheck` definitions."""
    checks: list[StaticCheck] = []
    for entry in raw or []:
        if isinstance(entry, str):
            parts = shlex.split(entry)
            if parts:
                checks.append(StaticCheck(name=parts[0], command=parts))
            continue
        if not isinstance(entry, Mapping):
            continue
        command = entry.get("command") or entry.get("cmd")
        parts = shlex.split(command) if isinstance(command, str) else [str(part) for part in command or []]
        if not parts:
            continue
        severity_raw = str(entry.get("severity") or DiagnosticSeverity.ERROR.value).lower()
        try:
            severity = DiagnosticSeverity(severity_raw)
        except ValueError:
            severity = DiagnosticSeverity.ERROR
        suffixes = entry.get("suffixes") or ()
        if isinstance(suffixes, str):
            suffixes = (suffixes,)
        checks.append(
            StaticCheck(
                name=str(entry.get("name") or parts[0]),
                command=parts,
                severity=severity,
                suffixes=tuple(str(item) for item in suffixes),
            )
        )
    return checks


@dataclass(slots=True)
class StaticCheckDiagnosticProvider:
    """Diagnostic collaborator that runs static-check commands per file.

    Results are cached per path and keyed by the file's content fingerprint,
    so a rewrite invalidates the cached diagnostics. Checks run through the
    process runner: cancelling ``cancellation`` terminates a running check,
    and ``check_timeout_seconds`` (when positive) bounds each one.
    """

    root: Path
    checks: Sequence[StaticCheck]
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    check_timeout_seconds: float | None = None
    runner: SubprocessRunner = field(default_factory=SubprocessRunner)
    _cache: dict[str, tuple[tuple[int, int], list[Diagnostic]]] = field(default_factory=dict)

    def _fingerprint(self, path: str) -> tuple[int, int]:
        try:
            stat = (self.root / path).stat()
        except FileNotFoundError:
            return (-1, -1)
        return (stat.st_mtime_ns, stat.st_size)

    def get_diagnostics(self, path: str) -> list[Diagnostic]:
        fingerprint = self._fingerprint(path)
        cached = self._cache.get(path)
        if cached is not None and cached[0] == fingerprint:
            return list(cached[1])
        diagnostics: list[Diagnostic] = []
        if fingerprint != (-1, -1):
            for check in self.checks:
                if check.applies_to(path):
                    diagnostics.extend(self._run_check(check, path))
        self._cache[path] = (fingerprint, diagnostics)
        return list(diagnostics)

    def wait_for_stable(self, path: str, cancellation: CancellationToken, timeout: float) -> None:
        cancellation.raise_if_cancelled()
        self.get_diagnostics(path)

    def _run_check(self, check: StaticCheck, path: str) -> list[Diagnostic]:
        argv = check.argv(path)
        if shutil.which(argv[0]) is None:
            LOGGER.debug("Skipping static check %s: executable not available", check.name)
            return []

        token = CancellationToken()
        unlink = self.cancellation.on_cancel(token.cancel)
        timer: threading.Timer | None = None
        if self.check_timeout_seconds is not None and self.check_timeout_seconds > 0:
            timer = threading.Timer(self.check_timeout_seconds, token.cancel, kwargs={"reason": "timeout"})
            timer.daemon = True
            timer.start()
        try:
            result = self.runner.spawn(argv[0], argv[1:], self.root, token)
        finally:
            unlink()
            if timer is not None:
                timer.cancel()

        if result.cancelled:
            self.cancellation.raise_if_cancelled()
            LOGGER.warning(
                "Static check %s timed out for %s after %.1fs", check.name, path, self.check_timeout_seconds
            )
            return []
        if result.exit_code == 0:
            return []
        return parse_diagnostic_output(
            "\n".join(part for part in (result.stdout, result.stderr) if part),
            path,
            default_severity=check.severity,
            source=check.name,
        )


def parse_diagnostic_output(
    output: str,
    path: str,
    *,
    default_severity: DiagnosticSeverity = DiagnosticSeverity.ERROR,
    source: str | None = None,
) -> list[Diagnostic]:
    """Parse ``path:line[:col]: [severity:] message`` lines for ``path``."""
    target = Path(path).as_posix()
    findings: list[Diagnostic] = []
    for raw_line in output.splitlines():
        match = _LOCATION_RE.match(raw_line.strip())
        if match is None:
            continue
        reported = Path(match.group("path").strip()).as_posix()
        if reported != target and not reported.endswith(f"/{target}"):
            continue
        severity = default_severity
        label = (match.group("severity") or "").lower()
        if label == "warning":
            severity = DiagnosticSeverity.WARNING
        elif label in {"note", "info"}:
            severity = DiagnosticSeverity.INFORMATION
        elif label == "error":
            severity = DiagnosticSeverity.ERROR
        findings.append(
            Diagnostic(
                severity=severity,
                message=match.group("message").strip(),
                start_line=int(match.group("line")),
                start_column=int(match.group("column") or 1),
                source=source,
            )
        )
    return findings


__all__ = [
    "Diagnostic",
    "DiagnosticProvider",
    "DiagnosticSettings",
    "DiagnosticSeverity",
    "StaticCheck",
    "StaticCheckDiagnosticProvider",
    "collect_error_files",
    "format_diagnostics_for_prompt",
    "parse_diagnostic_output",
    "parse_static_checks",
    "wait_for_diagnostics_to_stabilize",
]
