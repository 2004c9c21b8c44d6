from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

from planforge.cancellation import (
    ERROR_OPERATION_CANCELLED,
    CancellationToken,
    OperationCancelledError,
    is_cancellation,
    run_cancellable,
)
from planforge.planning.retry import is_transient_error, is_transient_generation_error
from planforge.tools.commands import (
    CANCELLED_EXIT_CODE,
    MISSING_EXECUTABLE_EXIT_CODE,
    CommandFailedError,
    SubprocessRunner,
    parse_command_line,
)


def test_parse_command_line_honours_quotes_and_truncates_display() -> None:
    parsed = parse_command_line(f'git commit -m "fix the bug" --message "{"x" * 150}"')

    assert parsed.executable == "git"
    assert parsed.args[:3] == ["commit", "-m", "fix the bug"]
    display = parsed.display()
    assert display.startswith("git commit -m fix the bug --message ")
    assert display.endswith("x" * 97 + "...")


def test_parse_command_line_rejects_unbalanced_quotes() -> None:
    with pytest.raises(CommandFailedError):
        parse_command_line('echo "unterminated')


def test_subprocess_runner_captures_output(tmp_path: Path) -> None:
    result = SubprocessRunner().spawn(
        sys.executable,
        ["-c", "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"],
        tmp_path,
        CancellationToken(),
    )

    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"
    assert result.exit_code == 3
    assert not result.succeeded


def test_subprocess_runner_reports_missing_executable(tmp_path: Path) -> None:
    result = SubprocessRunner().spawn("definitely-not-a-real-binary-xyz", [], tmp_path, CancellationToken())

    assert result.exit_code == MISSING_EXECUTABLE_EXIT_CODE
    assert "Executable not available" in result.stderr


def test_cancellation_terminates_running_process(tmp_path: Path) -> None:
    token = CancellationToken()
    timer = threading.Timer(0.2, token.cancel)
    timer.start()
    started = time.monotonic()
    try:
        result = SubprocessRunner().spawn(sys.executable, ["-c", "import time; time.sleep(30)"], tmp_path, token)
    finally:
        timer.cancel()

    assert result.cancelled
    assert result.exit_code == CANCELLED_EXIT_CODE
    assert time.monotonic() - started < 10


def test_token_callbacks_fire_once_and_can_unregister() -> None:
    token = CancellationToken()
    fired: list[str] = []
    token.on_cancel(lambda: fired.append("a"))
    unregister = token.on_cancel(lambda: fired.append("b"))
    unregister()

    token.cancel("stop")
    token.cancel("again")

    assert fired == ["a"]
    assert token.reason == "stop"
    with pytest.raises(OperationCancelledError):
        token.sleep(0)


def test_run_cancellable_returns_value_or_abandons_wait() -> None:
    assert run_cancellable(lambda: 42, CancellationToken()) == 42

    token = CancellationToken()
    release = threading.Event()
    threading.Timer(0.1, token.cancel).start()
    try:
        with pytest.raises(OperationCancelledError):
            run_cancellable(release.wait, token, poll_interval=0.01)
    finally:
        release.set()


def test_transient_classification() -> None:
    assert is_transient_error(RuntimeError("Rate limit exceeded, slow down"))
    assert is_transient_error("AI service unavailable (503)")
    assert not is_transient_error(RuntimeError("SyntaxError in generated code"))
    assert not is_transient_error(OperationCancelledError())
    assert is_transient_generation_error("monthly quota reached")
    assert not is_transient_error("monthly quota reached")
    assert is_cancellation(RuntimeError(ERROR_OPERATION_CANCELLED))
