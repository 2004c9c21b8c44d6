from __future__ import annotations

import os
import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@dataclass(slots=True)
class TinyRepo:
    """Fixture payload representing the synthetic repository under test."""

    root: Path
    config_path: Path

    def run_cli(self, *args: str) -> subprocess.CompletedProcess[str]:
        """Invoke ``python -m planforge.cli`` with the provided arguments."""

        env = os.environ.copy()
        pythonpath = str(SRC)
        if env.get("PYTHONPATH"):
            pythonpath = os.pathsep.join([pythonpath, env["PYTHONPATH"]])
        env["PYTHONPATH"] = pythonpath
        env.pop("PLANFORGE_API_KEY", None)
        env.pop("OPENAI_API_KEY", None)

        command = [sys.executable, "-m", "planforge.cli", *args]
        return subprocess.run(  # noqa: S603 - command constructed from known values
            command,
            cwd=self.root,
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """Create a tiny git repository with a config file for CLI smoke tests."""

    repo_root = tmp_path / "tiny-repo"
    repo_root.mkdir()

    def run_git(*cmd: str) -> None:
        subprocess.run(
            ["git", *cmd],
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )

    run_git("init")
    run_git("config", "user.email", "planner@example.com")
    run_git("config", "user.name", "Plan Forge")

    (repo_root / ".gitignore").write_text("build/\n.planforge/\n", encoding="utf-8")
    src_dir = repo_root / "src"
    src_dir.mkdir()
    (src_dir / "calculator.py").write_text(
        textwrap.dedent(
            """
            def add(left, right):
                return left + right
            """
        ).lstrip(),
        encoding="utf-8",
    )

    (repo_root / "config.yaml").write_text(
        textwrap.dedent(
            """
            project:
              name: tiny-repo
              repo_root: .
            execution:
              max_transient_step_retries: 0
              retry_base_ms: 0
              retry_increment_ms: 0
              require_command_approval: false
            diagnostics:
              timeout_ms: 0
              static_checks: []
            paths:
              logs: .planforge/logs
              history_db: .planforge/history.sqlite
            models:
              default: offline
            """
        ).lstrip(),
        encoding="utf-8",
    )

    run_git("add", ".")
    run_git("commit", "-m", "Initial tiny repo state")

    return TinyRepo(root=repo_root, config_path=repo_root / "config.yaml")
