"""Project configuration: ``config.yaml`` loading and engine settings."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .diagnostics import DiagnosticSettings

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "execution": {
        "max_transient_step_retries": 3,
        "retry_base_ms": 10000,
        "retry_increment_ms": 5000,
        "generation_retry_ms": 2000,
        "clarification_delay_ms": 1000,
        "max_plan_parse_retries": 3,
        "max_self_correction_cycles": 1,
        "ambiguous_match": "error",
        "max_context_file_bytes": 1_000_000,
        "require_command_approval": True,
        "integrity_check": True,
    },
    "diagnostics": {
        "timeout_ms": 10000,
        "check_interval_ms": 200,
        "required_stable_checks": 5,
        "max_backoff_extra_ms": 5000,
        "check_timeout_ms": 120000,
        "static_checks": [],
    },
    "models": {
        "default": "gpt-5",
        "plan": "",
        "content": "",
        "integrity": "",
    },
    "ignore": {
        "patterns": ["node_modules", "__pycache__", ".venv"],
    },
    "paths": {
        "logs": ".planforge/logs",
        "history_db": ".planforge/history.sqlite",
    },
}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or is malformed."""


@dataclass(slots=True)
class ModelSettings:
    """Model names used for each kind of generation."""

    default: str = "gpt-5"
    plan: str = ""
    content: str = ""
    integrity: str = ""

    def for_plan(self) -> str:
        return self.plan or self.default

    def for_content(self) -> str:
        return self.content or self.default

    def for_integrity(self) -> str:
        return self.integrity or self.default


@dataclass(slots=True)
class ExecutionSettings:
    """Runtime configuration for plan execution."""

    max_transient_step_retries: int = 3
    step_retry_base_seconds: float = 10.0
    step_retry_increment_seconds: float = 5.0
    generation_retry_seconds: float = 2.0
    clarification_delay_seconds: float = 1.0
    max_plan_parse_retries: int = 3
    max_self_correction_cycles: int = 1
    ambiguous_match_policy: str = "error"
    max_context_file_bytes: int = 1_000_000
    require_command_approval: bool = True
    enable_integrity_check: bool = True
    diagnostics: DiagnosticSettings = field(default_factory=DiagnosticSettings)
    models: ModelSettings = field(default_factory=ModelSettings)
    ignore_patterns: tuple[str, ...] = ()
    log_dir: Path | None = None

    def step_retry_delay(self, attempt: int) -> float:
        """Delay before automatic retry ``attempt`` of a failed step."""
        return self.step_retry_base_seconds + attempt * self.step_retry_increment_seconds


def default_config() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Read ``config_path`` as a YAML mapping."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(yaml.safe_dump(dict(config_data), sort_keys=False), encoding="utf-8")


def _as_int(value: Any, *, minimum: int | None = None) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        candidate = int(value)
    except (TypeError, ValueError):
        return None
    if minimum is not None and candidate < minimum:
        return minimum
    return candidate


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def _ms(value: Any) -> float | None:
    converted = _as_float(value)
    if converted is None:
        return None
    return max(converted / 1000.0, 0.0)


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = config.get(name)
    return section if isinstance(section, Mapping) else {}


def resolve_execution_settings(
    config: Mapping[str, Any] | None = None,
    *,
    base_dir: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ExecutionSettings:
    """Return execution settings derived from config and environment."""
    config = config or {}
    env = os.environ if environ is None else environ
    settings = ExecutionSettings()

    execution = _section(config, "execution")
    value = _as_int(execution.get("max_transient_step_retries"), minimum=0)
    if value is not None:
        settings.max_transient_step_retries = value
    seconds = _ms(execution.get("retry_base_ms"))
    if seconds is not None:
        settings.step_retry_base_seconds = seconds
    seconds = _ms(execution.get("retry_increment_ms"))
    if seconds is not None:
        settings.step_retry_increment_seconds = seconds
    seconds = _ms(execution.get("generation_retry_ms"))
    if seconds is not None:
        settings.generation_retry_seconds = seconds
    seconds = _ms(execution.get("clarification_delay_ms"))
    if seconds is not None:
        settings.clarification_delay_seconds = seconds
    value = _as_int(execution.get("max_plan_parse_retries"), minimum=0)
    if value is not None:
        settings.max_plan_parse_retries = value
    value = _as_int(execution.get("max_self_correction_cycles"), minimum=0)
    if value is not None:
        settings.max_self_correction_cycles = value
    policy = execution.get("ambiguous_match")
    if isinstance(policy, str) and policy.strip().lower() in {"error", "first"}:
        settings.ambiguous_match_policy = policy.strip().lower()
    value = _as_int(execution.get("max_context_file_bytes"), minimum=0)
    if value is not None:
        settings.max_context_file_bytes = value
    approval = _as_bool(execution.get("require_command_approval"))
    if approval is not None:
        settings.require_command_approval = approval
    integrity = _as_bool(execution.get("integrity_check"))
    if integrity is not None:
        settings.enable_integrity_check = integrity

    diagnostics = _section(config, "diagnostics")
    seconds = _ms(diagnostics.get("timeout_ms"))
    if seconds is not None:
        settings.diagnostics.timeout_seconds = seconds
    seconds = _ms(diagnostics.get("check_interval_ms"))
    if seconds is not None:
        settings.diagnostics.check_interval_seconds = seconds
    value = _as_int(diagnostics.get("required_stable_checks"), minimum=1)
    if value is not None:
        settings.diagnostics.required_stable_checks = value
    seconds = _ms(diagnostics.get("max_backoff_extra_ms"))
    if seconds is not None:
        settings.diagnostics.max_backoff_extra_seconds = seconds
    seconds = _ms(diagnostics.get("check_timeout_ms"))
    if seconds is not None:
        settings.diagnostics.check_timeout_seconds = seconds

    models = _section(config, "models")
    for name in ("default", "plan", "content", "integrity"):
        model_name = models.get(name)
        if isinstance(model_name, str) and model_name.strip():
            setattr(settings.models, name, model_name.strip())

    patterns = _section(config, "ignore").get("patterns")
    if isinstance(patterns, (list, tuple)):
        settings.ignore_patterns = tuple(str(item) for item in patterns if str(item).strip())

    logs = _section(config, "paths").get("logs")
    if isinstance(logs, str) and logs.strip():
        log_dir = Path(logs)
        if base_dir is not None and not log_dir.is_absolute():
            log_dir = base_dir / log_dir
        settings.log_dir = log_dir

    env_retries = _as_int(env.get("PLANFORGE_MAX_STEP_RETRIES"), minimum=0)
    if env_retries is not None:
        settings.max_transient_step_retries = env_retries
    env_base = _ms(env.get("PLANFORGE_RETRY_BASE_MS"))
    if env_base is not None:
        settings.step_retry_base_seconds = env_base
    env_increment = _ms(env.get("PLANFORGE_RETRY_INCREMENT_MS"))
    if env_increment is not None:
        settings.step_retry_increment_seconds = env_increment
    env_timeout = _ms(env.get("PLANFORGE_DIAGNOSTICS_TIMEOUT_MS"))
    if env_timeout is not None:
        settings.diagnostics.timeout_seconds = env_timeout
    env_policy = (env.get("PLANFORGE_AMBIGUOUS_MATCH") or "").strip().lower()
    if env_policy in {"error", "first"}:
        settings.ambiguous_match_policy = env_policy
    env_approval = _as_bool(env.get("PLANFORGE_REQUIRE_APPROVAL"))
    if env_approval is not None:
        settings.require_command_approval = env_approval

    return settings


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "ExecutionSettings",
    "ModelSettings",
    "default_config",
    "load_config",
    "resolve_execution_settings",
    "write_config",
]
