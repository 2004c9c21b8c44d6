"""Structured telemetry helpers shared by the execution engine and patch tools."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from .utils.slug import slugify

TELEMETRY_LOGGER = logging.getLogger("planforge.telemetry")


def json_safe(value: Any) -> Any:
    """Coerce complex objects into JSON-serialisable representations."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return json_safe(value.value)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        try:
            return json_safe(value.model_dump(mode="json"))
        except TypeError:
            pass
    if isinstance(value, Mapping):
        return {str(key): json_safe(child) for key, child in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def emit_event(event: str, **fields: Any) -> None:
    """Log a single-line JSON telemetry event."""
    if not TELEMETRY_LOGGER.isEnabledFor(logging.INFO):
        return
    payload: dict[str, Any] = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = json_safe(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def write_run_log(log_dir: Path, label: str, payload: Mapping[str, Any]) -> Path:
    """Persist a JSON run log under ``log_dir`` and return its path."""
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    name = f"{stamp}-{slugify(label, fallback='plan', max_length=60)}.json"
    target = log_dir / name
    target.write_text(json.dumps(json_safe(payload), indent=2, sort_keys=True), encoding="utf-8")
    return target


__all__ = ["TELEMETRY_LOGGER", "emit_event", "json_safe", "write_run_log"]
