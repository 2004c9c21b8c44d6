"""Durable SQLite storage for archived change sets."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping

from .changelog import ChangeSet, FileChangeEntry

DEFAULT_DB_PATH = Path(".planforge/history.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


class ChangeLogStore:
    """SQLite-backed persistence for completed change sets."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = self._open_connection()
        self._bootstrap()

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, base: Path | None = None) -> "ChangeLogStore":
        paths = config.get("paths") or {}
        raw = paths.get("history_db") if isinstance(paths, Mapping) else None
        db_path = Path(raw) if raw else DEFAULT_DB_PATH
        if base is not None and not db_path.is_absolute():
            db_path = base / db_path
        return cls(db_path)

    def __enter__(self) -> "ChangeLogStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("ChangeLogStore is closed")
        return self._conn

    def _bootstrap(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS change_sets (
                id TEXT PRIMARY KEY,
                summary TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS file_changes (
                change_set_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (change_set_id, position),
                FOREIGN KEY(change_set_id) REFERENCES change_sets(id) ON DELETE CASCADE
            );
            """
        )
        self.conn.commit()

    def save_change_set(self, change_set: ChangeSet) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO change_sets (id, summary, created_at) VALUES (?, ?, ?)",
                (change_set.id, change_set.summary, _as_iso(change_set.timestamp)),
            )
            self.conn.execute("DELETE FROM file_changes WHERE change_set_id = ?", (change_set.id,))
            self.conn.executemany(
                "INSERT INTO file_changes (change_set_id, position, payload) VALUES (?, ?, ?)",
                [
                    (change_set.id, position, entry.model_dump_json())
                    for position, entry in enumerate(change_set.changes)
                ],
            )
        LOGGER.debug("Persisted change set %s (%d changes)", change_set.id, len(change_set.changes))

    def list_change_sets(self) -> List[ChangeSet]:
        """Return archived change sets, oldest first."""
        rows = self.conn.execute(
            "SELECT id, summary, created_at FROM change_sets ORDER BY created_at ASC, rowid ASC"
        ).fetchall()
        change_sets: list[ChangeSet] = []
        for row in rows:
            entries = self.conn.execute(
                "SELECT payload FROM file_changes WHERE change_set_id = ? ORDER BY position ASC",
                (row["id"],),
            ).fetchall()
            change_sets.append(
                ChangeSet(
                    id=row["id"],
                    summary=row["summary"],
                    timestamp=datetime.fromisoformat(row["created_at"]),
                    changes=[FileChangeEntry.model_validate(json.loads(entry["payload"])) for entry in entries],
                )
            )
        return change_sets

    def delete_change_set(self, change_set_id: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM change_sets WHERE id = ?", (change_set_id,))

    def clear(self) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM change_sets")


__all__ = ["ChangeLogStore", "DEFAULT_DB_PATH"]
