"""Local SQLite snapshot of the synchronized state.

Keeps the last known save count, key versions, values and not-yet-flushed
writes between runs so a restarted client only fetches what changed.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .app_state import AppState

logger = logging.getLogger(__name__)

SNAPSHOT_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_meta (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS key_counts (
    key TEXT PRIMARY KEY,
    save_count INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshot_values (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- value NULL marks a staged delete
CREATE TABLE IF NOT EXISTS pending_updates (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""


@dataclass
class SnapshotData:
    """Everything a snapshot holds."""

    save_count: int = 0
    key_counts: dict[str, int] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    updates: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.save_count == 0 and not self.key_counts and not self.updates


class LocalSnapshot:
    """Persists synchronized state to a SQLite file."""

    def __init__(self, db_path: str | Path):
        """Initialize the snapshot store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open the database and create the schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.executescript(SNAPSHOT_SCHEMA)
        self._conn.commit()
        logger.info(f"LocalSnapshot connected to {self.db_path}")

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("LocalSnapshot is not connected")
        return self._conn

    def load(self) -> SnapshotData:
        """Read the stored snapshot; an empty one if nothing was saved yet."""
        row = self.conn.execute(
            "SELECT value FROM sync_meta WHERE name = 'save_count'"
        ).fetchone()
        save_count = int(row[0]) if row else 0

        key_counts = {
            key: count
            for key, count in self.conn.execute("SELECT key, save_count FROM key_counts")
        }
        values = {
            key: json.loads(value)
            for key, value in self.conn.execute("SELECT key, value FROM snapshot_values")
        }
        updates = {
            key: None if value is None else json.loads(value)
            for key, value in self.conn.execute("SELECT key, value FROM pending_updates")
        }
        return SnapshotData(save_count, key_counts, values, updates)

    def save_state(self, state: AppState, values: dict[str, Any]) -> None:
        """Replace the snapshot with ``state`` and the local ``values``."""
        with self.conn:
            self.conn.execute("DELETE FROM key_counts")
            self.conn.execute("DELETE FROM snapshot_values")
            self.conn.execute("DELETE FROM pending_updates")
            self.conn.execute(
                "INSERT OR REPLACE INTO sync_meta (name, value) VALUES ('save_count', ?)",
                (str(state.save_count),),
            )
            self.conn.executemany(
                "INSERT INTO key_counts (key, save_count) VALUES (?, ?)",
                state.key_counts.items(),
            )
            self.conn.executemany(
                "INSERT INTO snapshot_values (key, value) VALUES (?, ?)",
                [(k, json.dumps(v)) for k, v in values.items() if v is not None],
            )
            self.conn.executemany(
                "INSERT INTO pending_updates (key, value) VALUES (?, ?)",
                [
                    (k, None if v is None else json.dumps(v))
                    for k, v in state.updates.items()
                ],
            )
        logger.debug(
            f"Snapshot saved: save_count={state.save_count}, "
            f"{len(values)} values, {len(state.updates)} pending"
        )
