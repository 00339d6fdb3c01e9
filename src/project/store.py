"""Deployment metadata database.

Persists the tracked project (remote, branch, build type, last commit) and
its environment variables so a restarted daemon keeps tracking the same
repository.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

METADATA_KEYS = ("project", "remote", "branch", "build_type", "build_file", "commit")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DeploymentStore:
    """SQLite-backed store for deployment metadata and env vars."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _init_db(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS env (
                    name TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def load_metadata(self) -> dict:
        """Return stored metadata as a dict (empty if nothing deployed)."""
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM metadata").fetchall()
        return {key: value for key, value in rows}

    def save_metadata(self, **values: Optional[str]):
        """Upsert metadata values. None values are skipped."""
        now = _now_iso()
        with self._connect() as conn:
            for key, value in values.items():
                if key not in METADATA_KEYS:
                    raise KeyError(f"Unknown metadata key: {key}")
                if value is None:
                    continue
                conn.execute(
                    """
                    INSERT INTO metadata (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value=excluded.value,
                        updated_at=excluded.updated_at
                    """,
                    (key, str(value), now),
                )

    def clear_metadata(self):
        with self._connect() as conn:
            conn.execute("DELETE FROM metadata")

    def set_env(self, name: str, value: str):
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO env (name, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    value=excluded.value,
                    updated_at=excluded.updated_at
                """,
                (name, value, _now_iso()),
            )

    def remove_env(self, name: str) -> bool:
        """Remove an env var. Returns True if it existed."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM env WHERE name = ?", (name,))
            return cursor.rowcount > 0

    def get_env(self) -> dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name, value FROM env ORDER BY name").fetchall()
        return {name: value for name, value in rows}
