"""Key/value persistence for conversation state.

The store only needs ``load(key)`` and ``save(key, value)``. ``SQLitePersistence``
keeps values in a single table so state survives app restarts;
``MemoryPersistence`` keeps them in a dict.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Protocol

from . import config

log = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when stored state cannot be read or written."""


class Persistence(Protocol):
    """Narrow load/save contract the conversation store depends on."""

    def load(self, key: str) -> str | None: ...

    def save(self, key: str, value: str) -> None: ...


class MemoryPersistence:
    """Keeps values in memory only."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def load(self, key: str) -> str | None:
        return self._values.get(key)

    def save(self, key: str, value: str) -> None:
        self._values[key] = value


class SQLitePersistence:
    """Stores values in a SQLite database.

    Opens a connection per operation, so an instance can be shared freely
    within one process.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        """Initialize the database.

        Args:
            db_path: Path to SQLite database file. Defaults to ``config.SQLITE_PATH``
        """
        if db_path is None:
            db_path = config.SQLITE_PATH

        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        """Initialize the database schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv_store (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """
                )
                conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Cannot initialize {self.db_path}: {e}") from e
        log.info(f"Persistence database initialized at: {self.db_path}")

    def load(self, key: str) -> str | None:
        try:
            with self._connect() as conn:
                cursor = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot load {key!r}: {e}") from e

        if row is None:
            return None
        value: str = row[0]
        return value

    def save(self, key: str, value: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot save {key!r}: {e}") from e

        log.debug(f"Saved {key} ({len(value)} bytes)")

