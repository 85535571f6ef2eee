"""
PEGDROP - Persistence Gateway

A single named JSON blob per session. Stores raise PersistenceError on I/O
failure; the session logs it and keeps playing from memory.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger("pegdrop.persistence")


class PersistenceError(RuntimeError):
    """Snapshot could not be read or written."""


class KeyValueStore(Protocol):
    def load(self, key: str) -> Optional[str]: ...
    def save(self, key: str, blob: str) -> None: ...


class MemoryStore:
    def __init__(self):
        self.data: dict[str, str] = {}

    def load(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def save(self, key: str, blob: str) -> None:
        self.data[key] = blob


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);
"""


class SqliteStore:
    """Key-value blobs in a local SQLite file."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            db = sqlite3.connect(self.db_path)
            db.executescript(SCHEMA_SQL)
            db.commit()
            db.close()
        except (OSError, sqlite3.Error) as e:
            raise PersistenceError(f"Cannot open state db {self.db_path}: {e}") from e

    def _db(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def load(self, key: str) -> Optional[str]:
        try:
            db = self._db()
            try:
                row = db.execute("SELECT value FROM kv_store WHERE key=?", (key,)).fetchone()
            finally:
                db.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Load '{key}' failed: {e}") from e
        return row[0] if row else None

    def save(self, key: str, blob: str) -> None:
        try:
            db = self._db()
            try:
                db.execute(
                    """INSERT INTO kv_store (key, value, updated_at)
                       VALUES (?, ?, datetime('now'))
                       ON CONFLICT(key) DO UPDATE
                       SET value=excluded.value, updated_at=excluded.updated_at""",
                    (key, blob),
                )
                db.commit()
            finally:
                db.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Save '{key}' failed: {e}") from e
