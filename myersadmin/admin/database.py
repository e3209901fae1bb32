"""Durable key/value slots for the Myers Security admin panel."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path


SCHEMA_VERSION = 1


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path) -> sqlite3.Connection:
    """Return a SQLite connection with sensible defaults."""

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the slot table if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS slots (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
        """
    )
    write_slot(conn, "schema_version", str(SCHEMA_VERSION))


def write_slot(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT INTO slots(key, value) VALUES (?, ?)\n"
        "         ON CONFLICT(key) DO UPDATE SET value = excluded.value,"
        " updated_at = CURRENT_TIMESTAMP",
        (key, value),
    )
    conn.commit()


def read_slot(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM slots WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default


def delete_slot(conn: sqlite3.Connection, key: str) -> None:
    conn.execute("DELETE FROM slots WHERE key = ?", (key,))
    conn.commit()


class SlotStorage:
    """Synchronous string-to-string storage backed by a SQLite table.

    Each collection lives in exactly one slot as a serialized snapshot, so a
    write always replaces the whole value. One connection serves every
    thread and each statement runs under ``self.lock``, but read-modify-write
    cycles are not serialized: the last write wins.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.lock = threading.Lock()
        self.conn = get_connection(path)
        initialize_database(self.conn)

    def get(self, key: str) -> str | None:
        with self.lock:
            return read_slot(self.conn, key)

    def set(self, key: str, value: str) -> None:
        with self.lock:
            write_slot(self.conn, key, value)

    def delete(self, key: str) -> None:
        with self.lock:
            delete_slot(self.conn, key)

    def keys(self) -> list[str]:
        with self.lock:
            rows = self.conn.execute("SELECT key FROM slots ORDER BY key").fetchall()
        return [row["key"] for row in rows]

    def close(self) -> None:
        with self.lock:
            self.conn.close()
