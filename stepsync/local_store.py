from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator

from .db import db, dumps_payload, loads_payload, now_iso, transaction


class LocalStore:
    """Device-resident SQLite file: key/value state plus the pending operation queue."""

    def __init__(self, path: str) -> None:
        self.path = path

    def init(self) -> None:
        with db(self.path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                  key TEXT PRIMARY KEY,
                  value_json TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queued_operations (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  op_id TEXT NOT NULL,
                  payload_json TEXT NOT NULL,
                  enqueued_at TEXT NOT NULL,
                  processed_at TEXT
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_queued_operations_pending ON queued_operations(processed_at, seq);"
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with transaction(self.path) as conn:
            yield conn

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        with db(self.path) as conn:
            yield conn

    def get(self, key: str, default: Any = None) -> Any:
        with db(self.path) as conn:
            row = conn.execute("SELECT value_json FROM kv WHERE key = ?", (key,)).fetchone()
        return loads_payload(row["value_json"]) if row else default

    def set(self, key: str, value: Any) -> None:
        with db(self.path) as conn:
            conn.execute(
                """
                INSERT INTO kv(key, value_json, updated_at) VALUES(?,?,?)
                ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, updated_at=excluded.updated_at
                """,
                (key, dumps_payload(value), now_iso()),
            )

    def delete(self, key: str) -> None:
        with db(self.path) as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
