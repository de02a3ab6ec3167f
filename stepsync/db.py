from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from .settings import default_db_path

SQLITE_TIMEOUT_S = 5.0


def connect(db_path: str | None = None) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path or default_db_path(), timeout=SQLITE_TIMEOUT_S)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute(f"PRAGMA busy_timeout={int(SQLITE_TIMEOUT_S * 1000)};")
    return conn


@contextmanager
def db(db_path: str | None = None) -> Iterator[sqlite3.Connection]:
    conn = connect(db_path)
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction(db_path: str | None = None) -> Iterator[sqlite3.Connection]:
    """Unit of work: BEGIN IMMEDIATE, then COMMIT on success or ROLLBACK on any exception."""
    conn = connect(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE;")
        yield conn
        conn.commit()
    except BaseException:
        try:
            conn.rollback()
        except sqlite3.Error:
            pass
        raise
    finally:
        conn.close()


def init_db(db_path: str | None = None) -> None:
    with db(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS players (
              id TEXT PRIMARY KEY,
              total_steps INTEGER NOT NULL DEFAULT 0,
              credited_steps INTEGER NOT NULL DEFAULT 0,
              daily_steps INTEGER NOT NULL DEFAULT 0,
              step_updated_at TEXT,
              step_source TEXT NOT NULL DEFAULT 'tracker',
              step_validated INTEGER NOT NULL DEFAULT 0,
              cells INTEGER NOT NULL DEFAULT 0,
              experience_points INTEGER NOT NULL DEFAULT 0,
              current_mode TEXT NOT NULL DEFAULT 'discovery',
              state_json TEXT NOT NULL DEFAULT '{}',
              last_sync TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_conflicts (
              id TEXT PRIMARY KEY,
              player_id TEXT NOT NULL,
              field TEXT NOT NULL,
              local_value TEXT NOT NULL,
              server_value TEXT NOT NULL,
              last_sync_timestamp TEXT NOT NULL,
              conflict_timestamp TEXT NOT NULL,
              status TEXT NOT NULL DEFAULT 'pending',
              resolution_strategy TEXT,
              resolved_value TEXT,
              resolved_at TEXT,
              transaction_id TEXT,
              created_at TEXT NOT NULL,
              seq INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_conflicts_player_status ON sync_conflicts(player_id, status);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_conflicts_player_field ON sync_conflicts(player_id, field);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_conflicts_created_at ON sync_conflicts(created_at);")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_backups (
              id TEXT PRIMARY KEY,
              player_id TEXT NOT NULL,
              kind TEXT NOT NULL,
              snapshot_json TEXT NOT NULL,
              created_at TEXT NOT NULL,
              seq INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_backups_player ON sync_backups(player_id, created_at);")

        # Idempotency ledger of applied operation ids
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS applied_operations (
              player_id TEXT NOT NULL,
              operation_id TEXT NOT NULL,
              type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              applied_at TEXT NOT NULL,
              seq INTEGER NOT NULL,
              PRIMARY KEY (player_id, operation_id)
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_applied_operations_seq ON applied_operations(player_id, seq);")


def next_seq(conn: sqlite3.Connection, table: str, where: str = "", params: tuple[Any, ...] = ()) -> int:
    row = conn.execute(f"SELECT COALESCE(MAX(seq), 0) AS s FROM {table} {where}", params).fetchone()
    return int(row["s"]) + 1


def iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def dumps_payload(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


def loads_payload(raw: str | None) -> Any:
    return json.loads(raw) if raw else None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return iso(datetime.now(timezone.utc))  # type: ignore[return-value]
