from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from .db import db, dumps_payload, iso, loads_payload, next_seq, parse_iso, transaction, utcnow
from .models import (
    ConflictRecord,
    ConflictResolution,
    ConflictStatus,
    ConflictStrategy,
    DataConflict,
)


class ConflictNotFound(LookupError):
    pass


def _row_to_record(row: sqlite3.Row) -> ConflictRecord:
    strategy = row["resolution_strategy"]
    return ConflictRecord(
        id=row["id"],
        playerId=row["player_id"],
        field=row["field"],
        localValue=loads_payload(row["local_value"]),
        serverValue=loads_payload(row["server_value"]),
        lastSyncTimestamp=parse_iso(row["last_sync_timestamp"]),
        conflictTimestamp=parse_iso(row["conflict_timestamp"]),
        status=ConflictStatus(row["status"]),
        resolutionStrategy=ConflictStrategy(strategy) if strategy else None,
        resolvedValue=loads_payload(row["resolved_value"]),
        resolvedAt=parse_iso(row["resolved_at"]),
        transactionId=row["transaction_id"],
    )


class ConflictHistory:
    """Append-only log of detected conflicts and how they were settled."""

    def __init__(self, db_path: str, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.db_path = db_path
        self._clock = clock

    def append(
        self,
        conn: sqlite3.Connection,
        player_id: str,
        conflict: DataConflict,
        *,
        resolution: ConflictResolution | None = None,
        transaction_id: str | None = None,
    ) -> str:
        """Append a conflict inside the caller's transaction.

        Without a resolution it is pending and supersedes older pending ones
        for the same field.
        """
        conflict_id = f"conflict_{uuid.uuid4().hex}"
        if resolution is None:
            conn.execute(
                "UPDATE sync_conflicts SET status = ? WHERE player_id = ? AND field = ? AND status = ?",
                (ConflictStatus.REJECTED.value, player_id, conflict.field, ConflictStatus.PENDING.value),
            )
        conn.execute(
            """
            INSERT INTO sync_conflicts(
              id, player_id, field, local_value, server_value,
              last_sync_timestamp, conflict_timestamp, status,
              resolution_strategy, resolved_value, resolved_at, transaction_id, created_at, seq
            ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                conflict_id,
                player_id,
                conflict.field,
                dumps_payload(conflict.localValue),
                dumps_payload(conflict.serverValue),
                iso(conflict.lastSyncTimestamp),
                iso(conflict.conflictTimestamp),
                (ConflictStatus.RESOLVED if resolution else ConflictStatus.PENDING).value,
                resolution.strategy.value if resolution else None,
                dumps_payload(resolution.resolvedValue) if resolution else None,
                iso(resolution.timestamp) if resolution else None,
                transaction_id,
                iso(self._clock()),
                next_seq(conn, "sync_conflicts"),
            ),
        )
        return conflict_id

    def reject_pending(self, conn: sqlite3.Connection, player_id: str) -> int:
        """Reject every pending conflict of the player inside the caller's transaction."""
        cur = conn.execute(
            "UPDATE sync_conflicts SET status = ? WHERE player_id = ? AND status = ?",
            (ConflictStatus.REJECTED.value, player_id, ConflictStatus.PENDING.value),
        )
        return cur.rowcount

    def record(
        self,
        player_id: str,
        conflict: DataConflict,
        *,
        resolution: ConflictResolution | None = None,
        transaction_id: str | None = None,
    ) -> str:
        with transaction(self.db_path) as conn:
            return self.append(conn, player_id, conflict, resolution=resolution, transaction_id=transaction_id)

    def get(self, conflict_id: str) -> ConflictRecord:
        with db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,)).fetchone()
        if row is None:
            raise ConflictNotFound(f"Conflict not found: {conflict_id}")
        return _row_to_record(row)

    def mark_resolved(
        self,
        conn: sqlite3.Connection,
        conflict_id: str,
        strategy: ConflictStrategy,
        resolved_value: Any,
        resolved_at: datetime,
    ) -> None:
        conn.execute(
            """
            UPDATE sync_conflicts
            SET status = ?, resolution_strategy = ?, resolved_value = ?, resolved_at = ?
            WHERE id = ?
            """,
            (ConflictStatus.RESOLVED.value, strategy.value, dumps_payload(resolved_value), iso(resolved_at), conflict_id),
        )

    def list_conflicts(self, player_id: str, limit: int = 50, offset: int = 0) -> list[ConflictRecord]:
        with db(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_conflicts
                WHERE player_id = ?
                ORDER BY seq DESC
                LIMIT ? OFFSET ?
                """,
                (player_id, limit, offset),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def count_pending(self, player_id: str) -> int:
        with db(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM sync_conflicts WHERE player_id = ? AND status = ?",
                (player_id, ConflictStatus.PENDING.value),
            ).fetchone()
        return int(row["c"])

    def cleanup(self, retention_days: int, now: datetime | None = None) -> int:
        cutoff = iso((now or self._clock()) - timedelta(days=retention_days))
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                "DELETE FROM sync_conflicts WHERE created_at < ? AND status != ?",
                (cutoff, ConflictStatus.PENDING.value),
            )
        return cur.rowcount
