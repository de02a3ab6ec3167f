from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Callable

from .db import db, dumps_payload, iso, loads_payload, next_seq, parse_iso, transaction, utcnow
from .models import BackupData, BackupKind
from .operations import ledger_rows, replace_ledger
from .players import PlayerRecord, load_player, save_player

logger = logging.getLogger(__name__)


class BackupNotFound(LookupError):
    pass


def new_transaction_id() -> str:
    return f"txn_{uuid.uuid4().hex}"


class BackupStore:
    """Snapshots of a player's authoritative state, keyed by transaction id."""

    def __init__(self, db_path: str, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.db_path = db_path
        self._clock = clock

    def snapshot(self, conn: sqlite3.Connection, player_id: str, kind: BackupKind, backup_id: str | None = None) -> str:
        player = load_player(conn, player_id)
        backup_id = backup_id or new_transaction_id()
        snap = {
            "player": player.to_snapshot(),
            "appliedOperations": ledger_rows(conn, player_id),
        }
        conn.execute(
            "INSERT INTO sync_backups(id, player_id, kind, snapshot_json, created_at, seq) VALUES(?,?,?,?,?,?)",
            (backup_id, player_id, kind.value, dumps_payload(snap), iso(self._clock()), next_seq(conn, "sync_backups")),
        )
        return backup_id

    def backup(self, player_id: str, kind: BackupKind = BackupKind.PRE_SYNC, backup_id: str | None = None) -> str:
        with transaction(self.db_path) as conn:
            return self.snapshot(conn, player_id, kind, backup_id)

    def get(self, backup_id: str) -> BackupData | None:
        with db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM sync_backups WHERE id = ?", (backup_id,)).fetchone()
        if row is None:
            return None
        return BackupData(
            id=row["id"],
            playerId=row["player_id"],
            snapshot=loads_payload(row["snapshot_json"]),
            timestamp=parse_iso(row["created_at"]),
            kind=BackupKind(row["kind"]),
        )

    def _restore(self, conn: sqlite3.Connection, backup: BackupData) -> None:
        save_player(conn, PlayerRecord.from_snapshot(backup.snapshot["player"]))
        replace_ledger(conn, backup.playerId, backup.snapshot.get("appliedOperations") or [])

    def restore(self, backup_id: str) -> BackupData:
        backup = self.get(backup_id)
        if backup is None:
            raise BackupNotFound(f"Backup not found for transaction: {backup_id}")
        with transaction(self.db_path) as conn:
            self._restore(conn, backup)
        logger.info("restored player %s from backup %s", backup.playerId, backup_id)
        return backup

    def rollback_transaction(self, transaction_id: str) -> str:
        """Operator rollback: keep a rollback point of the current state, then restore."""
        backup = self.get(transaction_id)
        if backup is None:
            raise BackupNotFound(f"Backup not found for transaction: {transaction_id}")
        with transaction(self.db_path) as conn:
            point_id = self.snapshot(conn, backup.playerId, BackupKind.ROLLBACK_POINT)
            self._restore(conn, backup)
        logger.info("rolled back transaction %s (rollback point %s)", transaction_id, point_id)
        return point_id

    def cleanup(self, retention_days: int, now: datetime | None = None) -> int:
        """Delete backups past retention unless they are their player's latest."""
        cutoff = iso((now or self._clock()) - timedelta(days=retention_days))
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                """
                DELETE FROM sync_backups
                WHERE created_at < ?
                  AND seq < (SELECT MAX(b.seq) FROM sync_backups b WHERE b.player_id = sync_backups.player_id)
                """,
                (cutoff,),
            )
        return cur.rowcount
