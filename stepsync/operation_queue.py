from __future__ import annotations

import json
import logging
import sqlite3
import threading
from typing import Iterable

from .db import dumps_payload, now_iso
from .local_store import LocalStore
from .models import OperationEnvelope

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000


class OperationQueue:
    """Durable bounded FIFO of operations waiting for the next sync.

    Drained rows are marked processed rather than deleted so a failed sync
    can hand them back with `requeue`. Rows still processed when the next
    sync starts belong to a sync that never finished and go back through
    `recover`.
    """

    def __init__(self, store: LocalStore, *, capacity: int = DEFAULT_CAPACITY) -> None:
        self.store = store
        self.capacity = capacity
        self._lock = threading.Lock()

    def _evict_overflow(self, conn: sqlite3.Connection) -> int:
        count = conn.execute("SELECT COUNT(*) AS c FROM queued_operations WHERE processed_at IS NULL").fetchone()["c"]
        overflow = int(count) - self.capacity
        if overflow <= 0:
            return 0
        conn.execute(
            """
            DELETE FROM queued_operations WHERE seq IN (
              SELECT seq FROM queued_operations WHERE processed_at IS NULL ORDER BY seq ASC LIMIT ?
            )
            """,
            (overflow,),
        )
        return overflow

    def enqueue(self, op: OperationEnvelope) -> None:
        with self._lock, self.store.transaction() as conn:
            conn.execute(
                "INSERT INTO queued_operations(op_id, payload_json, enqueued_at) VALUES(?,?,?)",
                (op.id, dumps_payload(op.model_dump(mode="json")), now_iso()),
            )
            evicted = self._evict_overflow(conn)
        if evicted:
            logger.warning("operation queue full, evicted %d oldest operation(s)", evicted)

    def drain(self) -> list[OperationEnvelope]:
        """Return every pending operation in FIFO order and mark them processed."""
        with self._lock, self.store.transaction() as conn:
            rows = conn.execute(
                "SELECT seq, payload_json FROM queued_operations WHERE processed_at IS NULL ORDER BY seq ASC"
            ).fetchall()
            if rows:
                conn.execute(
                    "UPDATE queued_operations SET processed_at = ? WHERE processed_at IS NULL AND seq <= ?",
                    (now_iso(), rows[-1]["seq"]),
                )
        return [OperationEnvelope.model_validate(json.loads(r["payload_json"])) for r in rows]

    def requeue(self, op_ids: Iterable[str]) -> int:
        """Put drained operations back in the pending state, keeping their original order."""
        ids = list(dict.fromkeys(op_ids))
        if not ids:
            return 0
        marks = ",".join("?" for _ in ids)
        with self._lock, self.store.transaction() as conn:
            cur = conn.execute(
                f"UPDATE queued_operations SET processed_at = NULL WHERE processed_at IS NOT NULL AND op_id IN ({marks})",
                ids,
            )
            restored = cur.rowcount
            evicted = self._evict_overflow(conn)
        if evicted:
            logger.warning("operation queue full after requeue, evicted %d oldest operation(s)", evicted)
        return restored

    def recover(self) -> int:
        """Return rows left processed by a sync that never finished to the pending state."""
        with self._lock, self.store.transaction() as conn:
            cur = conn.execute("UPDATE queued_operations SET processed_at = NULL WHERE processed_at IS NOT NULL")
            restored = cur.rowcount
            evicted = self._evict_overflow(conn)
        if restored:
            logger.info("recovered %d operation(s) from an unfinished sync", restored)
        if evicted:
            logger.warning("operation queue full after recovery, evicted %d oldest operation(s)", evicted)
        return restored

    def purge_processed(self, op_ids: Iterable[str]) -> int:
        """Delete drained operations the server has confirmed."""
        ids = list(dict.fromkeys(op_ids))
        if not ids:
            return 0
        marks = ",".join("?" for _ in ids)
        with self._lock, self.store.transaction() as conn:
            cur = conn.execute(
                f"DELETE FROM queued_operations WHERE processed_at IS NOT NULL AND op_id IN ({marks})",
                ids,
            )
        return cur.rowcount

    def pending(self) -> list[OperationEnvelope]:
        with self.store.read() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM queued_operations WHERE processed_at IS NULL ORDER BY seq ASC"
            ).fetchall()
        return [OperationEnvelope.model_validate(json.loads(r["payload_json"])) for r in rows]

    def __len__(self) -> int:
        with self.store.read() as conn:
            row = conn.execute("SELECT COUNT(*) AS c FROM queued_operations WHERE processed_at IS NULL").fetchone()
        return int(row["c"])
