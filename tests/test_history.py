from __future__ import annotations

import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from stepsync.db import init_db, transaction
from stepsync.history import ConflictHistory, ConflictNotFound
from stepsync.models import ConflictResolution, ConflictStatus, ConflictStrategy, DataConflict

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def conflict(field: str, local=1, server=2) -> DataConflict:
    return DataConflict(
        field=field,
        localValue=local,
        serverValue=server,
        lastSyncTimestamp=NOW - timedelta(days=1),
        conflictTimestamp=NOW,
    )


class ConflictHistoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "test.db")
        init_db(self.db_path)
        self.now = NOW
        self.history = ConflictHistory(self.db_path, clock=lambda: self.now)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_list_is_most_recent_first_and_paginated(self) -> None:
        ids = [self.history.record("p1", conflict(f"field{i}")) for i in range(5)]
        self.history.record("p2", conflict("field0"))

        page = self.history.list_conflicts("p1", limit=2)
        self.assertEqual([c.id for c in page], [ids[4], ids[3]])
        page2 = self.history.list_conflicts("p1", limit=2, offset=2)
        self.assertEqual([c.id for c in page2], [ids[2], ids[1]])
        self.assertEqual(len(self.history.list_conflicts("p1", limit=50)), 5)

        item = page[0]
        self.assertEqual(item.playerId, "p1")
        self.assertEqual(item.status, ConflictStatus.PENDING)
        self.assertEqual((item.localValue, item.serverValue), (1, 2))
        self.assertEqual(item.conflictTimestamp, NOW)

    def test_newer_pending_conflict_supersedes_older(self) -> None:
        first = self.history.record("p1", conflict("unknownField", local="a"))
        second = self.history.record("p1", conflict("unknownField", local="b"))

        self.assertEqual(self.history.get(first).status, ConflictStatus.REJECTED)
        self.assertEqual(self.history.get(second).status, ConflictStatus.PENDING)
        self.assertEqual(self.history.count_pending("p1"), 1)

    def test_resolved_records_and_mark_resolved(self) -> None:
        resolution = ConflictResolution(
            field="stepCount", strategy=ConflictStrategy.CLIENT_WINS, resolvedValue=7500, timestamp=NOW
        )
        done = self.history.record("p1", conflict("stepCount", 7500, 8000), resolution=resolution, transaction_id="txn_1")
        rec = self.history.get(done)
        self.assertEqual(rec.status, ConflictStatus.RESOLVED)
        self.assertEqual(rec.resolutionStrategy, ConflictStrategy.CLIENT_WINS)
        self.assertEqual(rec.resolvedValue, 7500)
        self.assertEqual(rec.transactionId, "txn_1")

        pending = self.history.record("p1", conflict("nickname", "Ann", "Bob"))
        with transaction(self.db_path) as conn:
            self.history.mark_resolved(conn, pending, ConflictStrategy.SERVER_WINS, "Bob", NOW)
        rec = self.history.get(pending)
        self.assertEqual(rec.status, ConflictStatus.RESOLVED)
        self.assertEqual(rec.resolvedValue, "Bob")
        self.assertEqual(rec.resolvedAt, NOW)
        self.assertEqual(self.history.count_pending("p1"), 0)

    def test_reject_pending_is_per_player(self) -> None:
        a = self.history.record("p1", conflict("a"))
        b = self.history.record("p1", conflict("b"))
        other = self.history.record("p2", conflict("a"))

        with transaction(self.db_path) as conn:
            self.assertEqual(self.history.reject_pending(conn, "p1"), 2)

        self.assertEqual([self.history.get(i).status for i in (a, b)], [ConflictStatus.REJECTED] * 2)
        self.assertEqual(self.history.get(other).status, ConflictStatus.PENDING)
        self.assertEqual(self.history.count_pending("p1"), 0)

    def test_cleanup_keeps_pending_and_recent(self) -> None:
        self.now = NOW - timedelta(days=10)
        old_pending = self.history.record("p1", conflict("a"))
        old_rejected = self.history.record("p1", conflict("b"))
        self.history.record("p1", conflict("b"))
        self.now = NOW

        self.assertEqual(self.history.cleanup(7, now=NOW), 1)
        self.assertEqual(self.history.get(old_pending).status, ConflictStatus.PENDING)
        with self.assertRaises(ConflictNotFound):
            self.history.get(old_rejected)


if __name__ == "__main__":
    unittest.main()
