from __future__ import annotations

import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from stepsync.backups import BackupNotFound, BackupStore
from stepsync.db import db, init_db, transaction
from stepsync.models import BackupKind, OperationEnvelope
from stepsync.operations import applied_operation_ids, apply_operations
from stepsync.players import create_player, load_player, save_player

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class BackupStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "test.db")
        init_db(self.db_path)
        with db(self.db_path) as conn:
            create_player(conn, "p1", total_steps=3000, cells=3, last_sync=NOW - timedelta(days=1))
            create_player(conn, "p2", last_sync=NOW - timedelta(days=1))
        self.clock = Clock(NOW)
        self.store = BackupStore(self.db_path, clock=self.clock)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def mutate(self) -> None:
        op = OperationEnvelope(
            id="s1",
            type="step_update",
            data={"totalSteps": 5000, "dailySteps": 2000},
            timestamp=NOW,
            playerId="p1",
        )
        with transaction(self.db_path) as conn:
            player = load_player(conn, "p1")
            apply_operations(conn, player, [op], ledger_size=1000)
            player.last_sync = NOW
            save_player(conn, player)

    def load(self, player_id: str = "p1"):
        with db(self.db_path) as conn:
            return load_player(conn, player_id), applied_operation_ids(conn, player_id)

    def test_restore_puts_back_exact_state(self) -> None:
        before = self.load()
        backup_id = self.store.backup("p1")
        self.assertTrue(backup_id.startswith("txn_"))

        self.mutate()
        changed, ledger = self.load()
        self.assertEqual((changed.total_steps, changed.cells), (5000, 5))
        self.assertEqual(ledger, ["s1"])

        restored = self.store.restore(backup_id)
        self.assertEqual(restored.kind, BackupKind.PRE_SYNC)
        self.assertEqual(self.load(), before)

    def test_rollback_keeps_a_rollback_point(self) -> None:
        txn = self.store.backup("p1")
        self.mutate()
        point = self.store.rollback_transaction(txn)

        player, _ = self.load()
        self.assertEqual(player.total_steps, 3000)

        saved = self.store.get(point)
        self.assertEqual(saved.kind, BackupKind.ROLLBACK_POINT)
        self.assertEqual(saved.snapshot["player"]["total_steps"], 5000)
        self.assertEqual([r["operation_id"] for r in saved.snapshot["appliedOperations"]], ["s1"])

        # Rolling back to the rollback point undoes the rollback
        self.store.rollback_transaction(point)
        player, ledger = self.load()
        self.assertEqual(player.total_steps, 5000)
        self.assertEqual(ledger, ["s1"])

    def test_unknown_backup(self) -> None:
        self.assertIsNone(self.store.get("txn_missing"))
        with self.assertRaises(BackupNotFound):
            self.store.restore("txn_missing")
        with self.assertRaises(BackupNotFound):
            self.store.rollback_transaction("txn_missing")

    def test_cleanup_keeps_latest_backup_per_player(self) -> None:
        self.clock.now = NOW - timedelta(days=20)
        old_p1 = self.store.backup("p1")
        only_p2 = self.store.backup("p2")
        self.clock.now = NOW - timedelta(days=10)
        latest_p1 = self.store.backup("p1")
        self.clock.now = NOW
        recent_p2 = self.store.backup("p2")

        removed = self.store.cleanup(7, now=NOW)

        self.assertEqual(removed, 2)
        self.assertIsNone(self.store.get(old_p1))
        self.assertIsNone(self.store.get(only_p2))
        self.assertIsNotNone(self.store.get(latest_p1))
        self.assertIsNotNone(self.store.get(recent_p2))


if __name__ == "__main__":
    unittest.main()
