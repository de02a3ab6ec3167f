from __future__ import annotations

import os
import tempfile
import threading
import unittest
from datetime import datetime, timezone

from stepsync.local_store import LocalStore
from stepsync.models import OperationEnvelope
from stepsync.operation_queue import OperationQueue

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def env(op_id: str) -> OperationEnvelope:
    return OperationEnvelope(id=op_id, type="mode_switch", data={"mode": "training"}, timestamp=NOW, playerId="p1")


class OperationQueueTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LocalStore(os.path.join(self._tmp.name, "device.db"))
        self.store.init()
        self.queue = OperationQueue(self.store)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_drain_is_fifo_and_clears(self) -> None:
        for op_id in ("a", "b", "c"):
            self.queue.enqueue(env(op_id))
        self.assertEqual(len(self.queue), 3)

        drained = self.queue.drain()
        self.assertEqual([op.id for op in drained], ["a", "b", "c"])
        self.assertEqual(drained[0].data, {"mode": "training"})
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.queue.drain(), [])

    def test_capacity_evicts_oldest(self) -> None:
        for i in range(1001):
            self.queue.enqueue(env(f"op-{i}"))
        self.assertEqual(len(self.queue), 1000)
        pending = self.queue.pending()
        self.assertEqual(pending[0].id, "op-1")
        self.assertEqual(pending[-1].id, "op-1000")

    def test_requeue_keeps_original_order(self) -> None:
        for op_id in ("a", "b", "c"):
            self.queue.enqueue(env(op_id))
        self.queue.drain()
        self.queue.enqueue(env("d"))

        self.assertEqual(self.queue.requeue(["c", "a"]), 2)
        self.assertEqual([op.id for op in self.queue.drain()], ["a", "c", "d"])

    def test_requeue_respects_capacity(self) -> None:
        queue = OperationQueue(self.store, capacity=2)
        for op_id in ("a", "b"):
            queue.enqueue(env(op_id))
        queue.drain()
        queue.enqueue(env("c"))
        queue.enqueue(env("d"))
        queue.requeue(["a", "b"])
        self.assertEqual([op.id for op in queue.pending()], ["c", "d"])

    def test_purge_processed_only_confirmed(self) -> None:
        self.queue.enqueue(env("a"))
        self.queue.enqueue(env("c"))
        self.queue.drain()
        self.queue.enqueue(env("b"))
        self.assertEqual(self.queue.purge_processed(["a", "b"]), 1)
        self.assertEqual(self.queue.purge_processed([]), 0)
        self.assertEqual(self.queue.requeue(["a"]), 0)
        self.assertEqual([op.id for op in self.queue.pending()], ["b"])
        self.assertEqual(self.queue.requeue(["c"]), 1)

    def test_recover_after_unfinished_sync(self) -> None:
        for op_id in ("a", "b"):
            self.queue.enqueue(env(op_id))
        self.queue.drain()
        self.queue.enqueue(env("c"))

        reopened = OperationQueue(LocalStore(self.store.path))
        self.assertEqual(reopened.recover(), 2)
        self.assertEqual([op.id for op in reopened.drain()], ["a", "b", "c"])
        self.assertEqual(reopened.recover(), 3)
        self.assertEqual(len(reopened), 3)

    def test_survives_reopen(self) -> None:
        self.queue.enqueue(env("a"))
        reopened = OperationQueue(LocalStore(self.store.path))
        self.assertEqual([op.id for op in reopened.drain()], ["a"])

    def test_concurrent_enqueue_and_drain_lose_nothing(self) -> None:
        drained: list[str] = []

        def producer(prefix: str) -> None:
            for i in range(25):
                self.queue.enqueue(env(f"{prefix}-{i}"))

        threads = [threading.Thread(target=producer, args=(p,)) for p in ("w", "x", "y", "z")]
        for t in threads:
            t.start()
        while any(t.is_alive() for t in threads):
            drained.extend(op.id for op in self.queue.drain())
        for t in threads:
            t.join()
        drained.extend(op.id for op in self.queue.drain())

        self.assertEqual(len(drained), 100)
        self.assertEqual(len(set(drained)), 100)


if __name__ == "__main__":
    unittest.main()
