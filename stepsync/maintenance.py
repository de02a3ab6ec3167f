from __future__ import annotations

import argparse
import logging
import sys

from .backups import BackupNotFound
from .orchestrator import SyncOrchestrator
from .settings import LOG_LEVEL, SyncLimits


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Operator tasks for the sync store.")
    parser.add_argument("--db", default=None, help="SQLite path (default: DB_PATH env or ./stepsync.db)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("cleanup", help="Delete backups and settled conflicts past the retention window.")
    rb = sub.add_parser("rollback", help="Restore a player to the state before a sync transaction.")
    rb.add_argument("transaction_id", help="Transaction id returned by the sync (txn_...)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    orch = SyncOrchestrator(args.db, limits=SyncLimits.from_env())
    orch.start()

    if args.command == "cleanup":
        removed = orch.cleanup()
        print(f"backups removed: {removed['backups']}")
        print(f"conflicts removed: {removed['conflicts']}")
        return 0

    try:
        point_id = orch.rollback_transaction(args.transaction_id)
    except BackupNotFound as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(f"rolled back: {args.transaction_id}")
    print(f"rollback point: {point_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
