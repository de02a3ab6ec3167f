from __future__ import annotations

import os
from dataclasses import dataclass


def get_env(name: str, default: str | None = None) -> str:
    v = os.getenv(name, default)
    if v is None:
        raise RuntimeError(f"Missing required env var: {name}")
    return v


def get_int_env(name: str, default: int) -> int:
    raw = get_env(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer for env var {name}: {raw}") from exc


def default_db_path() -> str:
    return get_env("DB_PATH", os.path.join(os.path.dirname(__file__), "..", "stepsync.db"))


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


@dataclass(frozen=True)
class SyncLimits:
    offline_limit_days: int = 7
    max_queue_size: int = 1000
    backup_retention_days: int = 7
    applied_operation_ledger_size: int = 1000

    # Step sanity thresholds
    max_total_steps: int = 1_000_000
    max_daily_steps_hard: int = 100_000
    max_daily_steps: int = 50_000
    suspicious_daily_steps: int = 30_000
    data_gap_hours: int = 36
    future_skew_minutes: int = 5

    @classmethod
    def from_env(cls) -> "SyncLimits":
        return cls(
            offline_limit_days=get_int_env("OFFLINE_LIMIT_DAYS", 7),
            max_queue_size=get_int_env("MAX_QUEUE_SIZE", 1000),
            backup_retention_days=get_int_env("BACKUP_RETENTION_DAYS", 7),
            applied_operation_ledger_size=get_int_env("APPLIED_OPERATION_LEDGER_SIZE", 1000),
        )
