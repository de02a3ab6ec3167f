from __future__ import annotations

import logging
import sqlite3
from typing import Any, Callable

from pydantic import TypeAdapter, ValidationError

from .db import dumps_payload, iso, next_seq
from .models import (
    OPERATION_TYPES,
    CellInspectOperation,
    ModeSwitchOperation,
    OperationEnvelope,
    OperationResult,
    Resources,
    StepUpdateOperation,
    SteplingFusionOperation,
    SyncOperation,
)
from .players import PlayerRecord, credit_steps

logger = logging.getLogger(__name__)

_OPERATION_ADAPTER: TypeAdapter[SyncOperation] = TypeAdapter(SyncOperation)


class OperationError(Exception):
    """An individual operation could not be applied; the sync carries on."""


class OperationDecodeError(OperationError, ValueError):
    pass


def decode_operation(envelope: OperationEnvelope) -> SyncOperation:
    if envelope.type not in OPERATION_TYPES:
        raise OperationDecodeError(f"Unknown operation type: {envelope.type}")
    try:
        return _OPERATION_ADAPTER.validate_python(envelope.model_dump())
    except ValidationError as exc:
        raise OperationDecodeError(f"Invalid {envelope.type} payload: {exc.error_count()} error(s)") from exc


# --- handlers ---------------------------------------------------------------


def _apply_step_update(player: PlayerRecord, op: StepUpdateOperation, earned: Resources) -> None:
    data = op.data
    if data.totalSteps < player.total_steps:
        raise OperationError(f"Step total regressed from {player.total_steps} to {data.totalSteps}")
    credited = credit_steps(player, data.totalSteps)
    earned.cells += credited.cells
    earned.experiencePoints += credited.experiencePoints
    player.daily_steps = data.dailySteps
    player.step_updated_at = data.lastUpdated or op.timestamp


def _apply_mode_switch(player: PlayerRecord, op: ModeSwitchOperation, earned: Resources) -> None:
    player.current_mode = op.data.mode.value


def _apply_cell_inspect(player: PlayerRecord, op: CellInspectOperation, earned: Resources) -> None:
    if player.cells < op.data.cells:
        raise OperationError(f"Not enough cells: have {player.cells}, need {op.data.cells}")
    player.cells -= op.data.cells


def _apply_stepling_fusion(player: PlayerRecord, op: SteplingFusionOperation, earned: Resources) -> None:
    first, second = op.data.steplingIds
    if first == second:
        raise OperationError("Fusion requires two distinct steplings")
    # Fusion outcome is owned by the game service; the ledger entry is its hand-off.


Handler = Callable[[PlayerRecord, SyncOperation, Resources], None]

HANDLERS: dict[type, Handler] = {
    StepUpdateOperation: _apply_step_update,  # type: ignore[dict-item]
    ModeSwitchOperation: _apply_mode_switch,  # type: ignore[dict-item]
    CellInspectOperation: _apply_cell_inspect,  # type: ignore[dict-item]
    SteplingFusionOperation: _apply_stepling_fusion,  # type: ignore[dict-item]
}


# --- idempotency ledger -----------------------------------------------------


def is_applied(conn: sqlite3.Connection, player_id: str, operation_id: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM applied_operations WHERE player_id = ? AND operation_id = ?",
        (player_id, operation_id),
    ).fetchone()
    return row is not None


def applied_operation_ids(conn: sqlite3.Connection, player_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT operation_id FROM applied_operations WHERE player_id = ? ORDER BY seq ASC",
        (player_id,),
    ).fetchall()
    return [r["operation_id"] for r in rows]


def ledger_rows(conn: sqlite3.Connection, player_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT operation_id, type, payload_json, applied_at, seq
        FROM applied_operations WHERE player_id = ? ORDER BY seq ASC
        """,
        (player_id,),
    ).fetchall()
    return [dict(r) for r in rows]


def replace_ledger(conn: sqlite3.Connection, player_id: str, rows: list[dict[str, Any]]) -> None:
    conn.execute("DELETE FROM applied_operations WHERE player_id = ?", (player_id,))
    conn.executemany(
        """
        INSERT INTO applied_operations(player_id, operation_id, type, payload_json, applied_at, seq)
        VALUES(?,?,?,?,?,?)
        """,
        [(player_id, r["operation_id"], r["type"], r["payload_json"], r["applied_at"], r["seq"]) for r in rows],
    )


def record_applied(
    conn: sqlite3.Connection,
    player_id: str,
    op: SyncOperation,
    ledger_size: int,
) -> None:
    seq = next_seq(conn, "applied_operations", "WHERE player_id = ?", (player_id,))
    conn.execute(
        """
        INSERT INTO applied_operations(player_id, operation_id, type, payload_json, applied_at, seq)
        VALUES(?,?,?,?,?,?)
        """,
        (player_id, op.id, op.type, dumps_payload(op.data.model_dump(mode="json")), iso(op.timestamp), seq),
    )
    conn.execute(
        "DELETE FROM applied_operations WHERE player_id = ? AND seq <= ?",
        (player_id, seq - ledger_size),
    )


def apply_operations(
    conn: sqlite3.Connection,
    player: PlayerRecord,
    envelopes: list[OperationEnvelope],
    *,
    ledger_size: int,
) -> tuple[list[OperationResult], Resources]:
    """Apply operations in submission order.

    Operation failures are reported per operation and leave the player as it
    was before that operation. Storage errors propagate to the caller.
    """
    results: list[OperationResult] = []
    earned = Resources()
    seen: set[str] = set()

    for env in envelopes:
        if env.id in seen or is_applied(conn, player.id, env.id):
            results.append(OperationResult(operationId=env.id, success=True, duplicate=True))
            continue

        snapshot = player.to_snapshot()
        before = earned.model_copy()
        try:
            op = decode_operation(env)
            HANDLERS[type(op)](player, op, earned)
        except OperationError as exc:
            restored = PlayerRecord.from_snapshot(snapshot)
            player.__dict__.update(restored.__dict__)
            earned = before
            logger.warning("operation %s (%s) failed for player %s: %s", env.id, env.type, player.id, exc)
            results.append(OperationResult(operationId=env.id, success=False, error=str(exc)))
            continue

        record_applied(conn, player.id, op, ledger_size)
        seen.add(env.id)
        results.append(OperationResult(operationId=env.id, success=True))

    return results, earned
