from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable

from .backups import BackupNotFound, BackupStore
from .db import db, init_db, transaction, utcnow
from .history import ConflictHistory, ConflictNotFound
from .locks import SyncLockRegistry
from .models import (
    ConflictRecord,
    ConflictResolution,
    ConflictStatus,
    ConflictStrategy,
    DataConflict,
    Resources,
    StepData,
    SyncPlayerDataRequest,
    SyncResult,
    SyncStatusResponse,
    ValidationIssue,
)
from .operations import apply_operations
from .players import PlayerRecord, credit_steps, get_player, load_player, save_player
from .resolver import ConflictResolver, default_policies
from .settings import SyncLimits, default_db_path
from .validator import validate

logger = logging.getLogger(__name__)

STALE_SYNC_WINDOW = "STALE_SYNC_WINDOW"

SYNC_IN_PROGRESS = "Sync already in progress"
PLAYER_NOT_FOUND = "Player not found"
CONFLICTS_BLOCKED = "Conflicts detected that require manual resolution"


class SyncBlocked(Exception):
    def __init__(self, conflicts: list[DataConflict]) -> None:
        super().__init__(CONFLICTS_BLOCKED)
        self.conflicts = conflicts


class ConflictAlreadySettled(ValueError):
    pass


class SyncOrchestrator:
    """Server-side reconciliation of offline player data.

    One sync is one unit of work: validate, back up, detect and resolve
    conflicts, apply operations and step data, then commit. Anything that
    goes wrong after the backup restores it.
    """

    def __init__(
        self,
        db_path: str | None = None,
        *,
        limits: SyncLimits | None = None,
        resolver: ConflictResolver | None = None,
        backups: BackupStore | None = None,
        history: ConflictHistory | None = None,
        locks: SyncLockRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db_path = db_path or default_db_path()
        self.limits = limits or SyncLimits()
        self._clock = clock
        self.resolver = resolver or ConflictResolver(
            default_policies(timedelta(days=self.limits.offline_limit_days)), clock=clock
        )
        self.backups = backups or BackupStore(self.db_path, clock=clock)
        self.history = history or ConflictHistory(self.db_path, clock=clock)
        self.locks = locks or SyncLockRegistry()

    def start(self) -> None:
        init_db(self.db_path)

    # --- sync -------------------------------------------------------------

    def sync_player_data(self, request: SyncPlayerDataRequest) -> SyncResult:
        now = self._clock()
        if not self.locks.try_acquire(request.playerId):
            return self._failed(request, [SYNC_IN_PROGRESS])
        try:
            return self._sync(request, now)
        finally:
            self.locks.release(request.playerId)

    def _failed(self, request: SyncPlayerDataRequest, errors: list[str], **extra: Any) -> SyncResult:
        return SyncResult(success=False, errors=errors, lastSyncDate=request.lastSync, **extra)

    def _sync(self, request: SyncPlayerDataRequest, now: datetime) -> SyncResult:
        validation = validate(request, now=now, limits=self.limits)
        warnings = validation.warnings
        if not validation.isValid:
            return self._failed(
                request,
                [e.message for e in validation.errors],
                warnings=warnings,
                validationErrors=validation.errors,
            )

        try:
            with db(self.db_path) as conn:
                current = get_player(conn, request.playerId)
            if current is None:
                return self._failed(request, [PLAYER_NOT_FOUND], warnings=warnings)
            if request.lastSync < current.last_sync:
                issue = ValidationIssue(
                    type=STALE_SYNC_WINDOW,
                    message="Sync window overlaps an already committed sync",
                    data={"lastSync": request.lastSync.isoformat(), "serverLastSync": current.last_sync.isoformat()},
                )
                return self._failed(request, [issue.message], warnings=warnings, validationErrors=[issue])
            txn_id = self.backups.backup(request.playerId)
        except sqlite3.Error as exc:
            # Nothing was written yet, so there is nothing to restore
            logger.exception("sync for player %s failed before backup", request.playerId)
            return self._failed(request, [f"Sync failed: {exc}"], warnings=warnings)

        try:
            with transaction(self.db_path) as conn:
                player = load_player(conn, request.playerId)
                conflicts = self.detect_conflicts(player, request, now)
                resolutions = [self.resolver.resolve(c) for c in conflicts]
                blocked = [c for c, r in zip(conflicts, resolutions) if not self.resolver.is_automatic(r)]
                if blocked:
                    raise SyncBlocked(blocked)

                # The client no longer disputes anything still pending
                superseded = self.history.reject_pending(conn, player.id)
                for conflict, resolution in zip(conflicts, resolutions):
                    self._apply_resolution(player, resolution)
                    self.history.append(conn, player.id, conflict, resolution=resolution, transaction_id=txn_id)

                results, earned = apply_operations(
                    conn, player, request.operations, ledger_size=self.limits.applied_operation_ledger_size
                )
                credited = self._apply_step_data(player, request.stepData)
                earned = Resources(
                    cells=earned.cells + credited.cells,
                    experiencePoints=earned.experiencePoints + credited.experiencePoints,
                )

                # Strictly increasing per player even if the clock stalls
                player.last_sync = max(now, player.last_sync + timedelta(microseconds=1))
                player.updated_at = now
                save_player(conn, player)
        except SyncBlocked as exc:
            self._restore(txn_id)
            for conflict in exc.conflicts:
                self.history.record(request.playerId, conflict, transaction_id=txn_id)
            logger.info(
                "sync blocked for player %s: %s", request.playerId, ", ".join(c.field for c in exc.conflicts)
            )
            return self._failed(
                request, [CONFLICTS_BLOCKED], conflicts=exc.conflicts, transactionId=txn_id, warnings=warnings
            )
        except Exception as exc:
            logger.exception("sync %s failed for player %s, rolling back", txn_id, request.playerId)
            self._restore(txn_id)
            return self._failed(request, [f"Sync failed: {exc}"], transactionId=txn_id, warnings=warnings)

        logger.info(
            "sync %s committed for player %s: %d operation(s), %d conflict(s) auto-resolved, %d pending rejected",
            txn_id,
            player.id,
            len(results),
            len(conflicts),
            superseded,
        )
        try:
            self.cleanup(now)
        except sqlite3.Error:
            logger.warning("post-sync cleanup failed", exc_info=True)

        elapsed = (now - request.lastSync).total_seconds()
        return SyncResult(
            success=True,
            syncedDays=max(0, math.ceil(elapsed / 86400)),
            lastSyncDate=player.last_sync,
            transactionId=txn_id,
            earnedResources=earned,
            operations=results,
            warnings=warnings,
        )

    def _restore(self, txn_id: str) -> None:
        try:
            self.backups.restore(txn_id)
        except (sqlite3.Error, BackupNotFound):
            logger.exception("restoring backup %s failed", txn_id)

    def detect_conflicts(
        self, player: PlayerRecord, request: SyncPlayerDataRequest, now: datetime
    ) -> list[DataConflict]:
        conflicts: list[DataConflict] = []

        # A lower client total means its view is behind; higher is offline progress
        if request.stepData.totalSteps < player.total_steps:
            conflicts.append(
                DataConflict(
                    field="stepCount",
                    localValue=request.stepData.totalSteps,
                    serverValue=player.total_steps,
                    lastSyncTimestamp=request.lastSync,
                    conflictTimestamp=request.stepData.lastUpdated,
                )
            )

        if request.resources is not None and request.resources != player.resources:
            conflicts.append(
                DataConflict(
                    field="resources",
                    localValue=request.resources.model_dump(),
                    serverValue=player.resources.model_dump(),
                    lastSyncTimestamp=request.lastSync,
                    conflictTimestamp=now,
                )
            )

        for key, value in request.state.items():
            server_value = player.state.get(key)
            if value != server_value:
                conflicts.append(
                    DataConflict(
                        field=key,
                        localValue=value,
                        serverValue=server_value,
                        lastSyncTimestamp=request.lastSync,
                        conflictTimestamp=now,
                    )
                )
        return conflicts

    def _apply_resolution(self, player: PlayerRecord, resolution: ConflictResolution) -> None:
        value = resolution.resolvedValue
        if resolution.field == "stepCount":
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"stepCount must be a non-negative integer, got {value!r}")
            # Credited high-water mark is kept so a later recount is not paid twice
            player.total_steps = value
        elif resolution.field == "resources":
            resources = Resources.model_validate(value)
            player.cells = resources.cells
            player.experience_points = resources.experiencePoints
        else:
            player.state[resolution.field] = value

    def _apply_step_data(self, player: PlayerRecord, step_data: StepData) -> Resources:
        if step_data.totalSteps < player.total_steps:
            return Resources()
        earned = credit_steps(player, step_data.totalSteps)
        player.daily_steps = step_data.dailySteps
        player.step_updated_at = step_data.lastUpdated
        player.step_source = step_data.source.value
        player.step_validated = step_data.validated
        return earned

    # --- manual resolution & queries ---------------------------------------

    def resolve_conflict(
        self, conflict_id: str, strategy: ConflictStrategy, resolved_value: Any = None
    ) -> dict[str, Any]:
        """Apply an explicitly chosen resolution to a pending conflict.

        Returns the player's state after the change.
        """
        record = self.history.get(conflict_id)
        if record.status != ConflictStatus.PENDING:
            raise ConflictAlreadySettled(f"Conflict {conflict_id} is already {record.status.value}")
        value = self.resolver.apply_strategy(record, strategy, resolved_value)
        now = self._clock()
        resolution = ConflictResolution(field=record.field, strategy=strategy, resolvedValue=value, timestamp=now)

        with self.locks.hold(record.playerId):
            with transaction(self.db_path) as conn:
                row = conn.execute("SELECT status FROM sync_conflicts WHERE id = ?", (conflict_id,)).fetchone()
                if row is None:
                    raise ConflictNotFound(f"Conflict not found: {conflict_id}")
                if row["status"] != ConflictStatus.PENDING.value:
                    raise ConflictAlreadySettled(f"Conflict {conflict_id} is already {row['status']}")
                player = load_player(conn, record.playerId)
                self._apply_resolution(player, resolution)
                player.updated_at = now
                save_player(conn, player)
                self.history.mark_resolved(conn, conflict_id, strategy, value, now)

        logger.info("conflict %s on %s resolved with %s", conflict_id, record.field, strategy.value)
        return player.to_public()

    def get_sync_status(self, player_id: str) -> SyncStatusResponse:
        with db(self.db_path) as conn:
            player = load_player(conn, player_id)
        return SyncStatusResponse(
            playerId=player.id,
            lastSync=player.last_sync,
            pendingConflicts=self.history.count_pending(player_id),
            syncInProgress=self.locks.is_locked(player_id),
        )

    def rollback_transaction(self, transaction_id: str) -> str:
        """Operator rollback of a committed sync; returns the rollback point id."""
        backup = self.backups.get(transaction_id)
        if backup is None:
            raise BackupNotFound(f"Backup not found for transaction: {transaction_id}")
        with self.locks.hold(backup.playerId):
            return self.backups.rollback_transaction(transaction_id)

    def get_conflict_history(self, player_id: str, limit: int = 50, offset: int = 0) -> list[ConflictRecord]:
        return self.history.list_conflicts(player_id, limit=limit, offset=offset)

    def cleanup(self, now: datetime | None = None) -> dict[str, int]:
        now = now or self._clock()
        days = self.limits.backup_retention_days
        removed = {
            "backups": self.backups.cleanup(days, now),
            "conflicts": self.history.cleanup(days, now),
        }
        if any(removed.values()):
            logger.info("retention cleanup removed %(backups)d backup(s), %(conflicts)d conflict(s)", removed)
        return removed
