from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol
from urllib import error, parse, request

from .db import iso, parse_iso, utcnow
from .local_store import LocalStore
from .models import (
    ConflictStrategy,
    OperationEnvelope,
    StepData,
    StepSource,
    SyncPlayerDataRequest,
    SyncPlayerDataResponse,
    SyncResult,
    ValidationIssue,
)
from .operation_queue import OperationQueue
from .settings import SyncLimits

logger = logging.getLogger(__name__)

NETWORK_ERROR = "Network error during sync"
SYNC_IN_PROGRESS = "Sync already in progress"

KEY_STEP_DATA = "stepData"
KEY_LAST_SYNC = "lastSync"


class TransportError(RuntimeError):
    """The request never produced an HTTP response (DNS, refused, timeout)."""


class ServerError(RuntimeError):
    def __init__(self, status: int, body: Any) -> None:
        super().__init__(f"HTTP_{status}: {body}")
        self.status = status
        self.body = body

    @property
    def error_code(self) -> str | None:
        if isinstance(self.body, dict) and isinstance(self.body.get("error"), dict):
            return self.body["error"].get("code")
        return None


class Transport(Protocol):
    def post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]: ...

    def get(self, path: str) -> dict[str, Any]: ...


class JsonTransport:
    """Minimal JSON-over-HTTP client carrying the X-Api-Key header."""

    def __init__(self, base_url: str, api_key: str, *, timeout: float = 20) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _send(self, req: request.Request) -> dict[str, Any]:
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                text = resp.read().decode("utf-8")
                return json.loads(text) if text else {}
        except error.HTTPError as exc:
            body_text = exc.read().decode("utf-8", errors="replace")
            try:
                body: Any = json.loads(body_text)
            except ValueError:
                body = body_text
            raise ServerError(exc.code, body) from exc
        except (error.URLError, OSError) as exc:
            raise TransportError(f"NETWORK: {exc}") from exc

    def post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=self.base_url + path,
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "X-Api-Key": self.api_key,
            },
        )
        return self._send(req)

    def get(self, path: str) -> dict[str, Any]:
        req = request.Request(url=self.base_url + path, method="GET", headers={"X-Api-Key": self.api_key})
        return self._send(req)


class OfflineSyncManager:
    """Device side of the sync: records progress offline and reconciles on demand."""

    def __init__(
        self,
        store: LocalStore,
        transport: Transport,
        player_id: str,
        *,
        queue: OperationQueue | None = None,
        limits: SyncLimits | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.transport = transport
        self.player_id = player_id
        self.limits = limits or SyncLimits()
        self.queue = queue or OperationQueue(store, capacity=self.limits.max_queue_size)
        self._clock = clock
        self._sync_lock = threading.Lock()

    # --- local state ------------------------------------------------------

    @property
    def last_sync(self) -> datetime | None:
        return parse_iso(self.store.get(KEY_LAST_SYNC))

    def step_data(self) -> StepData:
        raw = self.store.get(KEY_STEP_DATA)
        if raw is None:
            return StepData(totalSteps=0, dailySteps=0, lastUpdated=self._clock())
        return StepData.model_validate(raw)

    def queue_operation(self, type_: str, data: dict[str, Any]) -> OperationEnvelope:
        op = OperationEnvelope(
            id=f"op_{uuid.uuid4().hex}",
            type=type_,
            data=data,
            timestamp=self._clock(),
            playerId=self.player_id,
        )
        self.queue.enqueue(op)
        return op

    def record_steps(
        self, total_steps: int, daily_steps: int, *, source: StepSource = StepSource.TRACKER
    ) -> OperationEnvelope:
        now = self._clock()
        step_data = StepData(totalSteps=total_steps, dailySteps=daily_steps, lastUpdated=now, source=source)
        self.store.set(KEY_STEP_DATA, step_data.model_dump(mode="json"))
        return self.queue_operation(
            "step_update", {"totalSteps": total_steps, "dailySteps": daily_steps, "lastUpdated": iso(now)}
        )

    # --- server calls -----------------------------------------------------

    def refresh_status(self) -> dict[str, Any]:
        """Adopt the server's committed lastSync; used on first run and after a stale-window refusal."""
        status = self.transport.get(f"/sync/status/{parse.quote(self.player_id, safe='')}")
        self.store.set(KEY_LAST_SYNC, status["lastSync"])
        return status

    def resolve_conflict(
        self, conflict_id: str, strategy: ConflictStrategy, resolved_value: Any = None
    ) -> dict[str, Any]:
        return self.transport.post(
            "/sync/resolve-conflict",
            {"conflictId": conflict_id, "strategy": strategy.value, "resolvedValue": resolved_value},
        )

    def sync(self) -> SyncResult:
        if not self._sync_lock.acquire(blocking=False):
            return self._failed([SYNC_IN_PROGRESS])
        try:
            return self._sync()
        finally:
            self._sync_lock.release()

    def _failed(self, errors: list[str], **extra: Any) -> SyncResult:
        return SyncResult(success=False, errors=errors, lastSyncDate=self.last_sync or self._clock(), **extra)

    def _sync(self) -> SyncResult:
        now = self._clock()
        if self.last_sync is None:
            try:
                self.refresh_status()
            except TransportError:
                return self._failed([NETWORK_ERROR])
            except ServerError as exc:
                return self._server_failure(exc)

        self.queue.recover()
        ops = self.queue.drain()
        last_sync = self.last_sync or now
        if now - last_sync > timedelta(days=self.limits.offline_limit_days):
            if ops:
                logger.warning(
                    "dropping %d queued operation(s): last sync %s is beyond the %d-day window",
                    len(ops),
                    iso(last_sync),
                    self.limits.offline_limit_days,
                )
                self.queue.purge_processed(op.id for op in ops)
            ops = []
            # Start a fresh window; the server still checks it against its own record
            last_sync = now

        req = SyncPlayerDataRequest(
            playerId=self.player_id,
            stepData=self.step_data(),
            operations=ops,
            lastSync=last_sync,
        )
        op_ids = [op.id for op in ops]

        try:
            return self._send_sync(req, op_ids)
        except BaseException:
            self.queue.requeue(op_ids)
            raise

    def _send_sync(self, req: SyncPlayerDataRequest, op_ids: list[str]) -> SyncResult:
        try:
            body = self.transport.post("/sync/player-data", req.model_dump(mode="json", exclude_none=True))
        except TransportError as exc:
            logger.warning("sync failed on transport: %s", exc)
            self.queue.requeue(op_ids)
            return self._failed([NETWORK_ERROR])
        except ServerError as exc:
            self.queue.requeue(op_ids)
            return self._server_failure(exc)

        resp = SyncPlayerDataResponse.model_validate(body)
        result = SyncResult(**resp.model_dump(exclude={"timestamp"}))
        if not result.success:
            self.queue.requeue(op_ids)
            return result

        confirmed = {r.operationId for r in result.operations if r.success}
        failed = [op_id for op_id in op_ids if op_id not in confirmed]
        if failed:
            logger.warning("%d operation(s) not confirmed by the server were re-queued", len(failed))
        self.queue.requeue(failed)
        self.queue.purge_processed(op_id for op_id in op_ids if op_id in confirmed)
        self.store.set(KEY_LAST_SYNC, iso(result.lastSyncDate))
        return result

    def _server_failure(self, exc: ServerError) -> SyncResult:
        code = exc.error_code
        if code is None:
            return self._failed([str(exc)])
        error_body = exc.body["error"]
        issues = [
            ValidationIssue.model_validate(d)
            for d in error_body.get("details") or []
            if isinstance(d, dict) and "type" in d
        ]
        if code == "STALE_SYNC_WINDOW":
            try:
                self.refresh_status()
            except (TransportError, ServerError):
                logger.warning("could not refresh sync status after stale window refusal", exc_info=True)
        return self._failed([error_body.get("message") or code], validationErrors=issues)
