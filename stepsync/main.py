from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .backups import BackupNotFound
from .db import utcnow
from .history import ConflictNotFound
from .locks import SyncInProgress
from .models import (
    ConflictRecord,
    ResolveConflictRequest,
    SyncPlayerDataRequest,
    SyncPlayerDataResponse,
    SyncStatusResponse,
)
from .orchestrator import ConflictAlreadySettled, SyncOrchestrator
from .players import PlayerNotFound
from .security import require_api_key
from .settings import SyncLimits
from .validator import VALIDATION_ERROR

logger = logging.getLogger(__name__)


def _error_body(code: str, message: str, details: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


def create_app(
    db_path: str | None = None,
    limits: SyncLimits | None = None,
    orchestrator: SyncOrchestrator | None = None,
) -> FastAPI:
    app = FastAPI(title="Stepsync Offline Reconciliation", version=__version__)
    app.state.orchestrator = orchestrator or SyncOrchestrator(db_path, limits=limits or SyncLimits.from_env())

    def get_orchestrator(request: Request) -> SyncOrchestrator:
        return request.app.state.orchestrator

    @app.on_event("startup")
    def _startup() -> None:
        app.state.orchestrator.start()
        logger.info("sync store ready at %s", app.state.orchestrator.db_path)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=_error_body(VALIDATION_ERROR, "Invalid request", jsonable_errors(exc)),
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "version": __version__}

    @app.post("/sync/player-data", response_model=SyncPlayerDataResponse)
    def sync_player_data(
        body: SyncPlayerDataRequest,
        _: None = Depends(require_api_key),
        orch: SyncOrchestrator = Depends(get_orchestrator),
    ) -> Any:
        result = orch.sync_player_data(body)
        if result.validationErrors:
            first = result.validationErrors[0]
            return JSONResponse(
                status_code=400,
                content=_error_body(
                    first.type,
                    first.message,
                    [e.model_dump(mode="json") for e in result.validationErrors],
                ),
            )
        return SyncPlayerDataResponse(
            timestamp=utcnow(),
            **result.model_dump(exclude={"validationErrors"}),
        )

    @app.post("/sync/resolve-conflict")
    def resolve_conflict(
        body: ResolveConflictRequest,
        _: None = Depends(require_api_key),
        orch: SyncOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        try:
            data = orch.resolve_conflict(body.conflictId, body.strategy, body.resolvedValue)
        except (ConflictNotFound, PlayerNotFound) as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (ConflictAlreadySettled, SyncInProgress) as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": True, "data": data}

    @app.get("/sync/status/{player_id}", response_model=SyncStatusResponse)
    def sync_status(
        player_id: str,
        _: None = Depends(require_api_key),
        orch: SyncOrchestrator = Depends(get_orchestrator),
    ) -> SyncStatusResponse:
        try:
            return orch.get_sync_status(player_id)
        except PlayerNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/sync/rollback/{transaction_id}")
    def rollback(
        transaction_id: str,
        _: None = Depends(require_api_key),
        orch: SyncOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        try:
            point_id = orch.rollback_transaction(transaction_id)
        except BackupNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except SyncInProgress as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"success": True, "transactionId": transaction_id, "rollbackPointId": point_id}

    @app.get("/sync/conflicts/{player_id}", response_model=list[ConflictRecord])
    def conflict_history(
        player_id: str,
        limit: int = Query(default=50, ge=1, le=200),
        offset: int = Query(default=0, ge=0),
        _: None = Depends(require_api_key),
        orch: SyncOrchestrator = Depends(get_orchestrator),
    ) -> list[ConflictRecord]:
        return orch.get_conflict_history(player_id, limit=limit, offset=offset)

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


app = create_app()
