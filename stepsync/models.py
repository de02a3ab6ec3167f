from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, Field


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# Naive timestamps from clients are taken as UTC
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class GameMode(str, Enum):
    DISCOVERY = "discovery"
    TRAINING = "training"


class StepSource(str, Enum):
    TRACKER = "tracker"
    MANUAL = "manual"


class ConflictStrategy(str, Enum):
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MERGE_VALUES = "merge_values"
    MANUAL_REVIEW = "manual_review"


class ConflictStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class BackupKind(str, Enum):
    PRE_SYNC = "pre_sync"
    ROLLBACK_POINT = "rollback_point"


class StepData(BaseModel):
    # Bounds are checked by the validator so negative values surface as NEGATIVE_STEPS
    totalSteps: int
    dailySteps: int
    lastUpdated: UtcDatetime
    source: StepSource = StepSource.TRACKER
    validated: bool = False


class Resources(BaseModel):
    cells: int = 0
    experiencePoints: int = 0


# --- operations -------------------------------------------------------------


class StepUpdateData(BaseModel):
    totalSteps: int = Field(ge=0)
    dailySteps: int = Field(ge=0)
    lastUpdated: Optional[UtcDatetime] = None


class ModeSwitchData(BaseModel):
    mode: GameMode


class CellInspectData(BaseModel):
    cells: int = Field(default=1, ge=1)
    speciesId: Optional[str] = None


class SteplingFusionData(BaseModel):
    steplingIds: list[str] = Field(min_length=2, max_length=2)
    resultSpeciesId: Optional[str] = None


class OperationEnvelope(BaseModel):
    """Operation as it travels on the wire; `data` is decoded per `type` later."""

    id: str = Field(min_length=1)
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: UtcDatetime
    playerId: str


class _OperationBase(BaseModel):
    id: str
    timestamp: UtcDatetime
    playerId: str


class StepUpdateOperation(_OperationBase):
    type: Literal["step_update"] = "step_update"
    data: StepUpdateData


class ModeSwitchOperation(_OperationBase):
    type: Literal["mode_switch"] = "mode_switch"
    data: ModeSwitchData


class CellInspectOperation(_OperationBase):
    type: Literal["cell_inspect"] = "cell_inspect"
    data: CellInspectData


class SteplingFusionOperation(_OperationBase):
    type: Literal["stepling_fusion"] = "stepling_fusion"
    data: SteplingFusionData


SyncOperation = Annotated[
    Union[StepUpdateOperation, ModeSwitchOperation, CellInspectOperation, SteplingFusionOperation],
    Field(discriminator="type"),
]

OPERATION_MODELS: dict[str, type[_OperationBase]] = {
    "step_update": StepUpdateOperation,
    "mode_switch": ModeSwitchOperation,
    "cell_inspect": CellInspectOperation,
    "stepling_fusion": SteplingFusionOperation,
}
OPERATION_TYPES = frozenset(OPERATION_MODELS)


class OperationResult(BaseModel):
    operationId: str
    success: bool
    duplicate: bool = False
    error: Optional[str] = None


# --- conflicts --------------------------------------------------------------


class DataConflict(BaseModel):
    field: str
    localValue: Any = None
    serverValue: Any = None
    lastSyncTimestamp: UtcDatetime
    conflictTimestamp: UtcDatetime


class ConflictResolution(BaseModel):
    field: str
    strategy: ConflictStrategy
    resolvedValue: Any = None
    timestamp: UtcDatetime


class ConflictRecord(DataConflict):
    id: str
    playerId: str
    status: ConflictStatus
    resolutionStrategy: Optional[ConflictStrategy] = None
    resolvedValue: Any = None
    resolvedAt: Optional[UtcDatetime] = None
    transactionId: Optional[str] = None


# --- validation -------------------------------------------------------------


class ValidationIssue(BaseModel):
    type: str
    message: str
    data: Optional[dict[str, Any]] = None


class ValidationResult(BaseModel):
    isValid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)


# --- sync request / result --------------------------------------------------


class SyncPlayerDataRequest(BaseModel):
    playerId: str = Field(min_length=1)
    stepData: StepData
    operations: list[OperationEnvelope] = Field(default_factory=list)
    lastSync: UtcDatetime
    resources: Optional[Resources] = None
    state: dict[str, Any] = Field(default_factory=dict)


class SyncResult(BaseModel):
    success: bool
    syncedDays: int = 0
    errors: list[str] = Field(default_factory=list)
    conflicts: list[DataConflict] = Field(default_factory=list)
    lastSyncDate: UtcDatetime
    transactionId: Optional[str] = None
    earnedResources: Resources = Field(default_factory=Resources)
    operations: list[OperationResult] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    validationErrors: list[ValidationIssue] = Field(default_factory=list)


class SyncPlayerDataResponse(BaseModel):
    success: bool
    syncedDays: int
    errors: list[str]
    conflicts: list[DataConflict]
    timestamp: UtcDatetime
    lastSyncDate: UtcDatetime
    transactionId: Optional[str] = None
    earnedResources: Resources
    operations: list[OperationResult]
    warnings: list[ValidationIssue]


class ResolveConflictRequest(BaseModel):
    conflictId: str = Field(min_length=1)
    strategy: ConflictStrategy
    resolvedValue: Any = None


class SyncStatusResponse(BaseModel):
    playerId: str
    lastSync: UtcDatetime
    pendingConflicts: int
    syncInProgress: bool


class BackupData(BaseModel):
    id: str
    playerId: str
    snapshot: dict[str, Any]
    timestamp: UtcDatetime
    kind: BackupKind
