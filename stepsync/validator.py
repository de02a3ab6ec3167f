from __future__ import annotations

from datetime import datetime, timedelta

from .db import utcnow
from .models import (
    OPERATION_TYPES,
    SyncPlayerDataRequest,
    ValidationIssue,
    ValidationResult,
)
from .settings import SyncLimits

NEGATIVE_STEPS = "NEGATIVE_STEPS"
EXCESSIVE_STEPS = "EXCESSIVE_STEPS"
VALIDATION_ERROR = "VALIDATION_ERROR"
OFFLINE_LIMIT_EXCEEDED = "OFFLINE_LIMIT_EXCEEDED"
QUEUE_OVERFLOW = "QUEUE_OVERFLOW"
INVALID_DATE = "INVALID_DATE"
SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
DATA_GAP = "DATA_GAP"

# Conflict fields with dedicated columns; never accepted as free-form state
RESERVED_FIELDS = frozenset({"stepCount", "resources"})


def _issue(type_: str, message: str, **data) -> ValidationIssue:
    return ValidationIssue(type=type_, message=message, data=data or None)


def check_step_data(request: SyncPlayerDataRequest, limits: SyncLimits) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    sd = request.stepData

    if sd.totalSteps < 0 or sd.dailySteps < 0:
        errors.append(
            _issue(NEGATIVE_STEPS, "Step counts cannot be negative", totalSteps=sd.totalSteps, dailySteps=sd.dailySteps)
        )

    if sd.totalSteps > limits.max_total_steps:
        errors.append(_issue(VALIDATION_ERROR, "Total steps value is unreasonably high", totalSteps=sd.totalSteps))
    if sd.dailySteps > limits.max_daily_steps_hard:
        errors.append(_issue(VALIDATION_ERROR, "Daily steps value is unreasonably high", dailySteps=sd.dailySteps))

    if sd.dailySteps > limits.max_daily_steps:
        errors.append(
            _issue(EXCESSIVE_STEPS, "Daily steps exceed the allowed maximum", dailySteps=sd.dailySteps, max=limits.max_daily_steps)
        )
    elif sd.dailySteps > limits.suspicious_daily_steps:
        warnings.append(_issue(SUSPICIOUS_ACTIVITY, "Daily steps exceed normal range", dailySteps=sd.dailySteps))

    return errors, warnings


def check_staleness(request: SyncPlayerDataRequest, now: datetime, limits: SyncLimits) -> list[ValidationIssue]:
    age = now - request.lastSync
    if age > timedelta(days=limits.offline_limit_days):
        return [
            _issue(
                OFFLINE_LIMIT_EXCEEDED,
                f"Data is older than {limits.offline_limit_days}-day limit",
                daysSinceSync=round(age.total_seconds() / 86400, 3),
            )
        ]
    if -age > timedelta(minutes=limits.future_skew_minutes):
        return [_issue(INVALID_DATE, "Last sync timestamp is in the future", lastSync=request.lastSync.isoformat())]
    return []


def check_operations(request: SyncPlayerDataRequest, limits: SyncLimits) -> list[ValidationIssue]:
    errors: list[ValidationIssue] = []
    ops = request.operations

    if len(ops) > limits.max_queue_size:
        errors.append(_issue(QUEUE_OVERFLOW, "Too many pending operations", count=len(ops), max=limits.max_queue_size))

    for idx, op in enumerate(ops):
        if op.type not in OPERATION_TYPES:
            errors.append(
                _issue(VALIDATION_ERROR, f"Invalid operation type at index {idx}: {op.type}", operationId=op.id)
            )
        if op.playerId != request.playerId:
            errors.append(
                _issue(VALIDATION_ERROR, f"Operation at index {idx} belongs to different player", operationId=op.id)
            )
    return errors


def check_state(request: SyncPlayerDataRequest) -> list[ValidationIssue]:
    clashes = sorted(RESERVED_FIELDS & set(request.state))
    if clashes:
        return [_issue(VALIDATION_ERROR, "State fields clash with reserved sync fields", fields=clashes)]
    return []


def check_data_gaps(request: SyncPlayerDataRequest, limits: SyncLimits) -> list[ValidationIssue]:
    # Daily samples: step_update operations plus the submitted step data itself
    samples = sorted(
        [op.timestamp for op in request.operations if op.type == "step_update"] + [request.stepData.lastUpdated]
    )
    max_gap = timedelta(hours=limits.data_gap_hours)
    warnings: list[ValidationIssue] = []
    for prev, cur in zip(samples, samples[1:]):
        if cur - prev > max_gap:
            warnings.append(
                _issue(DATA_GAP, "Gap between step samples exceeds 1.5 days", start=prev.isoformat(), end=cur.isoformat())
            )
    return warnings


def validate(
    request: SyncPlayerDataRequest,
    *,
    now: datetime | None = None,
    limits: SyncLimits | None = None,
) -> ValidationResult:
    """Check a sync request against sanity thresholds.

    Never mutates the request and never raises for representable input;
    problems are reported as errors (blocking) or warnings (informational).
    """
    now = now or utcnow()
    limits = limits or SyncLimits()

    errors, warnings = check_step_data(request, limits)
    errors += check_staleness(request, now, limits)
    errors += check_operations(request, limits)
    errors += check_state(request)
    warnings += check_data_gaps(request, limits)

    return ValidationResult(isValid=not errors, errors=errors, warnings=warnings)
