from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from .db import utcnow
from .models import ConflictResolution, ConflictStrategy, DataConflict

Decision = tuple[ConflictStrategy, Any]
PolicyFn = Callable[[DataConflict, datetime], Decision]


def merge_max(local: Any, server: Any, keys: tuple[str, ...]) -> dict[str, Any]:
    """Component-wise maximum over numeric sub-fields; missing values count as 0."""
    local = local if isinstance(local, dict) else {}
    server = server if isinstance(server, dict) else {}
    return {k: max(local.get(k) or 0, server.get(k) or 0) for k in keys}


def server_wins(conflict: DataConflict, now: datetime) -> Decision:
    return ConflictStrategy.SERVER_WINS, conflict.serverValue


def client_wins(conflict: DataConflict, now: datetime) -> Decision:
    return ConflictStrategy.CLIENT_WINS, conflict.localValue


def client_wins_within(window: timedelta) -> PolicyFn:
    def policy(conflict: DataConflict, now: datetime) -> Decision:
        if now - conflict.conflictTimestamp <= window:
            return ConflictStrategy.CLIENT_WINS, conflict.localValue
        return ConflictStrategy.SERVER_WINS, conflict.serverValue

    return policy


def merge_values(*keys: str) -> PolicyFn:
    def policy(conflict: DataConflict, now: datetime) -> Decision:
        return ConflictStrategy.MERGE_VALUES, merge_max(conflict.localValue, conflict.serverValue, keys)

    return policy


def manual_review(conflict: DataConflict, now: datetime) -> Decision:
    return ConflictStrategy.MANUAL_REVIEW, None


@dataclass(frozen=True)
class FieldPolicy:
    decide: PolicyFn
    automatic: bool = True


def default_policies(staleness_window: timedelta = timedelta(days=7)) -> dict[str, FieldPolicy]:
    return {
        "stepCount": FieldPolicy(client_wins_within(staleness_window)),
        "resources": FieldPolicy(merge_values("cells", "experiencePoints")),
    }


class ConflictResolver:
    """Per-field conflict policy table.

    Fields without a registered policy fall back to SERVER_WINS, but that
    fallback is not automatic: the orchestrator surfaces such conflicts for
    manual resolution instead of applying them.
    """

    def __init__(
        self,
        policies: Mapping[str, FieldPolicy] | None = None,
        *,
        fallback: PolicyFn = server_wins,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._policies = dict(default_policies() if policies is None else policies)
        self._fallback = fallback
        self._clock = clock

    def register(self, field: str, policy: FieldPolicy) -> None:
        self._policies[field] = policy

    def has_policy(self, field: str) -> bool:
        return field in self._policies

    def is_automatic(self, resolution: ConflictResolution) -> bool:
        policy = self._policies.get(resolution.field)
        if policy is None or not policy.automatic:
            return False
        return resolution.strategy != ConflictStrategy.MANUAL_REVIEW

    def resolve(self, conflict: DataConflict) -> ConflictResolution:
        now = self._clock()
        policy = self._policies.get(conflict.field)
        decide = policy.decide if policy is not None else self._fallback
        strategy, value = decide(conflict, now)
        return ConflictResolution(field=conflict.field, strategy=strategy, resolvedValue=value, timestamp=now)

    def apply_strategy(self, conflict: DataConflict, strategy: ConflictStrategy, resolved_value: Any = None) -> Any:
        """Value to write for an explicitly chosen strategy (manual resolution)."""
        if strategy == ConflictStrategy.SERVER_WINS:
            return conflict.serverValue
        if strategy == ConflictStrategy.CLIENT_WINS:
            return conflict.localValue
        if strategy == ConflictStrategy.MERGE_VALUES:
            policy = self._policies.get(conflict.field)
            if policy is not None:
                decided, value = policy.decide(conflict, self._clock())
                if decided == ConflictStrategy.MERGE_VALUES:
                    return value
            if resolved_value is None:
                raise ValueError(f"No merge rule for field {conflict.field}; resolvedValue is required")
            return resolved_value
        if resolved_value is None:
            raise ValueError("resolvedValue is required for manual_review")
        return resolved_value
