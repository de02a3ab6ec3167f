from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from .db import dumps_payload, iso, loads_payload, parse_iso, utcnow
from .models import GameMode, Resources

STEPS_PER_CELL = 1000
STEPS_PER_XP = 10


class PlayerNotFound(LookupError):
    pass


@dataclass
class PlayerRecord:
    id: str
    total_steps: int = 0
    # Highest step total resources were ever credited for
    credited_steps: int = 0
    daily_steps: int = 0
    step_updated_at: datetime | None = None
    step_source: str = "tracker"
    step_validated: bool = False
    cells: int = 0
    experience_points: int = 0
    current_mode: str = GameMode.DISCOVERY.value
    state: dict[str, Any] = field(default_factory=dict)
    last_sync: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def resources(self) -> Resources:
        return Resources(cells=self.cells, experiencePoints=self.experience_points)

    def to_public(self) -> dict[str, Any]:
        return {
            "playerId": self.id,
            "stepData": {
                "totalSteps": self.total_steps,
                "dailySteps": self.daily_steps,
                "lastUpdated": iso(self.step_updated_at),
                "source": self.step_source,
                "validated": self.step_validated,
            },
            "resources": self.resources.model_dump(),
            "currentMode": self.current_mode,
            "state": dict(self.state),
            "lastSync": iso(self.last_sync),
        }

    def to_snapshot(self) -> dict[str, Any]:
        snap = asdict(self)
        for k in ("step_updated_at", "last_sync", "created_at", "updated_at"):
            snap[k] = iso(snap[k])
        return snap

    @classmethod
    def from_snapshot(cls, snap: dict[str, Any]) -> "PlayerRecord":
        data = dict(snap)
        for k in ("step_updated_at", "last_sync", "created_at", "updated_at"):
            data[k] = parse_iso(data.get(k))
        data["state"] = dict(data.get("state") or {})
        return cls(**data)


def resources_for_steps(steps: int, mode: str) -> Resources:
    if mode == GameMode.DISCOVERY.value:
        return Resources(cells=steps // STEPS_PER_CELL)
    if mode == GameMode.TRAINING.value:
        return Resources(experiencePoints=steps // STEPS_PER_XP)
    return Resources()


def credit_steps(player: PlayerRecord, new_total: int) -> Resources:
    """Set the step total and credit resources for steps never credited before."""
    player.total_steps = new_total
    if new_total <= player.credited_steps:
        return Resources()
    before = resources_for_steps(player.credited_steps, player.current_mode)
    after = resources_for_steps(new_total, player.current_mode)
    earned = Resources(
        cells=after.cells - before.cells,
        experiencePoints=after.experiencePoints - before.experiencePoints,
    )
    player.credited_steps = new_total
    player.cells += earned.cells
    player.experience_points += earned.experiencePoints
    return earned


def _row_to_player(row: sqlite3.Row) -> PlayerRecord:
    return PlayerRecord(
        id=row["id"],
        total_steps=int(row["total_steps"]),
        credited_steps=int(row["credited_steps"]),
        daily_steps=int(row["daily_steps"]),
        step_updated_at=parse_iso(row["step_updated_at"]),
        step_source=row["step_source"],
        step_validated=bool(row["step_validated"]),
        cells=int(row["cells"]),
        experience_points=int(row["experience_points"]),
        current_mode=row["current_mode"],
        state=loads_payload(row["state_json"]) or {},
        last_sync=parse_iso(row["last_sync"]),  # type: ignore[arg-type]
        created_at=parse_iso(row["created_at"]),  # type: ignore[arg-type]
        updated_at=parse_iso(row["updated_at"]),  # type: ignore[arg-type]
    )


def get_player(conn: sqlite3.Connection, player_id: str) -> PlayerRecord | None:
    row = conn.execute("SELECT * FROM players WHERE id = ?", (player_id,)).fetchone()
    return _row_to_player(row) if row else None


def load_player(conn: sqlite3.Connection, player_id: str) -> PlayerRecord:
    player = get_player(conn, player_id)
    if player is None:
        raise PlayerNotFound(f"Player not found: {player_id}")
    return player


def save_player(conn: sqlite3.Connection, player: PlayerRecord) -> None:
    conn.execute(
        """
        INSERT INTO players(
          id, total_steps, credited_steps, daily_steps, step_updated_at, step_source, step_validated,
          cells, experience_points, current_mode, state_json, last_sync, created_at, updated_at
        ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          total_steps=excluded.total_steps,
          credited_steps=excluded.credited_steps,
          daily_steps=excluded.daily_steps,
          step_updated_at=excluded.step_updated_at,
          step_source=excluded.step_source,
          step_validated=excluded.step_validated,
          cells=excluded.cells,
          experience_points=excluded.experience_points,
          current_mode=excluded.current_mode,
          state_json=excluded.state_json,
          last_sync=excluded.last_sync,
          updated_at=excluded.updated_at
        """,
        (
            player.id,
            player.total_steps,
            player.credited_steps,
            player.daily_steps,
            iso(player.step_updated_at),
            player.step_source,
            1 if player.step_validated else 0,
            player.cells,
            player.experience_points,
            player.current_mode,
            dumps_payload(player.state),
            iso(player.last_sync),
            iso(player.created_at),
            iso(player.updated_at),
        ),
    )


def create_player(
    conn: sqlite3.Connection,
    player_id: str,
    *,
    total_steps: int = 0,
    cells: int = 0,
    experience_points: int = 0,
    current_mode: GameMode = GameMode.DISCOVERY,
    state: dict[str, Any] | None = None,
    last_sync: datetime | None = None,
) -> PlayerRecord:
    """Insert a fresh player row. Player identity itself is issued by the auth service."""
    now = utcnow()
    player = PlayerRecord(
        id=player_id,
        total_steps=total_steps,
        credited_steps=total_steps,
        cells=cells,
        experience_points=experience_points,
        current_mode=current_mode.value,
        state=dict(state or {}),
        last_sync=last_sync or now,
        created_at=now,
        updated_at=now,
    )
    save_player(conn, player)
    return player
