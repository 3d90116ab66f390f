"""match_etl.checkpoint

Singleton crawl checkpoint kept in the checkpoints table.

Long-running enumeration passes (country -> league -> team) save their
cursor after every team so a restarted pass can resume where it stopped.
There is exactly one row, id 'scraper-state', overwritten in place.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from match_etl.normalize import parse_iso_ts, to_iso

log = logging.getLogger(__name__)

CHECKPOINT_ID = "scraper-state"


@dataclass
class CheckpointStats:
    total_teams: int = 0
    processed_teams: int = 0
    matches_scraped: int = 0
    start_time: datetime | None = None
    elapsed_time: float = 0.0  # seconds

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["start_time"] = to_iso(self.start_time)
        return d


@dataclass
class CheckpointState:
    country: str | None = None
    league: str | None = None
    team: str | None = None
    team_id: str | None = None
    index: int = 0
    timestamp: datetime | None = None
    stats: CheckpointStats = field(default_factory=CheckpointStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "country": self.country,
            "league": self.league,
            "team": self.team,
            "team_id": self.team_id,
            "index": self.index,
            "timestamp": to_iso(self.timestamp),
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CheckpointState":
        stats_raw = raw.get("stats") or {}
        stats = CheckpointStats(
            total_teams=int(stats_raw.get("total_teams") or 0),
            processed_teams=int(stats_raw.get("processed_teams") or 0),
            matches_scraped=int(stats_raw.get("matches_scraped") or 0),
            start_time=parse_iso_ts(stats_raw.get("start_time")),
            elapsed_time=float(stats_raw.get("elapsed_time") or 0.0),
        )
        return cls(
            country=raw.get("country"),
            league=raw.get("league"),
            team=raw.get("team"),
            team_id=raw.get("team_id"),
            index=int(raw.get("index") or 0),
            timestamp=parse_iso_ts(raw.get("timestamp")),
            stats=stats,
        )


class CheckpointStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def save(self, state: CheckpointState) -> CheckpointState:
        """Overwrite the singleton, stamping state.timestamp with now (UTC)."""
        state.timestamp = datetime.now(timezone.utc)
        self._conn.execute(
            """
            INSERT INTO checkpoints (id, state, updated_at)
            VALUES (%s, %s, now())
            ON CONFLICT (id) DO UPDATE
              SET state = EXCLUDED.state, updated_at = now()
            """,
            (CHECKPOINT_ID, Jsonb(state.to_dict())),
        )
        log.debug(
            "checkpoint saved: %s / %s / %s index=%d",
            state.country, state.league, state.team, state.index,
        )
        return state

    def load(self) -> CheckpointState | None:
        row = self._conn.execute(
            "SELECT state FROM checkpoints WHERE id = %s", (CHECKPOINT_ID,)
        ).fetchone()
        if row is None:
            return None
        return CheckpointState.from_dict(row[0])

    def clear(self) -> None:
        self._conn.execute("DELETE FROM checkpoints WHERE id = %s", (CHECKPOINT_ID,))
