"""match_etl.store

Match Record Store: the shared PostgreSQL state behind the pipeline.

MatchStore wraps one psycopg connection opened in autocommit mode.  Every
method that writes more than one row runs inside conn.transaction(); callers
that need several methods to commit together (the importer) wrap them in
store.transaction(), which nests as savepoints.

Concurrency model: no application locks.  Every write is a single
INSERT ... ON CONFLICT or a guarded UPDATE, so concurrent importers and the
stale sweep never step on each other.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from match_etl.batch_files import ShardEntry
from match_etl.lifecycle import (
    ALL_STATUSES,
    FAILED,
    PENDING,
    QUEUED,
    REQUEUEABLE,
    predecessors,
)
from match_etl.normalize import parse_exclude_pair, parse_iso_ts, trim

log = logging.getLogger(__name__)

# Statuses a crashed worker can leave behind.
_IN_FLIGHT = sorted(REQUEUEABLE - {FAILED})


# ---------------------------------------------------------------------------
# Records / filters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MatchRecord:
    """A discovered match as handed to insert_batch."""

    match_id: str
    country: str | None = None
    league: str | None = None
    team: str | None = None
    team_name: str | None = None
    home_team: str | None = None
    away_team: str | None = None
    home_score: str | None = None
    away_score: str | None = None
    date: datetime | None = None
    internal_id: str | None = None
    scrape_id: int | None = None
    scraped_at: datetime | None = None
    processing_status: str = PENDING

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "MatchRecord":
        """Build from the camelCase dicts produced by the league crawlers."""
        def _text(key: str) -> str | None:
            val = raw.get(key)
            return trim(str(val)) if val is not None else None

        def _ts(key: str) -> datetime | None:
            val = raw.get(key)
            if isinstance(val, datetime):
                return val
            return parse_iso_ts(val) if isinstance(val, str) else None

        match_id = _text("matchId")
        if not match_id:
            raise ValueError(f"match record has no matchId: {raw!r:.200}")
        return cls(
            match_id=match_id,
            country=_text("country"),
            league=_text("league"),
            team=_text("team"),
            team_name=_text("teamName"),
            home_team=_text("homeTeam"),
            away_team=_text("awayTeam"),
            home_score=_text("homeScore"),
            away_score=_text("awayScore"),
            date=_ts("date"),
            internal_id=_text("internalId"),
            scrape_id=raw.get("scrapeId"),
            scraped_at=_ts("scrapedAt"),
            processing_status=raw.get("processingStatus") or PENDING,
        )


@dataclass(frozen=True)
class SelectionFilter:
    status: str | Sequence[str] = PENDING
    country: str | None = None
    league: str | None = None
    team: str | None = None
    max_attempts: int = 3
    # "Country-League" composite keys
    exclude_pairs: Sequence[str] = field(default_factory=tuple)
    limit: int | None = None

    def statuses(self) -> list[str]:
        if isinstance(self.status, str):
            return [self.status]
        return list(self.status)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class MatchStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        if not conn.autocommit:
            raise ValueError("MatchStore requires an autocommit connection")
        self._conn = conn

    @property
    def conn(self) -> psycopg.Connection:
        return self._conn

    def transaction(self):
        return self._conn.transaction()

    def close(self) -> None:
        self._conn.close()

    def _fetchall(self, sql: str, params: Any = None) -> list[dict[str, Any]]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def _fetchone(self, sql: str, params: Any = None) -> dict[str, Any] | None:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    # ------------------------------------------------------------------ #
    # Matches                                                              #
    # ------------------------------------------------------------------ #

    def insert_batch(self, records: Iterable[MatchRecord]) -> int:
        """Insert new matches; duplicates of an existing match_id are skipped.

        Returns the number of rows actually inserted.
        """
        inserted = 0
        skipped = 0
        with self._conn.transaction():
            for rec in records:
                row = self._conn.execute(
                    """
                    INSERT INTO matches
                        (match_id, internal_id, country, league, team, team_name,
                         home_team, away_team, home_score, away_score, date,
                         scraped_at, scrape_id, processing_status)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                            COALESCE(%s, now()), %s, %s)
                    ON CONFLICT (match_id) DO NOTHING
                    RETURNING id
                    """,
                    (
                        rec.match_id, rec.internal_id, rec.country, rec.league,
                        rec.team, rec.team_name, rec.home_team, rec.away_team,
                        rec.home_score, rec.away_score, rec.date,
                        rec.scraped_at, rec.scrape_id, rec.processing_status,
                    ),
                ).fetchone()
                if row:
                    inserted += 1
                else:
                    skipped += 1
        if skipped:
            log.debug("insert_batch: %d duplicate match ids skipped", skipped)
        return inserted

    def get_match(self, match_id: str) -> dict[str, Any] | None:
        return self._fetchone("SELECT * FROM matches WHERE match_id = %s", (match_id,))

    def _sorts_by_scrape_id(self) -> bool:
        # The first-inserted row decides for the whole collection.
        row = self._conn.execute(
            "SELECT scrape_id FROM matches ORDER BY id ASC LIMIT 1"
        ).fetchone()
        return row is not None and row[0] is not None

    def select_for_processing(self, flt: SelectionFilter) -> list[dict[str, Any]]:
        clauses = ["processing_status = ANY(%(statuses)s)",
                   "processing_attempts < %(max_attempts)s"]
        params: dict[str, Any] = {
            "statuses": flt.statuses(),
            "max_attempts": flt.max_attempts,
        }
        for col in ("country", "league", "team"):
            val = getattr(flt, col)
            if val is not None:
                clauses.append(f"{col} = %({col})s")
                params[col] = val

        pairs = exclusion_pairs(flt.exclude_pairs)
        if pairs:
            clauses.append(
                """NOT EXISTS (
                    SELECT 1 FROM unnest(%(ex_countries)s::text[], %(ex_leagues)s::text[])
                        AS ex(country, league)
                    WHERE ex.country = matches.country AND ex.league = matches.league
                )"""
            )
            params["ex_countries"] = [c for c, _ in pairs]
            params["ex_leagues"] = [lg for _, lg in pairs]

        if self._sorts_by_scrape_id():
            order = "scrape_id ASC NULLS LAST, id ASC"
        else:
            order = "scraped_at ASC, id ASC"

        sql = f"SELECT * FROM matches WHERE {' AND '.join(clauses)} ORDER BY {order}"
        if flt.limit is not None:
            sql += " LIMIT %(limit)s"
            params["limit"] = flt.limit
        return self._fetchall(sql, params)

    def select_pending_shard_entries(
        self,
        start: int = 0,
        exclude_countries: Sequence[str] = (),
        exclude_leagues: Sequence[str] = (),
        max_attempts: int = 3,
    ) -> list[ShardEntry]:
        """Pending matches in scrape_id order, as shard entries.

        Matches without a scrape_id are only included when start <= 0, after
        all numbered ones.
        """
        clauses = [
            "processing_status = %(pending)s",
            "processing_attempts < %(max_attempts)s",
            "(scrape_id >= %(start)s OR (scrape_id IS NULL AND %(start)s <= 0))",
        ]
        params: dict[str, Any] = {
            "pending": PENDING,
            "max_attempts": max_attempts,
            "start": start,
        }
        if exclude_countries:
            clauses.append("(country IS NULL OR NOT country = ANY(%(ex_countries)s))")
            params["ex_countries"] = list(exclude_countries)
        if exclude_leagues:
            clauses.append("(league IS NULL OR NOT league = ANY(%(ex_leagues)s))")
            params["ex_leagues"] = list(exclude_leagues)

        rows = self._conn.execute(
            f"""
            SELECT scrape_id, match_id FROM matches
            WHERE {' AND '.join(clauses)}
            ORDER BY scrape_id ASC NULLS LAST, match_id ASC
            """,
            params,
        ).fetchall()
        return [ShardEntry(scrape_id=r[0], match_id=r[1]) for r in rows]

    def advance_status(self, match_id: str, new_status: str) -> bool:
        """Move a match to new_status and bump its attempt counter.

        The lifecycle check and the write are one UPDATE.  Returns False when
        the match is unknown, the status is unknown, or the transition is not
        allowed (e.g. complete -> complete on a re-import).
        """
        if new_status not in ALL_STATUSES:
            log.warning("advance_status: unknown status %r for %s", new_status, match_id)
            return False
        row = self._conn.execute(
            """
            UPDATE matches
            SET processing_status = %s,
                processing_attempts = processing_attempts + 1,
                updated_at = now()
            WHERE match_id = %s AND processing_status = ANY(%s)
            RETURNING id
            """,
            (new_status, match_id, predecessors(new_status)),
        ).fetchone()
        return row is not None

    def mark_queued(self, match_ids: Sequence[str]) -> int:
        """Bulk pending -> queued in one statement.  Returns rows updated."""
        if not match_ids:
            return 0
        cur = self._conn.execute(
            """
            UPDATE matches
            SET processing_status = %s,
                processing_attempts = processing_attempts + 1,
                updated_at = now()
            WHERE match_id = ANY(%s) AND processing_status = ANY(%s)
            """,
            (QUEUED, list(match_ids), predecessors(QUEUED)),
        )
        return cur.rowcount

    def apply_date_info(self, match_id: str, date: datetime, internal_id: str) -> bool:
        """Record the authoritative date and the internal id derived from it."""
        row = self._conn.execute(
            """
            UPDATE matches
            SET date = %(date)s,
                internal_id = %(internal_id)s,
                date_fixed = TRUE,
                date_fixed_at = now(),
                updated_at = now()
            WHERE match_id = %(match_id)s
              AND (date, internal_id, date_fixed)
                  IS DISTINCT FROM (%(date)s::timestamptz, %(internal_id)s::text, TRUE)
            RETURNING id
            """,
            {"date": date, "internal_id": internal_id, "match_id": match_id},
        ).fetchone()
        return row is not None

    def set_internal_id(self, match_id: str, internal_id: str) -> bool:
        """Set a provisional internal id; never overrides a date-fixed one."""
        row = self._conn.execute(
            """
            UPDATE matches
            SET internal_id = %(internal_id)s, updated_at = now()
            WHERE match_id = %(match_id)s
              AND NOT date_fixed
              AND internal_id IS DISTINCT FROM %(internal_id)s::text
            RETURNING id
            """,
            {"internal_id": internal_id, "match_id": match_id},
        ).fetchone()
        return row is not None

    def requeue_stale(self, stale_after: timedelta, max_attempts: int) -> dict[str, int]:
        """Reset matches stuck in flight for longer than stale_after.

        Rows with attempts left go back to pending; exhausted rows are marked
        failed.  Attempts are not incremented.
        """
        rows = self._conn.execute(
            """
            UPDATE matches
            SET processing_status = CASE
                    WHEN processing_attempts >= %(max_attempts)s THEN %(failed)s
                    ELSE %(pending)s
                END,
                updated_at = now()
            WHERE processing_status = ANY(%(in_flight)s)
              AND updated_at < now() - %(stale_after)s
            RETURNING processing_status
            """,
            {
                "max_attempts": max_attempts,
                "failed": FAILED,
                "pending": PENDING,
                "in_flight": _IN_FLIGHT,
                "stale_after": stale_after,
            },
        ).fetchall()
        out = {"requeued": 0, "failed": 0}
        for (status,) in rows:
            if status == PENDING:
                out["requeued"] += 1
            else:
                out["failed"] += 1
        return out

    # ------------------------------------------------------------------ #
    # Details / H2H                                                        #
    # ------------------------------------------------------------------ #

    def upsert_details(self, match_id: str, details: dict[str, Any]) -> bool:
        """Insert or replace the summary row.  Returns False when unchanged."""
        row = self._conn.execute(
            """
            INSERT INTO match_details
                (match_id, internal_id, basic_info, teams, events,
                 processing_status, processed_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (match_id) DO UPDATE
              SET internal_id       = EXCLUDED.internal_id,
                  basic_info        = EXCLUDED.basic_info,
                  teams             = EXCLUDED.teams,
                  events            = EXCLUDED.events,
                  processing_status = EXCLUDED.processing_status,
                  processed_at      = EXCLUDED.processed_at,
                  updated_at        = now()
              WHERE (match_details.internal_id, match_details.basic_info,
                     match_details.teams, match_details.events,
                     match_details.processing_status, match_details.processed_at)
                    IS DISTINCT FROM
                    (EXCLUDED.internal_id, EXCLUDED.basic_info,
                     EXCLUDED.teams, EXCLUDED.events,
                     EXCLUDED.processing_status, EXCLUDED.processed_at)
            RETURNING id
            """,
            (
                match_id,
                details.get("internalId"),
                Jsonb(details.get("basicInfo") or {}),
                Jsonb(details.get("teams") or {}),
                Jsonb(details.get("events") or []),
                details.get("processingStatus") or "complete",
                _processed_at(details),
            ),
        ).fetchone()
        return row is not None

    def upsert_h2h(self, match_id: str, h2h: dict[str, Any]) -> bool:
        row = self._conn.execute(
            """
            INSERT INTO match_h2h
                (match_id, internal_id, sections, processing_status, processed_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (match_id) DO UPDATE
              SET internal_id       = EXCLUDED.internal_id,
                  sections          = EXCLUDED.sections,
                  processing_status = EXCLUDED.processing_status,
                  processed_at      = EXCLUDED.processed_at,
                  updated_at        = now()
              WHERE (match_h2h.internal_id, match_h2h.sections,
                     match_h2h.processing_status, match_h2h.processed_at)
                    IS DISTINCT FROM
                    (EXCLUDED.internal_id, EXCLUDED.sections,
                     EXCLUDED.processing_status, EXCLUDED.processed_at)
            RETURNING id
            """,
            (
                match_id,
                h2h.get("internalId"),
                Jsonb(h2h.get("sections") or []),
                h2h.get("processingStatus") or "complete",
                _processed_at(h2h),
            ),
        ).fetchone()
        return row is not None

    def fetch_assembled(self, match_id: str) -> dict[str, Any] | None:
        """The match row with its details and h2h rows nested (None if absent)."""
        return self._fetchone(
            """
            SELECT m.*,
                   CASE WHEN d.id IS NULL THEN NULL ELSE to_jsonb(d) END AS details,
                   CASE WHEN h.id IS NULL THEN NULL ELSE to_jsonb(h) END AS h2h
            FROM matches m
            LEFT JOIN match_details d ON d.match_id = m.match_id
            LEFT JOIN match_h2h h ON h.match_id = m.match_id
            WHERE m.match_id = %s
            """,
            (match_id,),
        )

    # ------------------------------------------------------------------ #
    # Leagues                                                              #
    # ------------------------------------------------------------------ #

    def save_leagues(self, leagues: Iterable[dict[str, Any]]) -> int:
        """Bulk upsert keyed on (country, league).  Returns rows written."""
        written = 0
        with self._conn.transaction():
            for lg in leagues:
                country = trim(lg.get("country"))
                name = trim(lg.get("league") or lg.get("name"))
                if not country or not name:
                    log.warning("save_leagues: skipping entry without country/league: %r", lg)
                    continue
                extra = {
                    k: v for k, v in lg.items()
                    if k not in ("country", "league", "name", "url")
                }
                self._conn.execute(
                    """
                    INSERT INTO leagues (country, league, url, extra)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (country, league) DO UPDATE
                      SET url = EXCLUDED.url,
                          extra = EXCLUDED.extra,
                          updated_at = now()
                    """,
                    (country, name, lg.get("url"), Jsonb(extra)),
                )
                written += 1
        return written

    def get_leagues(self) -> list[dict[str, Any]]:
        return self._fetchall(
            "SELECT country, league, url, extra FROM leagues ORDER BY country, league"
        )


def exclusion_pairs(keys: Sequence[str]) -> list[tuple[str, str]]:
    """Parse 'Country-League' keys, warning about dropped or ambiguous ones."""
    pairs = []
    for key in keys:
        pair = parse_exclude_pair(key)
        if pair is None:
            log.warning("Ignoring exclusion key %r: expected 'Country-League'", key)
            continue
        if key.count("-") > 1:
            log.warning(
                "Exclusion key %r has more than one '-'; read as country=%r league=%r",
                key, pair[0], pair[1],
            )
        pairs.append(pair)
    return pairs


def _processed_at(payload: dict[str, Any]) -> datetime | None:
    val = payload.get("processedAt")
    return parse_iso_ts(val) if isinstance(val, str) else None


@contextmanager
def open_store(dsn: str) -> Iterator[MatchStore]:
    """Connect, yield a MatchStore, close on exit.

    psycopg.OperationalError from connect propagates to the caller.
    """
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        yield MatchStore(conn)
    finally:
        conn.close()
