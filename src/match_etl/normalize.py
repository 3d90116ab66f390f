"""Normalization functions for scraped match data.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone

# "25.04.2025 15:00" as rendered in the match header
_SITE_DATE_RE = re.compile(r"(\d{1,2})\.(\d{1,2})\.(\d{4})\s+(\d{1,2}):(\d{2})")

_ROUND_SUFFIX_RE = re.compile(r"\s*-\s*Round\s*\d+$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_team_name  (internal_id component)
# ---------------------------------------------------------------------------

def normalize_team_name(value: str | None) -> str:
    """Lowercase alnum only.  'Man. United' -> 'manunited'.

    Accented characters are folded to their base letter first so that
    'Atlético' and 'Atletico' normalize identically.  Returns '' for None.
    """
    v = trim(value)
    if v is None:
        return ""
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    return re.sub(r"[^a-z0-9]", "", v.lower())


# ---------------------------------------------------------------------------
# Rule 4: parse_match_date
# ---------------------------------------------------------------------------

def parse_match_date(value: str | None) -> datetime | None:
    """Parse the site's 'DD.MM.YYYY HH:MM' start time, falling back to ISO 8601.

    Returns None when neither form parses.  The site format carries no
    offset; the result is naive in that case.
    """
    v = normalize_space(value)
    if v is None:
        return None
    m = _SITE_DATE_RE.search(v)
    if m:
        day, month, year, hour, minute = (int(g) for g in m.groups())
        try:
            return datetime(year, month, day, hour, minute)
        except ValueError:
            return None
    return parse_iso_ts(v)


def parse_iso_ts(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp, accepting a trailing 'Z' for UTC."""
    v = trim(value)
    if v is None:
        return None
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(v)
    except ValueError:
        return None


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Rule 5: build_internal_id
# ---------------------------------------------------------------------------

def build_internal_id(
    home_team: str | None,
    away_team: str | None,
    match_date: datetime | None,
) -> str:
    """Return 'YYYYMMDD_home_vs_away'.

    The date part is the UTC calendar day when match_date is aware, the
    naive calendar day otherwise, and '' when match_date is None.  The id
    deliberately excludes the league so the same fixture scraped from two
    team pages collapses to one value.
    """
    date_part = ""
    if match_date is not None:
        if match_date.tzinfo is not None:
            match_date = match_date.astimezone(timezone.utc)
        date_part = match_date.strftime("%Y%m%d")
    return (
        f"{date_part}_{normalize_team_name(home_team)}"
        f"_vs_{normalize_team_name(away_team)}"
    )


# ---------------------------------------------------------------------------
# Rule 6: strip_round_suffix
# ---------------------------------------------------------------------------

def strip_round_suffix(value: str | None) -> str:
    """'Premier League - Round 12' -> 'Premier League'."""
    v = normalize_space(value)
    if v is None:
        return ""
    return _ROUND_SUFFIX_RE.sub("", v)


# ---------------------------------------------------------------------------
# CLI list / exclusion-key helpers
# ---------------------------------------------------------------------------

def split_csv_list(value: str | None) -> list[str]:
    """'England, Spain,,' -> ['England', 'Spain']."""
    if not value:
        return []
    return [p for p in (trim(part) for part in value.split(",")) if p]


def exclude_pair_key(country: str, league: str) -> str:
    """Composite key used in exclusion sets: 'England-Premier League'."""
    return f"{country}-{league}"


def parse_exclude_pair(key: str) -> tuple[str, str] | None:
    """Split a composite key on its first '-'.

    Returns None when the key has no separator or either side is blank.
    Country names containing '-' cannot be expressed: 'Guinea-Bissau-Cup'
    reads as ('Guinea', 'Bissau-Cup').  Callers warn on keys with more than
    one '-'.
    """
    country, sep, league = key.partition("-")
    country_v, league_v = trim(country), trim(league)
    if not sep or country_v is None or league_v is None:
        return None
    return country_v, league_v
