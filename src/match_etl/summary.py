"""match_etl.summary

Summary scraper: the external page-scraping step behind a narrow interface.

The shard worker only depends on the SummaryScraper protocol.  The
HTTP implementation fetches the match summary page with requests and parses
it with BeautifulSoup; parse_summary_html is pure and unit-tested against
captured HTML.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests
from bs4 import BeautifulSoup, Tag

from match_etl.batch_files import DateInfo
from match_etl.normalize import (
    build_internal_id,
    normalize_space,
    normalize_team_name,
    parse_match_date,
    strip_round_suffix,
)
from match_etl.shared import ScrapeError

log = logging.getLogger(__name__)

SUMMARY_PATH = "/game/soccer/{match_id}/#/game-summary/game-summary"

_OWN_GOAL_RE = re.compile(r"own goal", re.IGNORECASE)
_GOAL_RE = re.compile(r"goal|gooal", re.IGNORECASE)
_SUBSTITUTION_RE = re.compile(r"substitution", re.IGNORECASE)


@dataclass
class ScrapedSummary:
    match_id: str
    basic_info: dict[str, Any]
    teams: dict[str, Any]
    events: list[dict[str, Any]] = field(default_factory=list)
    date_info: DateInfo | None = None


class SummaryScraper(Protocol):
    def scrape_summary(self, match_id: str) -> ScrapedSummary:
        """Return the parsed summary; raise on any failure."""
        ...


# ---------------------------------------------------------------------------
# HTML parsing
# ---------------------------------------------------------------------------

def _text(node: Tag | None) -> str | None:
    if node is None:
        return None
    return normalize_space(node.get_text(" ", strip=True))


def _team_from_soup(soup: BeautifulSoup, side_sel: str) -> dict[str, Any]:
    name = _text(soup.select_one(f"{side_sel} .participant__participantName"))
    link = soup.select_one(f"{side_sel} a.participant__participantLink")
    team_id = None
    if link is not None and link.get("href"):
        parts = [p for p in str(link["href"]).split("/") if p]
        team_id = parts[-1] if parts else None
    return {"name": name, "id": team_id, "internalId": normalize_team_name(name)}


def _classify_incident(inc: Tag) -> str:
    text = inc.get_text(" ", strip=True)
    if _OWN_GOAL_RE.search(text):
        return "ownGoal"
    if _GOAL_RE.search(text) or inc.select_one(".smv__incidentHomeScore, .smv__incidentAwayScore"):
        return "goal"
    if inc.select_one(".yellowCard-ico"):
        return "yellowCard"
    if inc.select_one(".redCard-ico"):
        return "redCard"
    if _SUBSTITUTION_RE.search(text):
        return "substitution"
    return "other"


def parse_events(soup: BeautifulSoup) -> list[dict[str, Any]]:
    """Raw incident list in page order; duplicates are left for reconciliation."""
    events = []
    for inc in soup.select(".smv__incident, .detailScore__incident, .event__incident"):
        events.append({
            "minute": _text(inc.select_one(".smv__timeBox, .time, .incident__time")),
            "type": _classify_incident(inc),
            "player": _text(inc.select_one("a.smv__playerName, .participant__participantName")),
            "assist": _text(inc.select_one(".smv__assist a")),
        })
    return events


def parse_summary_html(match_id: str, html: str) -> ScrapedSummary:
    """Parse a match summary page.

    Raises ScrapeError when neither team name is present (not a summary page).
    """
    soup = BeautifulSoup(html, "html.parser")

    home = _team_from_soup(soup, ".duelParticipant__home")
    away = _team_from_soup(soup, ".duelParticipant__away")
    if not home["name"] and not away["name"]:
        raise ScrapeError(f"no participants found on summary page for {match_id}")

    score_spans = soup.select(".detailScore__wrapper span")
    crumbs = soup.select('.detail__breadcrumbs a[itemprop="item"] span')
    overline = soup.select(
        '.detail__breadcrumbs a[itemprop="item"] span[data-testid="wcl-scores-overline-03"]'
    )
    date_str = _text(soup.select_one(".duelParticipant__startTime"))

    basic_info = {
        "homeTeam": home["name"],
        "awayTeam": away["name"],
        "score": {
            "home": _text(score_spans[0]) if score_spans else None,
            "away": _text(score_spans[-1]) if score_spans else None,
        },
        "dateStr": date_str,
        "competition": _text(overline[-1]) if overline else None,
    }
    teams = {
        "home": home,
        "away": away,
        "league": strip_round_suffix(_text(crumbs[-1]) if crumbs else None),
    }

    date_info = None
    match_date = parse_match_date(date_str)
    if match_date is not None:
        date_info = DateInfo(
            parsed_date=match_date,
            proper_internal_id=build_internal_id(home["name"], away["name"], match_date),
        )
    else:
        log.warning("Unable to parse date %r for %s", date_str, match_id)

    return ScrapedSummary(
        match_id=match_id,
        basic_info=basic_info,
        teams=teams,
        events=parse_events(soup),
        date_info=date_info,
    )


# ---------------------------------------------------------------------------
# HTTP scraper
# ---------------------------------------------------------------------------

class HttpSummaryScraper:
    """Fetch summary pages over HTTP.  Network errors and non-2xx responses raise."""

    def __init__(
        self,
        base_url: str,
        user_agent: str,
        timeout: float = 20.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

    def summary_url(self, match_id: str) -> str:
        return self.base_url + SUMMARY_PATH.format(match_id=match_id)

    def scrape_summary(self, match_id: str) -> ScrapedSummary:
        url = self.summary_url(match_id)
        log.debug("GET %s", url)
        resp = self.session.get(url, timeout=self.timeout)
        resp.raise_for_status()
        return parse_summary_html(match_id, resp.text)

    def close(self) -> None:
        self.session.close()
