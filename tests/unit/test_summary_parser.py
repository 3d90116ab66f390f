"""Unit tests for summary page parsing and the HTTP scraper.

No network access: HTML is inlined and the requests session is mocked.
"""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import requests

from match_etl.batch_files import DateInfo
from match_etl.shared import ScrapeError
from match_etl.summary import HttpSummaryScraper, parse_events, parse_summary_html

SUMMARY_HTML = """
<html><body>
<div class="detail__breadcrumbs">
  <a itemprop="item" href="/soccer/"><span>Soccer</span></a>
  <a itemprop="item" href="/soccer/england/"><span>England</span></a>
  <a itemprop="item" href="/soccer/england/premier-league/">
    <span data-testid="wcl-scores-overline-03">Premier League - Round 34</span>
  </a>
</div>
<div class="duelParticipant">
  <div class="duelParticipant__home">
    <a class="participant__participantLink" href="/team/arsenal/hA1Zm19f/">
      <div class="participant__participantName">Arsenal</div>
    </a>
  </div>
  <div class="duelParticipant__startTime"><div>25.04.2025 15:00</div></div>
  <div class="detailScore__wrapper"><span>2</span><span>-</span><span>1</span></div>
  <div class="duelParticipant__away">
    <a class="participant__participantLink" href="/team/man-city/Wtn9Stg0/">
      <div class="participant__participantName">Man. City</div>
    </a>
  </div>
</div>
<div class="smv">
  <div class="smv__incident">
    <div class="smv__timeBox">23'</div>
    <div class="smv__incidentHomeScore">1 - 0</div>
    <a class="smv__playerName">Saka</a>
    <div class="smv__assist"><a>Odegaard</a></div>
  </div>
  <div class="smv__incident">
    <div class="smv__timeBox">23'</div>
    <a class="smv__playerName">Saka</a>
    <span>Goal</span>
  </div>
  <div class="smv__incident">
    <div class="smv__timeBox">51'</div>
    <a class="smv__playerName">Dias</a>
    <span>(Own goal)</span>
  </div>
  <div class="smv__incident">
    <div class="smv__timeBox">60'</div>
    <svg class="yellowCard-ico"></svg>
    <a class="smv__playerName">Rodri</a>
  </div>
  <div class="smv__incident">
    <div class="smv__timeBox">75'</div>
    <svg class="redCard-ico"></svg>
    <a class="smv__playerName">Walker</a>
  </div>
  <div class="smv__incident">
    <div class="smv__timeBox">80'</div>
    <span title="Substitution - In">Substitution</span>
    <a class="smv__playerName">Jesus</a>
  </div>
</div>
</body></html>
"""


class TestParseSummaryHtml:
    def test_basic_info(self):
        s = parse_summary_html("AbC12xYz", SUMMARY_HTML)
        assert s.match_id == "AbC12xYz"
        assert s.basic_info == {
            "homeTeam": "Arsenal",
            "awayTeam": "Man. City",
            "score": {"home": "2", "away": "1"},
            "dateStr": "25.04.2025 15:00",
            "competition": "Premier League - Round 34",
        }

    def test_teams_and_league(self):
        s = parse_summary_html("AbC12xYz", SUMMARY_HTML)
        assert s.teams["home"] == {"name": "Arsenal", "id": "hA1Zm19f", "internalId": "arsenal"}
        assert s.teams["away"] == {"name": "Man. City", "id": "Wtn9Stg0", "internalId": "mancity"}
        assert s.teams["league"] == "Premier League"

    def test_date_info(self):
        s = parse_summary_html("AbC12xYz", SUMMARY_HTML)
        assert s.date_info == DateInfo(datetime(2025, 4, 25, 15, 0), "20250425_arsenal_vs_mancity")

    def test_events_raw_in_page_order(self):
        s = parse_summary_html("AbC12xYz", SUMMARY_HTML)
        assert [(e["minute"], e["type"], e["player"]) for e in s.events] == [
            ("23'", "goal", "Saka"),
            ("23'", "goal", "Saka"),
            ("51'", "ownGoal", "Dias"),
            ("60'", "yellowCard", "Rodri"),
            ("75'", "redCard", "Walker"),
            ("80'", "substitution", "Jesus"),
        ]
        assert s.events[0]["assist"] == "Odegaard"
        assert s.events[1]["assist"] is None

    def test_unparseable_date_gives_no_date_info(self):
        html = SUMMARY_HTML.replace("25.04.2025 15:00", "Postponed")
        s = parse_summary_html("AbC12xYz", html)
        assert s.date_info is None
        assert s.basic_info["dateStr"] == "Postponed"

    def test_not_a_summary_page(self):
        with pytest.raises(ScrapeError):
            parse_summary_html("AbC12xYz", "<html><body>Access denied</body></html>")

    def test_no_incidents(self):
        html = "<div class='duelParticipant__home'><div class='participant__participantName'>A</div></div>"
        s = parse_summary_html("m", html)
        assert s.events == []
        assert s.teams["away"]["name"] is None


class TestParseEvents:
    def test_unclassified_incident_is_other(self):
        from bs4 import BeautifulSoup

        soup = BeautifulSoup(
            "<div class='smv__incident'><div class='smv__timeBox'>90+2'</div>"
            "<a class='smv__playerName'>Ref</a><span>VAR check</span></div>",
            "html.parser",
        )
        assert parse_events(soup) == [
            {"minute": "90+2'", "type": "other", "player": "Ref", "assist": None},
        ]


class TestHttpSummaryScraper:
    def _scraper(self, resp):
        session = MagicMock(spec=requests.Session)
        session.headers = {}
        session.get.return_value = resp
        return HttpSummaryScraper(
            base_url="https://example.test/",
            user_agent="test-agent",
            timeout=20.0,
            session=session,
        ), session

    def test_summary_url(self):
        scraper, _ = self._scraper(MagicMock())
        assert scraper.summary_url("AbC") == (
            "https://example.test/game/soccer/AbC/#/game-summary/game-summary"
        )

    def test_fetch_and_parse(self):
        resp = MagicMock()
        resp.text = SUMMARY_HTML
        resp.raise_for_status.return_value = None
        scraper, session = self._scraper(resp)

        s = scraper.scrape_summary("AbC")

        session.get.assert_called_once_with(
            "https://example.test/game/soccer/AbC/#/game-summary/game-summary", timeout=20.0
        )
        assert session.headers["User-Agent"] == "test-agent"
        assert s.basic_info["homeTeam"] == "Arsenal"

    def test_http_error_propagates(self):
        resp = MagicMock()
        resp.raise_for_status.side_effect = requests.HTTPError("503 Server Error")
        scraper, _ = self._scraper(resp)
        with pytest.raises(requests.HTTPError):
            scraper.scrape_summary("AbC")

    def test_timeout_propagates(self):
        scraper, session = self._scraper(MagicMock())
        session.get.side_effect = requests.Timeout("read timed out")
        with pytest.raises(requests.Timeout):
            scraper.scrape_summary("AbC")
