"""Unit tests for the shard worker.

No database or network access: the summary scraper is a fake and the rate
limiter runs with zero delay.
"""

from __future__ import annotations

import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from match_etl.batch_files import (
    DateInfo,
    ShardEntry,
    partial_path_for,
    read_result_entries,
    write_shard,
)
from match_etl.scrape_batch import (
    RateLimiter,
    ScrapeCounters,
    build_details,
    build_scrape_report,
    log_memory,
    run_scrape_batch,
)
from match_etl.shared import MalformedBatchFileError, ScrapeError
from match_etl.summary import ScrapedSummary


class FakeScraper:
    """Returns canned summaries; match ids listed in `fail` raise."""

    def __init__(self, fail=(), interrupt_on=None):
        self.fail = set(fail)
        self.interrupt_on = interrupt_on
        self.calls: list[str] = []

    def scrape_summary(self, match_id):
        self.calls.append(match_id)
        if match_id == self.interrupt_on:
            raise KeyboardInterrupt
        if match_id in self.fail:
            raise ScrapeError(f"timeout loading {match_id}")
        return ScrapedSummary(
            match_id=match_id,
            basic_info={"homeTeam": "A", "awayTeam": "B"},
            teams={"home": {"name": "A"}, "away": {"name": "B"}, "league": "L"},
            events=[
                {"minute": "10'", "type": "goal", "player": "P"},
                {"minute": "10'", "type": "goal", "player": "P", "assist": "Q"},
                {"minute": "20'", "type": "ownGoal", "player": "R", "hasGoalClass": True},
            ],
            date_info=DateInfo(datetime(2025, 4, 25, 15, 0), f"20250425_a_vs_b_{match_id}"),
        )


def _no_delay():
    return RateLimiter(base_delay=0.0, jitter=0.0)


def _write_batch(tmp_path, ids):
    path = tmp_path / "batch-001.json"
    write_shard(path, [ShardEntry(i + 1, mid) for i, mid in enumerate(ids)])
    return path


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------

class TestRateLimiter:
    def test_defaults(self):
        rl = RateLimiter()
        assert rl.base_delay == 1.25
        assert rl.jitter == 0.25

    def test_delay_within_nominal_window(self):
        rl = RateLimiter()
        for _ in range(50):
            assert 1.0 <= rl.next_delay() <= 1.5

    def test_backoff_doubles_and_caps(self):
        rl = RateLimiter(base_delay=1.0, jitter=0.0)
        rl.on_failure()
        assert rl.next_delay() == 2.0
        for _ in range(10):
            rl.on_failure()
        assert rl.next_delay() == 32.0
        assert rl.consecutive_failures == 11

    def test_success_resets(self):
        rl = RateLimiter(base_delay=1.0, jitter=0.0)
        rl.on_failure()
        rl.on_success()
        assert rl.consecutive_failures == 0
        assert rl.next_delay() == 1.0

    def test_sleep_uses_next_delay(self):
        rl = RateLimiter(base_delay=1.0, jitter=0.0)
        with patch("match_etl.scrape_batch.time.sleep") as sleep:
            rl.sleep()
        sleep.assert_called_once_with(1.0)

    def test_never_negative(self):
        rl = RateLimiter(base_delay=0.0, jitter=0.5)
        for _ in range(20):
            assert rl.next_delay() >= 0.0


# ---------------------------------------------------------------------------
# run_scrape_batch
# ---------------------------------------------------------------------------

class TestRunScrapeBatch:
    def test_processes_in_order_and_writes_result_file(self, tmp_path):
        batch = _write_batch(tmp_path, ["m1", "m2", "m3"])
        out = tmp_path / "output.json"
        scraper = FakeScraper()
        counters = ScrapeCounters()

        path = run_scrape_batch(batch, out, scraper, counters, rate_limiter=_no_delay())

        assert path == out
        assert scraper.calls == ["m1", "m2", "m3"]
        data = json.loads(out.read_text())
        assert [d["matchId"] for d in data] == ["m1", "m2", "m3"]
        assert [d["scrapeId"] for d in data] == [1, 2, 3]
        assert not partial_path_for(out).exists()
        assert counters.processed == 3
        assert counters.succeeded == 3

    def test_details_payload(self, tmp_path):
        batch = _write_batch(tmp_path, ["m1"])
        out = tmp_path / "output.json"
        run_scrape_batch(batch, out, FakeScraper(), ScrapeCounters(), rate_limiter=_no_delay())

        (entry,) = json.loads(out.read_text())
        details = entry["details"]
        assert details["processingStatus"] == "complete"
        assert details["internalId"] == "20250425_a_vs_b_m1"
        assert details["events"] == [
            {"minute": "10'", "type": "goal", "player": "P", "assist": "Q"},
            {"minute": "20'", "type": "goal", "player": "R", "isOwnGoal": True},
        ]
        assert entry["dateInfo"] == {
            "parsedDate": "2025-04-25T15:00:00",
            "properInternalId": "20250425_a_vs_b_m1",
        }

    def test_failure_recorded_and_shard_continues(self, tmp_path):
        batch = _write_batch(tmp_path, ["m1", "m2", "m3"])
        out = tmp_path / "output.json"
        counters = ScrapeCounters()

        run_scrape_batch(batch, out, FakeScraper(fail={"m2"}), counters, rate_limiter=_no_delay())

        data = json.loads(out.read_text())
        assert data[1] == {"matchId": "m2", "scrapeId": 2, "error": "timeout loading m2"}
        assert "details" in data[0] and "details" in data[2]
        assert counters.failed == 1
        assert counters.succeeded == 2

    def test_sample_limits_entries(self, tmp_path):
        batch = _write_batch(tmp_path, ["m1", "m2", "m3"])
        scraper = FakeScraper()
        counters = ScrapeCounters()
        run_scrape_batch(batch, tmp_path / "o.json", scraper, counters,
                         rate_limiter=_no_delay(), sample=2)
        assert scraper.calls == ["m1", "m2"]
        assert counters.entries_loaded == 3
        assert counters.processed == 2

    def test_delay_between_matches_only(self, tmp_path):
        batch = _write_batch(tmp_path, ["m1", "m2", "m3"])
        with patch("match_etl.scrape_batch.time.sleep") as sleep:
            run_scrape_batch(batch, tmp_path / "o.json", FakeScraper(), ScrapeCounters(),
                             rate_limiter=RateLimiter(base_delay=1.0, jitter=0.0))
        assert sleep.call_count == 2

    def test_backoff_after_failure(self, tmp_path):
        batch = _write_batch(tmp_path, ["m1", "m2"])
        rl = RateLimiter(base_delay=1.0, jitter=0.0)
        with patch("match_etl.scrape_batch.time.sleep") as sleep:
            run_scrape_batch(batch, tmp_path / "o.json", FakeScraper(fail={"m1"}),
                             ScrapeCounters(), rate_limiter=rl)
        sleep.assert_called_once_with(2.0)

    def test_malformed_batch_raises_before_scraping(self, tmp_path):
        batch = tmp_path / "batch-001.json"
        batch.write_text('[{"scrapeId": 1}]')
        scraper = FakeScraper()
        with pytest.raises(MalformedBatchFileError):
            run_scrape_batch(batch, tmp_path / "o.json", scraper, ScrapeCounters(),
                             rate_limiter=_no_delay())
        assert scraper.calls == []

    def test_interrupt_leaves_partial_results(self, tmp_path):
        batch = _write_batch(tmp_path, ["m1", "m2", "m3"])
        out = tmp_path / "output.json"
        with pytest.raises(KeyboardInterrupt):
            run_scrape_batch(batch, out, FakeScraper(interrupt_on="m3"), ScrapeCounters(),
                             rate_limiter=_no_delay())
        assert not out.exists()
        entries = read_result_entries(partial_path_for(out))
        assert [e["matchId"] for e in entries] == ["m1", "m2"]

    def test_empty_shard(self, tmp_path):
        batch = _write_batch(tmp_path, [])
        out = tmp_path / "output.json"
        run_scrape_batch(batch, out, FakeScraper(), ScrapeCounters(), rate_limiter=_no_delay())
        assert json.loads(out.read_text()) == []

    def test_memory_logged_every_five_matches(self, tmp_path):
        batch = _write_batch(tmp_path, [f"m{i}" for i in range(11)])
        with patch("match_etl.scrape_batch.log_memory") as mem:
            run_scrape_batch(batch, tmp_path / "o.json", FakeScraper(), ScrapeCounters(),
                             rate_limiter=_no_delay())
        labels = [c.args[0] for c in mem.call_args_list]
        assert labels == ["start", "after 5", "after 10", "done"]

    def test_warnings_capped(self, tmp_path):
        ids = [f"m{i}" for i in range(60)]
        batch = _write_batch(tmp_path, ids)
        counters = ScrapeCounters()
        run_scrape_batch(batch, tmp_path / "o.json", FakeScraper(fail=set(ids)), counters,
                         rate_limiter=_no_delay())
        assert counters.failed == 60
        assert len(counters.warnings) == 50


# ---------------------------------------------------------------------------
# Helpers / report
# ---------------------------------------------------------------------------

class TestBuildDetails:
    def test_without_date_info(self):
        summary = ScrapedSummary(match_id="m1", basic_info={}, teams={}, events=[])
        details = build_details(summary, [])
        assert details["internalId"] is None
        assert details["matchId"] == "m1"
        assert details["processedAt"]


class TestLogMemory:
    def test_tracks_peak(self):
        counters = ScrapeCounters()
        proc = MagicMock()
        proc.memory_info.side_effect = [MagicMock(rss=200_000_000), MagicMock(rss=150_000_000)]
        with patch("match_etl.scrape_batch.psutil.Process", return_value=proc):
            assert log_memory("start", counters) == 200.0
            log_memory("after 5", counters)
        assert counters.peak_rss_mb == 200.0


class TestReport:
    def test_counts_and_average(self, tmp_path):
        c = ScrapeCounters(processed=4, succeeded=3, failed=1, total_ms=1000)
        c.warnings.append("m9: timeout")
        report = build_scrape_report(c, tmp_path / "output.json")
        assert "succeeded        : 3" in report
        assert "average_ms       : 250" in report
        assert "m9: timeout" in report
        assert c.to_dict()["average_ms"] == 250
