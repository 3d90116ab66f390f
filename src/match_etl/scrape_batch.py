"""match_etl.scrape_batch

Shard worker: turn one shard file into one result file.

Design principles:
  - Sequential and polite: one in-flight request, 1.25s base delay, ±0.25s
    jitter, exponential backoff while failures repeat.
  - Never aborts the shard: any exception for a match becomes a
    MatchFailure entry and the worker moves on.
  - Crash-tolerant output: every finished match is flushed to
    <output>.partial.jsonl; the final JSON array is published atomically
    when the shard is done.
  - No store access: results go to disk only; the importer owns the store.
  - Memory checkpoints: RSS is logged at start, every MEM_LOG_EVERY matches
    and at the end; the peak lands in the run report.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psutil

from match_etl.batch_files import (
    MatchFailure,
    MatchSuccess,
    ResultWriter,
    ShardEntry,
    ShardResult,
    load_shard,
)
from match_etl.events import count_goals, prepare_events
from match_etl.lifecycle import COMPLETE
from match_etl.normalize import to_iso
from match_etl.summary import ScrapedSummary, SummaryScraper

log = logging.getLogger(__name__)

MAX_WARNINGS = 50
MEM_LOG_EVERY = 5


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class ScrapeCounters:
    entries_loaded: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    events_raw: int = 0
    events_kept: int = 0
    goals: int = 0
    undated: int = 0
    total_ms: int = 0
    peak_rss_mb: float = 0.0
    warnings: list[str] = field(default_factory=list)

    @property
    def average_ms(self) -> int:
        return round(self.total_ms / self.processed) if self.processed else 0

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["average_ms"] = self.average_ms
        d["warnings"] = self.warnings[:MAX_WARNINGS]
        return d

    def warn(self, message: str) -> None:
        if len(self.warnings) < MAX_WARNINGS:
            self.warnings.append(message)


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """Single-thread delay between matches with jitter and exponential backoff."""

    base_delay: float = 1.25
    jitter: float = 0.25
    max_backoff: float = 32.0
    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _backoff_mult: float = field(default=1.0, init=False, repr=False)

    def next_delay(self) -> float:
        delay = self.base_delay * self._backoff_mult
        delay += random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    def sleep(self) -> None:
        time.sleep(self.next_delay())

    def on_success(self) -> None:
        self._consecutive_failures = 0
        self._backoff_mult = 1.0

    def on_failure(self) -> None:
        self._consecutive_failures += 1
        self._backoff_mult = min(self._backoff_mult * 2.0, self.max_backoff)

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures


# ---------------------------------------------------------------------------
# Per-match
# ---------------------------------------------------------------------------

def build_details(summary: ScrapedSummary, events: list[dict[str, Any]]) -> dict[str, Any]:
    """The match_details payload as the importer stores it."""
    internal_id = summary.date_info.proper_internal_id if summary.date_info else None
    return {
        "matchId": summary.match_id,
        "internalId": internal_id,
        "basicInfo": summary.basic_info,
        "teams": summary.teams,
        "events": events,
        "processingStatus": COMPLETE,
        "processedAt": to_iso(datetime.now(timezone.utc)),
    }


def scrape_entry(
    entry: ShardEntry,
    scraper: SummaryScraper,
    counters: ScrapeCounters,
) -> ShardResult:
    try:
        summary = scraper.scrape_summary(entry.match_id)
    except Exception as exc:  # noqa: BLE001
        message = str(exc) or type(exc).__name__
        log.warning("%s (scrapeId %s) failed: %s", entry.match_id, entry.scrape_id, message)
        counters.failed += 1
        counters.warn(f"{entry.match_id}: {message}")
        return MatchFailure(match_id=entry.match_id, scrape_id=entry.scrape_id, error=message)

    events = prepare_events(summary.events)
    goals = count_goals(events)
    counters.events_raw += len(summary.events)
    counters.events_kept += len(events)
    counters.goals += goals
    if summary.date_info is None:
        counters.undated += 1
    counters.succeeded += 1
    log.info(
        "%s: raw %d events -> unique %d (dropped %d), goals: %d",
        entry.match_id, len(summary.events), len(events),
        len(summary.events) - len(events), goals,
    )
    return MatchSuccess(
        match_id=entry.match_id,
        scrape_id=entry.scrape_id,
        details=build_details(summary, events),
        date_info=summary.date_info,
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def log_memory(label: str, counters: ScrapeCounters) -> float:
    """Log resident set size in MB and keep the peak on counters."""
    rss_mb = psutil.Process().memory_info().rss / 1e6
    counters.peak_rss_mb = max(counters.peak_rss_mb, round(rss_mb, 1))
    log.info("Memory [%s]: RSS %.1f MB", label, rss_mb)
    return rss_mb


def run_scrape_batch(
    batch_path: Path,
    output_path: Path,
    scraper: SummaryScraper,
    counters: ScrapeCounters,
    rate_limiter: RateLimiter | None = None,
    sample: int | None = None,
) -> Path:
    """Process every entry of one shard in order; return the result file path.

    A malformed shard file raises MalformedBatchFileError before any match
    is attempted.
    """
    entries = load_shard(batch_path)
    counters.entries_loaded = len(entries)
    if sample is not None:
        entries = entries[:sample]
    log.info("Loaded %d entries from %s (processing %d)",
             counters.entries_loaded, batch_path, len(entries))

    rate_limiter = rate_limiter or RateLimiter()
    writer = ResultWriter(output_path)
    log_memory("start", counters)
    try:
        for idx, entry in enumerate(entries):
            if idx > 0:
                rate_limiter.sleep()

            t0 = time.monotonic()
            result = scrape_entry(entry, scraper, counters)
            elapsed_ms = int((time.monotonic() - t0) * 1000)

            if isinstance(result, MatchFailure):
                rate_limiter.on_failure()
            else:
                rate_limiter.on_success()

            writer.write(result)
            counters.processed += 1
            counters.total_ms += elapsed_ms
            log.debug("%s done in %d ms", entry.match_id, elapsed_ms)
            if counters.processed % MEM_LOG_EVERY == 0:
                log_memory(f"after {counters.processed}", counters)
    except BaseException:
        # The partial file stays behind for the importer.
        writer.abandon()
        raise

    path = writer.close()
    log_memory("done", counters)
    return path


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_scrape_report(counters: ScrapeCounters, output_path: Path) -> str:
    lines = [
        "=== Scrape Batch Run Report ===",
        f"output           : {output_path}",
        "",
        f"entries_loaded   : {counters.entries_loaded}",
        f"processed        : {counters.processed}",
        f"succeeded        : {counters.succeeded}",
        f"failed           : {counters.failed}",
        f"undated          : {counters.undated}",
        "",
        "--- Events ---",
        f"events_raw       : {counters.events_raw}",
        f"events_kept      : {counters.events_kept}",
        f"goals            : {counters.goals}",
        "",
        "--- Timing ---",
        f"total_ms         : {counters.total_ms}",
        f"average_ms       : {counters.average_ms}",
        f"peak_rss_mb      : {counters.peak_rss_mb}",
    ]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)
