"""match_etl.cli

Operator CLI for the sharded crawl pipeline.

    match-etl export-batches --limit 2500 --out-dir batches
    BATCH_FILE=batches/batch-001.json match-etl scrape-batch --output output.json
    match-etl import-results ./results
    match-etl requeue-stale --stale-after-minutes 180

The database DSN comes from --db-dsn or MATCH_ETL_DB_DSN, never from the
settings file.  scrape-batch does not touch the database.
"""

from __future__ import annotations

import logging
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import click
import psycopg

from match_etl.export_batches import ExportCounters, build_export_report, run_export
from match_etl.import_results import ImportCounters, build_import_report, run_import
from match_etl.normalize import split_csv_list
from match_etl.scrape_batch import (
    RateLimiter,
    ScrapeCounters,
    build_scrape_report,
    run_scrape_batch,
)
from match_etl.settings import PipelineSettings, load_settings
from match_etl.shared import MalformedBatchFileError, SettingsValidationError, write_run_report
from match_etl.store import MatchStore
from match_etl.summary import HttpSummaryScraper


@dataclass
class RunContext:
    run_id: str
    started_at: str
    db_dsn: str | None
    settings: PipelineSettings


@dataclass
class SweepCounters:
    requeued: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _connect(rc: RunContext) -> MatchStore:
    if not rc.db_dsn:
        _fatal(rc.run_id, "no database DSN; pass --db-dsn or set MATCH_ETL_DB_DSN")
    try:
        conn = psycopg.connect(rc.db_dsn, autocommit=True)
    except psycopg.OperationalError as exc:
        _fatal(rc.run_id, f"cannot connect to database: {exc}")
    return MatchStore(conn)


def _finish(rc: RunContext, mode: str, report: str, paths: dict[str, str], counters: Any) -> None:
    click.echo(report)
    report_path = write_run_report(rc.run_id, rc.started_at, mode, paths, counters)
    click.echo(f"[{rc.run_id}] Run report: {report_path}")


# ---------------------------------------------------------------------------
# Group
# ---------------------------------------------------------------------------

@click.group()
@click.option("--db-dsn", envvar="MATCH_ETL_DB_DSN", default=None, help="PostgreSQL DSN")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="YAML settings file (max_attempts, delays, timeouts, ...)",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.pass_context
def main(
    ctx: click.Context,
    db_dsn: str | None,
    config_path: str | None,
    run_id: str | None,
    log_level: str,
) -> None:
    """Sharded match crawl pipeline."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    try:
        settings = load_settings(Path(config_path) if config_path else None)
    except SettingsValidationError as exc:
        _fatal(run_id, f"invalid settings file {config_path}: {exc}")
    ctx.obj = RunContext(
        run_id=run_id,
        started_at=datetime.utcnow().isoformat(),
        db_dsn=db_dsn,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# export-batches
# ---------------------------------------------------------------------------

@main.command("export-batches")
@click.option("--limit", default=None, type=click.IntRange(min=1), help="Matches per shard [default: batch_size setting, 2500]")
@click.option("--start", default=0, type=int, show_default=True, help="Minimum scrape_id")
@click.option("--exclude-country", default=None, help="Comma-separated countries to skip")
@click.option("--exclude-league", default=None, help="Comma-separated leagues to skip")
@click.option("--out-dir", default="batches", type=click.Path(file_okay=False), show_default=True)
@click.pass_obj
def export_batches(
    rc: RunContext,
    limit: int | None,
    start: int,
    exclude_country: str | None,
    exclude_league: str | None,
    out_dir: str,
) -> None:
    """Write pending matches to batch-NNN.json shards and mark them queued."""
    limit = limit or rc.settings.batch_size
    click.echo(f"[{rc.run_id}] Starting export-batches (limit={limit}, start={start})")
    counters = ExportCounters()
    store = _connect(rc)
    try:
        run_export(
            store,
            Path(out_dir),
            counters,
            limit=limit,
            start=start,
            exclude_countries=split_csv_list(exclude_country),
            exclude_leagues=split_csv_list(exclude_league),
            max_attempts=rc.settings.max_attempts,
        )
    finally:
        store.close()
    _finish(rc, "export_batches", build_export_report(counters, Path(out_dir)),
            {"out_dir": out_dir}, counters)


# ---------------------------------------------------------------------------
# scrape-batch
# ---------------------------------------------------------------------------

@main.command("scrape-batch")
@click.argument("batch_file", envvar="BATCH_FILE", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", default="output.json", type=click.Path(dir_okay=False), show_default=True)
@click.option("--sample", default=None, type=click.IntRange(min=1), help="Only process the first N entries")
@click.pass_obj
def scrape_batch(rc: RunContext, batch_file: str, output: str, sample: int | None) -> None:
    """Scrape every match of one shard into a result file."""
    click.echo(f"[{rc.run_id}] Batch -> {batch_file}")
    s = rc.settings
    scraper = HttpSummaryScraper(
        base_url=s.base_url,
        user_agent=s.user_agent,
        timeout=s.request_timeout_seconds,
    )
    rate_limiter = RateLimiter(base_delay=s.delay_base_seconds, jitter=s.delay_jitter_seconds)
    counters = ScrapeCounters()
    try:
        out_path = run_scrape_batch(
            Path(batch_file),
            Path(output),
            scraper,
            counters,
            rate_limiter=rate_limiter,
            sample=sample,
        )
    except MalformedBatchFileError as exc:
        _fatal(rc.run_id, str(exc))
    finally:
        scraper.close()
    click.echo(f"[{rc.run_id}] Saved {out_path} ({counters.processed})")
    _finish(rc, "scrape_batch", build_scrape_report(counters, out_path),
            {"batch_file": batch_file, "output": str(out_path)}, counters)


# ---------------------------------------------------------------------------
# import-results
# ---------------------------------------------------------------------------

@main.command("import-results")
@click.argument("results_dir", type=click.Path(exists=True, file_okay=False))
@click.pass_obj
def import_results(rc: RunContext, results_dir: str) -> None:
    """Apply worker result files to the store."""
    click.echo(f"[{rc.run_id}] Importing results from {results_dir}")
    counters = ImportCounters()
    store = _connect(rc)
    try:
        run_import(store, Path(results_dir), counters)
    finally:
        store.close()
    _finish(rc, "import_results", build_import_report(counters, Path(results_dir)),
            {"results_dir": results_dir}, counters)
    if counters.files_failed:
        click.echo(
            f"[{rc.run_id}] {counters.files_failed} result files could not be read",
            err=True,
        )


# ---------------------------------------------------------------------------
# requeue-stale
# ---------------------------------------------------------------------------

@main.command("requeue-stale")
@click.option("--stale-after-minutes", default=None, type=click.IntRange(min=1),
              help="Age of an in-flight match before it is reset [default: stale_after_minutes setting, 180]")
@click.pass_obj
def requeue_stale(rc: RunContext, stale_after_minutes: int | None) -> None:
    """Send matches stuck in flight back to pending (or failed when exhausted)."""
    minutes = stale_after_minutes or rc.settings.stale_after_minutes
    click.echo(f"[{rc.run_id}] Requeueing matches in flight for more than {minutes} min")
    store = _connect(rc)
    try:
        result = store.requeue_stale(timedelta(minutes=minutes), rc.settings.max_attempts)
    finally:
        store.close()
    counters = SweepCounters(**result)
    report = "\n".join([
        "=== Requeue Stale Run Report ===",
        f"stale_after_min  : {minutes}",
        f"requeued         : {counters.requeued}",
        f"failed           : {counters.failed}",
    ])
    _finish(rc, "requeue_stale", report, {"stale_after_minutes": str(minutes)}, counters)


if __name__ == "__main__":
    main()
