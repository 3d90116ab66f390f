"""match_etl.import_results

Result importer: fold shard worker output back into the store.

Per result entry:
  - MatchFailure     -> status untouched, counted as an error
  - unknown match    -> counted as an error
  - MatchSuccess     -> in one transaction:
                          advance_status(complete)
                          date + internal id (dateInfo, else details.internalId)
                          upsert match_details
Malformed files and malformed entries are logged, counted and skipped, as
are entries PostgreSQL refuses (data or integrity errors; the entry's
transaction is rolled back).  Any other store error propagates and aborts
the run.

Re-importing the same files leaves the store unchanged: complete -> complete
is not an allowed transition and the upserts only write changed payloads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import psycopg

from match_etl.batch_files import (
    MatchFailure,
    ShardResult,
    is_result_file,
    read_result_entries,
    result_from_dict,
)
from match_etl.lifecycle import COMPLETE
from match_etl.shared import MalformedBatchFileError
from match_etl.store import MatchStore

log = logging.getLogger(__name__)

MAX_WARNINGS = 50


@dataclass
class ImportCounters:
    files_read: int = 0
    files_failed: int = 0
    processed: int = 0
    succeeded: int = 0
    errored: int = 0
    # breakdown of errored
    worker_errors: int = 0
    malformed_entries: int = 0
    unknown_matches: int = 0
    store_rejected: int = 0
    # breakdown of succeeded
    status_advanced: int = 0
    status_unchanged: int = 0
    details_written: int = 0
    dates_applied: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:MAX_WARNINGS]
        return d

    def warn(self, message: str) -> None:
        if len(self.warnings) < MAX_WARNINGS:
            self.warnings.append(message)


def find_result_files(results_dir: Path) -> list[Path]:
    """Result files anywhere under results_dir, in path order."""
    return sorted(p for p in results_dir.rglob("*") if is_result_file(p))


def apply_result(store: MatchStore, result: ShardResult, counters: ImportCounters) -> None:
    if isinstance(result, MatchFailure):
        counters.errored += 1
        counters.worker_errors += 1
        log.info("Skipping %s due to worker error: %s", result.match_id, result.error)
        return

    match_id = result.match_id
    if store.get_match(match_id) is None:
        counters.errored += 1
        counters.unknown_matches += 1
        counters.warn(f"unknown match id {match_id}")
        log.warning("Result for unknown match %s skipped", match_id)
        return

    with store.transaction():
        advanced = store.advance_status(match_id, COMPLETE)
        if result.date_info is not None:
            if store.apply_date_info(
                match_id,
                result.date_info.parsed_date,
                result.date_info.proper_internal_id,
            ):
                counters.dates_applied += 1
        else:
            internal_id = result.details.get("internalId")
            if internal_id:
                store.set_internal_id(match_id, internal_id)
        if store.upsert_details(match_id, result.details):
            counters.details_written += 1

    counters.succeeded += 1
    if advanced:
        counters.status_advanced += 1
    else:
        counters.status_unchanged += 1


def import_file(store: MatchStore, path: Path, counters: ImportCounters) -> None:
    try:
        entries = read_result_entries(path)
    except (MalformedBatchFileError, OSError, UnicodeDecodeError) as exc:
        counters.files_failed += 1
        counters.warn(f"{path.name}: {exc}")
        log.error("Error processing file %s: %s", path, exc)
        return

    counters.files_read += 1
    log.info("Processing %s (%d results)", path, len(entries))
    for raw in entries:
        counters.processed += 1
        try:
            result = result_from_dict(raw)
        except MalformedBatchFileError as exc:
            counters.errored += 1
            counters.malformed_entries += 1
            counters.warn(f"{path.name}: {exc}")
            log.warning("Malformed entry in %s: %s", path.name, exc)
            continue
        try:
            apply_result(store, result, counters)
        except (psycopg.DataError, psycopg.IntegrityError) as exc:
            counters.errored += 1
            counters.store_rejected += 1
            counters.warn(f"{path.name}: {result.match_id}: {exc}")
            log.warning("Store rejected %s from %s: %s", result.match_id, path.name, exc)

        if counters.processed % 100 == 0:
            log.info("Progress: %d results processed", counters.processed)


def run_import(store: MatchStore, results_dir: Path, counters: ImportCounters) -> None:
    files = find_result_files(results_dir)
    log.info("Found %d result files in %s", len(files), results_dir)
    for path in files:
        import_file(store, path, counters)


def build_import_report(counters: ImportCounters, results_dir: Path) -> str:
    lines = [
        "=== Import Results Run Report ===",
        f"results_dir      : {results_dir}",
        "",
        f"files_read       : {counters.files_read}",
        f"files_failed     : {counters.files_failed}",
        "",
        f"processed        : {counters.processed}",
        f"succeeded        : {counters.succeeded}",
        f"errored          : {counters.errored}",
        "",
        "--- Succeeded ---",
        f"status_advanced  : {counters.status_advanced}",
        f"status_unchanged : {counters.status_unchanged}",
        f"details_written  : {counters.details_written}",
        f"dates_applied    : {counters.dates_applied}",
        "",
        "--- Errors ---",
        f"worker_errors    : {counters.worker_errors}",
        f"malformed_entries: {counters.malformed_entries}",
        f"unknown_matches  : {counters.unknown_matches}",
        f"store_rejected   : {counters.store_rejected}",
    ]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)
