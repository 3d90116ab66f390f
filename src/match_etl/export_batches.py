"""match_etl.export_batches

Batch partitioner / exporter.

Reads every pending match in scrape_id order, cuts the list into shards of
`limit` entries and, per shard:
  1. writes batch-NNN.json atomically (temp file + rename);
  2. marks the shard's match ids queued in one bulk UPDATE.

Step 2 never runs for a shard whose file was not written.  If the process
dies between the two steps the shard file exists while its matches are still
pending; the next export picks them up again under a new shard number and
the importer's guarded status update makes the double result harmless.

Shard numbering continues after the highest batch-NNN.json already in the
output directory, so an export never overwrites an earlier shard.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from match_etl.batch_files import (
    ShardEntry,
    existing_shard_indices,
    shard_filename,
    write_shard,
)
from match_etl.store import MatchStore

log = logging.getLogger(__name__)

DEFAULT_LIMIT = 2500


@dataclass
class ExportCounters:
    matches_selected: int = 0
    shards_written: int = 0
    matches_queued: int = 0
    queue_mismatches: int = 0
    first_shard_index: int | None = None
    shard_files: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


def partition(entries: Sequence[ShardEntry], limit: int) -> list[list[ShardEntry]]:
    """Consecutive slices of exactly `limit` entries; the last may be shorter."""
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")
    return [list(entries[i:i + limit]) for i in range(0, len(entries), limit)]


def run_export(
    store: MatchStore,
    out_dir: Path,
    counters: ExportCounters,
    limit: int = DEFAULT_LIMIT,
    start: int = 0,
    exclude_countries: Sequence[str] = (),
    exclude_leagues: Sequence[str] = (),
    max_attempts: int = 3,
) -> list[Path]:
    """Export pending matches into shard files; return the files written."""
    entries = store.select_pending_shard_entries(
        start=start,
        exclude_countries=exclude_countries,
        exclude_leagues=exclude_leagues,
        max_attempts=max_attempts,
    )
    counters.matches_selected = len(entries)
    if not entries:
        log.info("No pending matches to export")
        return []

    out_dir.mkdir(parents=True, exist_ok=True)
    existing = existing_shard_indices(out_dir)
    next_index = (existing[-1] + 1) if existing else 1
    counters.first_shard_index = next_index

    written: list[Path] = []
    for shard in partition(entries, limit):
        path = out_dir / shard_filename(next_index)
        write_shard(path, shard)
        counters.shards_written += 1
        counters.shard_files.append(path.name)
        written.append(path)

        queued = store.mark_queued([e.match_id for e in shard])
        counters.matches_queued += queued
        if queued != len(shard):
            # Another process moved some of these matches since selection.
            counters.queue_mismatches += len(shard) - queued
            counters.warnings.append(
                f"{path.name}: {len(shard) - queued} of {len(shard)} matches were no longer pending"
            )
        log.info("Wrote %d -> %s", len(shard), path)
        next_index += 1

    return written


def build_export_report(counters: ExportCounters, out_dir: Path) -> str:
    lines = [
        "=== Export Batches Run Report ===",
        f"out_dir          : {out_dir}",
        "",
        f"matches_selected : {counters.matches_selected}",
        f"shards_written   : {counters.shards_written}",
        f"matches_queued   : {counters.matches_queued}",
        f"queue_mismatches : {counters.queue_mismatches}",
    ]
    if counters.shard_files:
        lines += ["", "--- Shards ---"]
        lines += [f"  {name}" for name in counters.shard_files]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)
