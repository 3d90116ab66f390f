"""match_etl.batch_files

On-disk contracts between the exporter, the shard workers and the importer.

Shard file  (batch-NNN.json):
    [{"scrapeId": 101, "matchId": "AbC12xYz"}, ...]

Result file (one per worker run):
    [{"matchId": ..., "scrapeId": ..., "details": {...}, "dateInfo": {...}},
     {"matchId": ..., "scrapeId": ..., "error": "timeout"}, ...]

Exactly one of details / error is present per result entry.  Entries are
parsed into MatchSuccess | MatchFailure so callers branch on type, not on
which keys happen to be set.

Both files are written atomically (temp file + rename).  Workers also keep
an append-only <output>.partial.jsonl next to the final file, flushed after
every match, so a killed worker still leaves importable results behind.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Union

from match_etl.lifecycle import DETAIL_STATUSES
from match_etl.normalize import parse_iso_ts, to_iso, trim
from match_etl.shared import MalformedBatchFileError

log = logging.getLogger(__name__)

SHARD_PREFIX = "batch-"
SHARD_INDEX_WIDTH = 3
PARTIAL_SUFFIX = ".partial.jsonl"
RESULT_SUFFIXES = (".json", ".json-results", PARTIAL_SUFFIX)

_SHARD_NAME_RE = re.compile(r"^batch-(\d+)\.json$")


# ---------------------------------------------------------------------------
# Typed entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ShardEntry:
    scrape_id: int | None
    match_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"scrapeId": self.scrape_id, "matchId": self.match_id}


@dataclass(frozen=True)
class DateInfo:
    parsed_date: datetime
    proper_internal_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "parsedDate": to_iso(self.parsed_date),
            "properInternalId": self.proper_internal_id,
        }


@dataclass(frozen=True)
class MatchSuccess:
    match_id: str
    scrape_id: int | None
    details: dict[str, Any]
    date_info: DateInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "matchId": self.match_id,
            "scrapeId": self.scrape_id,
            "details": self.details,
            "dateInfo": self.date_info.to_dict() if self.date_info else None,
        }


@dataclass(frozen=True)
class MatchFailure:
    match_id: str
    scrape_id: int | None
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "matchId": self.match_id,
            "scrapeId": self.scrape_id,
            "error": self.error,
        }


ShardResult = Union[MatchSuccess, MatchFailure]


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------

def _parse_match_id(entry: dict[str, Any]) -> str:
    raw = entry.get("matchId")
    match_id = trim(raw) if isinstance(raw, str) else None
    if match_id is None:
        raise MalformedBatchFileError(f"entry has no usable matchId: {entry!r:.200}")
    return match_id


def _parse_scrape_id(entry: dict[str, Any]) -> int | None:
    raw = entry.get("scrapeId")
    if raw is None:
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise MalformedBatchFileError(f"scrapeId must be an integer, got {raw!r}")
    return raw


def date_info_from_dict(raw: Any) -> DateInfo | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise MalformedBatchFileError(f"dateInfo must be an object, got {type(raw).__name__}")
    parsed = raw.get("parsedDate")
    parsed_date = parse_iso_ts(parsed) if isinstance(parsed, str) else None
    internal_id = raw.get("properInternalId")
    if parsed_date is None or not isinstance(internal_id, str) or not internal_id:
        raise MalformedBatchFileError(f"dateInfo is incomplete: {raw!r:.200}")
    return DateInfo(parsed_date=parsed_date, proper_internal_id=internal_id)


def _contains_nul(value: Any) -> bool:
    if isinstance(value, str):
        return "\x00" in value
    if isinstance(value, dict):
        return any(_contains_nul(k) or _contains_nul(v) for k, v in value.items())
    if isinstance(value, list):
        return any(_contains_nul(v) for v in value)
    return False


# key -> (accepted types, label); None is always accepted
_DETAIL_FIELDS: dict[str, tuple[type, str]] = {
    "internalId": (str, "a string"),
    "processedAt": (str, "a string"),
    "basicInfo": (dict, "an object"),
    "teams": (dict, "an object"),
    "events": (list, "a list"),
}


def _check_details(match_id: str, details: Any) -> dict[str, Any]:
    """Reject details the store's columns and constraints would refuse."""
    if not isinstance(details, dict):
        raise MalformedBatchFileError(f"details for {match_id} must be an object")
    for key, (typ, label) in _DETAIL_FIELDS.items():
        val = details.get(key)
        if val is not None and not isinstance(val, typ):
            raise MalformedBatchFileError(f"details.{key} for {match_id} must be {label}")
    status = details.get("processingStatus")
    if status is not None and status not in DETAIL_STATUSES:
        raise MalformedBatchFileError(
            f"details.processingStatus for {match_id} must be one of "
            f"{sorted(DETAIL_STATUSES)}, got {status!r}"
        )
    if _contains_nul(details):
        raise MalformedBatchFileError(f"details for {match_id} contain a NUL character")
    return details


def shard_entry_from_dict(raw: Any) -> ShardEntry:
    if not isinstance(raw, dict):
        raise MalformedBatchFileError(f"shard entry must be an object, got {type(raw).__name__}")
    return ShardEntry(scrape_id=_parse_scrape_id(raw), match_id=_parse_match_id(raw))


def result_from_dict(raw: Any) -> ShardResult:
    """Parse one result entry into MatchSuccess or MatchFailure.

    Raises MalformedBatchFileError when the entry carries both or neither of
    details / error, when a field has the wrong type, or when details hold
    values PostgreSQL would reject (unknown processingStatus, NUL characters).
    """
    if not isinstance(raw, dict):
        raise MalformedBatchFileError(f"result entry must be an object, got {type(raw).__name__}")

    match_id = _parse_match_id(raw)
    scrape_id = _parse_scrape_id(raw)
    details = raw.get("details")
    error = raw.get("error")

    if details is not None and error is not None:
        raise MalformedBatchFileError(f"result for {match_id} has both details and error")
    if error is not None:
        return MatchFailure(match_id=match_id, scrape_id=scrape_id, error=str(error))
    if details is None:
        raise MalformedBatchFileError(f"result for {match_id} has neither details nor error")

    date_info = date_info_from_dict(raw.get("dateInfo"))
    if "\x00" in match_id or (date_info and "\x00" in date_info.proper_internal_id):
        raise MalformedBatchFileError(f"result for {match_id!r} contains a NUL character")
    return MatchSuccess(
        match_id=match_id,
        scrape_id=scrape_id,
        details=_check_details(match_id, details),
        date_info=date_info,
    )


# ---------------------------------------------------------------------------
# Atomic JSON write
# ---------------------------------------------------------------------------

def write_json_atomic(path: Path, payload: Any, indent: int | None = None) -> None:
    """Write JSON to a temp file in the target directory, then rename over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=indent, default=str)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json_array(path: Path, what: str) -> list[Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise MalformedBatchFileError(f"{what} {path.name} is not valid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise MalformedBatchFileError(f"{what} {path.name} must contain a JSON array")
    return data


# ---------------------------------------------------------------------------
# Shard files
# ---------------------------------------------------------------------------

def shard_filename(index: int) -> str:
    """1 -> 'batch-001.json'."""
    return f"{SHARD_PREFIX}{index:0{SHARD_INDEX_WIDTH}d}.json"


def existing_shard_indices(directory: Path) -> list[int]:
    if not directory.is_dir():
        return []
    indices = []
    for p in directory.iterdir():
        m = _SHARD_NAME_RE.match(p.name)
        if m:
            indices.append(int(m.group(1)))
    return sorted(indices)


def write_shard(path: Path, entries: list[ShardEntry]) -> None:
    if path.exists():
        raise FileExistsError(f"shard {path} already exists; shards are written once")
    write_json_atomic(path, [e.to_dict() for e in entries])


def load_shard(path: Path) -> list[ShardEntry]:
    return [shard_entry_from_dict(raw) for raw in _read_json_array(path, "shard file")]


# ---------------------------------------------------------------------------
# Result files
# ---------------------------------------------------------------------------

def is_result_file(path: Path) -> bool:
    return path.is_file() and path.name.endswith(RESULT_SUFFIXES)


def read_result_entries(path: Path) -> list[Any]:
    """Return the raw entries of a result file.

    Whole-file problems raise MalformedBatchFileError; entries are parsed
    individually by the caller (see result_from_dict).  For a partial
    .jsonl file a truncated final line is the expected trace of a killed
    worker and is dropped with a warning.
    """
    if not path.name.endswith(PARTIAL_SUFFIX):
        return _read_json_array(path, "result file")

    lines = path.read_text(encoding="utf-8").splitlines()
    entries: list[Any] = []
    for lineno, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError as exc:
            if lineno == len(lines):
                log.warning("Dropping truncated final line of %s", path.name)
                break
            raise MalformedBatchFileError(
                f"partial file {path.name} line {lineno} is not valid JSON: {exc}"
            ) from exc
    return entries


def partial_path_for(output_path: Path) -> Path:
    return output_path.with_name(output_path.name + PARTIAL_SUFFIX)


class ResultWriter:
    """Incremental result sink for one shard worker run.

    write() appends one JSON line to the partial file and flushes it, so
    every finished match survives a crash.  close() writes the complete
    ordered JSON array to the output path and removes the partial file.
    """

    def __init__(self, output_path: Path) -> None:
        self._path = output_path
        self._partial = partial_path_for(output_path)
        self._fh = None
        self._results: list[ShardResult] = []

    @property
    def results(self) -> list[ShardResult]:
        return list(self._results)

    def write(self, result: ShardResult) -> None:
        if self._fh is None:
            self._partial.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._partial, "w", encoding="utf-8")
        self._fh.write(json.dumps(result.to_dict(), default=str) + "\n")
        self._fh.flush()
        self._results.append(result)

    def close(self) -> Path:
        if self._fh:
            self._fh.close()
            self._fh = None
        write_json_atomic(self._path, [r.to_dict() for r in self._results], indent=2)
        self._partial.unlink(missing_ok=True)
        return self._path

    def abandon(self) -> None:
        """Close the partial file without publishing a final result file."""
        if self._fh:
            self._fh.close()
            self._fh = None
