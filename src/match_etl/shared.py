"""match_etl.shared

Shared exceptions and run-report support used by the export, scrape,
import and sweep commands.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MatchEtlError(Exception):
    """Base class for pipeline errors."""


class InvalidTransitionError(MatchEtlError):
    """Raised when a processing_status change is not allowed by the lifecycle."""


class MalformedBatchFileError(MatchEtlError, ValueError):
    """Raised when a shard or result file cannot be parsed into typed entries."""


class SettingsValidationError(MatchEtlError, ValueError):
    """Raised when a YAML settings file fails validation."""


class ScrapeError(MatchEtlError):
    """Raised by a summary scraper when a page cannot be turned into a summary."""


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

class SupportsToDict(Protocol):
    def to_dict(self) -> dict[str, Any]:
        ...


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    source_paths: dict[str, str],
    counters: SupportsToDict,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
