"""match_etl.settings

Pipeline tunables loaded from an optional YAML file.

Connection strings and credentials are never read from this file; they come
from CLI options / environment variables.

Example (config/pipeline.yml):

    max_attempts: 3
    batch_size: 2500
    request_timeout_seconds: 20
    delay_base_seconds: 1.25
    delay_jitter_seconds: 0.25
    stale_after_minutes: 180
    base_url: https://www.flashscoreusa.com
    user_agent: match-etl/0.1 (+batch summary crawler)
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from match_etl.shared import SettingsValidationError


@dataclass(frozen=True)
class PipelineSettings:
    max_attempts: int = 3
    batch_size: int = 2500
    request_timeout_seconds: float = 20.0
    delay_base_seconds: float = 1.25
    delay_jitter_seconds: float = 0.25
    stale_after_minutes: int = 180
    base_url: str = "https://www.flashscoreusa.com"
    user_agent: str = "match-etl/0.1 (+batch summary crawler)"


_INT_KEYS = frozenset({"max_attempts", "batch_size", "stale_after_minutes"})
_FLOAT_KEYS = frozenset({
    "request_timeout_seconds",
    "delay_base_seconds",
    "delay_jitter_seconds",
})
_STR_KEYS = frozenset({"base_url", "user_agent"})


def load_settings(yaml_path: Path | None) -> PipelineSettings:
    """Load and validate settings; None returns the defaults.

    Raises:
        SettingsValidationError: unknown key, wrong type or out-of-range value.
        FileNotFoundError: yaml_path does not exist.
    """
    if yaml_path is None:
        return PipelineSettings()
    try:
        data = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise SettingsValidationError(f"{yaml_path.name} is not valid YAML: {exc}") from exc
    if data is None:
        return PipelineSettings()
    return PipelineSettings(**validate_settings(data))


def validate_settings(data: Any) -> dict[str, Any]:
    """Return a dict of coerced values; raise SettingsValidationError on problems."""
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    known = {f.name for f in fields(PipelineSettings)}
    unknown = set(data) - known
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")

    out: dict[str, Any] = {}
    for key, val in data.items():
        if key in _INT_KEYS:
            if isinstance(val, bool) or not isinstance(val, int):
                raise SettingsValidationError(f"'{key}' must be an integer, got {val!r}.")
            if val < 1:
                raise SettingsValidationError(f"'{key}' must be >= 1, got {val}.")
            out[key] = val
        elif key in _FLOAT_KEYS:
            try:
                fval = float(val)
            except (TypeError, ValueError):
                raise SettingsValidationError(f"'{key}' value {val!r} is not numeric.")
            if fval < 0:
                raise SettingsValidationError(f"'{key}' must be >= 0, got {fval}.")
            out[key] = fval
        elif key in _STR_KEYS:
            if not isinstance(val, str) or not val.strip():
                raise SettingsValidationError(f"'{key}' must be a non-empty string.")
            out[key] = val.strip()

    jitter = out.get("delay_jitter_seconds", PipelineSettings.delay_jitter_seconds)
    base = out.get("delay_base_seconds", PipelineSettings.delay_base_seconds)
    if jitter > base:
        raise SettingsValidationError(
            f"'delay_jitter_seconds' ({jitter}) must be <= 'delay_base_seconds' ({base})."
        )
    return out
