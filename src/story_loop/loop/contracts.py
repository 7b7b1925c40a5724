"""File-based contracts for persisted loop state."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from story_loop.loop.models import BreakerState

logger = logging.getLogger(__name__)

BREAKER_RECORD_VERSION = 1
ANALYSIS_RECORD_VERSION = 1

CALL_COUNT_FILE = ".call_count"
LAST_RESET_FILE = ".last_reset"
BREAKER_FILE = ".circuit_breaker.json"
ANALYSIS_FILE = ".last_analysis.json"
STATUS_FILE = "status.json"
LEDGER_FILE = "prd.json"
PROMPT_FILE = "PROMPT.md"
LOGS_DIR = "logs"


@dataclass(slots=True)
class BreakerEvidence:
    """One recorded iteration outcome."""

    iteration: int
    files_modified: int
    has_error: bool
    output_size: int
    error_message: str
    timestamp: str


@dataclass(slots=True)
class BreakerRecord:
    """Persisted circuit breaker state."""

    state: BreakerState = BreakerState.CLOSED
    failure_history: list[BreakerEvidence] = field(default_factory=list)
    last_reset_reason: str | None = None
    consecutive_no_progress: int = 0
    consecutive_same_error: int = 0
    last_error_message: str = ""
    last_change: str | None = None
    updated_at: str | None = None
    version: int = BREAKER_RECORD_VERSION


@dataclass(slots=True)
class StatusSnapshot:
    """Observer-facing progress snapshot."""

    timestamp: str
    status: str
    loop_count: int
    current_story: str
    stories_complete: int
    stories_total: int
    calls_this_hour: int
    max_calls_per_hour: int


@dataclass(slots=True)
class AnalysisSnapshot:
    """Last response analysis, kept for observers."""

    timestamp: str
    files_modified: int
    has_errors: bool
    error_message: str
    exit_signal: bool
    output_size: int
    version: int = ANALYSIS_RECORD_VERSION


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)
    handle, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(handle, "w", encoding="utf-8") as stream:
            stream.write(text)
        Path(temp_name).replace(path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def read_scalar(path: Path) -> str | None:
    """Read a single-value state file; missing, empty or unreadable files yield ``None``."""

    try:
        value = path.read_text("utf-8").strip()
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as error:
        logger.warning("Ignoring unreadable state file %s: %s", path, error)
        return None
    return value or None


def write_scalar(path: Path, value: str | int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{value}\n", "utf-8")


def write_breaker_record(path: Path, record: BreakerRecord) -> None:
    payload = asdict(record)
    payload["state"] = record.state.value
    write_json(path, payload)


def read_breaker_record(path: Path) -> BreakerRecord:
    """Load breaker state; missing or malformed files are fresh state."""

    if not path.exists():
        return BreakerRecord()
    try:
        return _parse_breaker_record(load_json(path))
    except (OSError, TypeError, ValueError) as error:
        logger.warning("Ignoring malformed breaker state %s: %s", path, error)
        return BreakerRecord()


def _parse_breaker_record(raw: dict[str, Any]) -> BreakerRecord:
    version = raw.get("version", BREAKER_RECORD_VERSION)
    if not isinstance(version, int) or version > BREAKER_RECORD_VERSION:
        raise ValueError(f"unsupported breaker record version: {version!r}")
    state = BreakerState(raw.get("state", BreakerState.CLOSED.value))

    raw_history = raw.get("failure_history", [])
    if not isinstance(raw_history, list):
        raise TypeError("failure_history must be an array")
    history = [_parse_evidence(item) for item in raw_history]

    last_reset_reason = raw.get("last_reset_reason")
    if last_reset_reason is not None and not isinstance(last_reset_reason, str):
        raise TypeError("last_reset_reason must be a string or null")

    return BreakerRecord(
        state=state,
        failure_history=history,
        last_reset_reason=last_reset_reason,
        consecutive_no_progress=_non_negative_int(raw, "consecutive_no_progress"),
        consecutive_same_error=_non_negative_int(raw, "consecutive_same_error"),
        last_error_message=str(raw.get("last_error_message") or ""),
        last_change=_optional_str(raw.get("last_change")),
        updated_at=_optional_str(raw.get("updated_at")),
    )


def _parse_evidence(raw: object) -> BreakerEvidence:
    if not isinstance(raw, dict):
        raise TypeError("failure_history entries must be objects")
    return BreakerEvidence(
        iteration=_non_negative_int(raw, "iteration"),
        files_modified=_non_negative_int(raw, "files_modified"),
        has_error=bool(raw.get("has_error", False)),
        output_size=_non_negative_int(raw, "output_size"),
        error_message=str(raw.get("error_message") or ""),
        timestamp=str(raw.get("timestamp") or ""),
    )


def _non_negative_int(raw: dict[str, Any], key: str) -> int:
    value = raw.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{key} must be a non-negative integer")
    return value


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def write_status_snapshot(path: Path, snapshot: StatusSnapshot) -> None:
    write_json(path, asdict(snapshot))


def read_status_snapshot(path: Path) -> StatusSnapshot | None:
    """Read status snapshot; ``None`` when absent or unreadable."""

    if not path.exists():
        return None
    try:
        raw = load_json(path)
        return StatusSnapshot(
            timestamp=str(raw.get("timestamp", "unknown")),
            status=str(raw.get("status", "unknown")),
            loop_count=int(raw.get("loop_count", 0)),
            current_story=str(raw.get("current_story") or ""),
            stories_complete=int(raw.get("stories_complete", 0)),
            stories_total=int(raw.get("stories_total", 0)),
            calls_this_hour=int(raw.get("calls_this_hour", 0)),
            max_calls_per_hour=int(raw.get("max_calls_per_hour", 0)),
        )
    except (OSError, TypeError, ValueError) as error:
        logger.warning("Ignoring unreadable status snapshot %s: %s", path, error)
        return None


def write_analysis_snapshot(path: Path, snapshot: AnalysisSnapshot) -> None:
    write_json(path, asdict(snapshot))
