"""Deterministic signal extraction from raw agent output."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path

from story_loop.loop.contracts import ANALYSIS_FILE, AnalysisSnapshot, write_analysis_snapshot
from story_loop.loop.models import ResponseAnalysis

logger = logging.getLogger(__name__)

_USAGE_LIMIT_PATTERNS: tuple[str, ...] = (
    "out of extra usage",
    "hit your limit",
)
_API_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"5.*hour.*limit", re.IGNORECASE),
    re.compile(r"limit.*reached", re.IGNORECASE),
    re.compile(r"usage.*limit", re.IGNORECASE),
)

_FILE_ACTION = re.compile(
    r"^\s*(?:[-*•]\s*)?(?:created|modified|updated|wrote|edited|writing|editing)"
    r"(?:\s+file)?:?\s+`?(?P<path>[\w./\\-]+\.[\w]+)`?",
    re.IGNORECASE | re.MULTILINE,
)
_ERROR_LINE = re.compile(
    r"^\s*(?:\w*(?:error|exception)(?:\[[^\]]*\])?:|fatal:|traceback \(most recent call last\))",
    re.IGNORECASE,
)
_ERROR_MARKER = re.compile(r"^\s*(?:FAILED|ERROR)\b")
_NEGATED_ERROR = re.compile(r"\b(?:no|0|zero|without)\s+errors?\b", re.IGNORECASE)
_EXIT_SIGNAL = re.compile(r"EXIT_SIGNAL\s*[:=]\s*true", re.IGNORECASE)

_MAX_ERROR_MESSAGE_CHARS = 200


def contains_completion_token(output: str, token: str) -> bool:
    return bool(token) and token in output


def find_usage_limit(output: str) -> str | None:
    """Return the matched usage-limit phrase, if any."""

    haystack = output.lower()
    for pattern in _USAGE_LIMIT_PATTERNS:
        if pattern in haystack:
            return pattern
    return None


def find_api_limit(output: str) -> str | None:
    """Return the matched API-limit pattern (line-scoped), if any."""

    for line in output.splitlines():
        for pattern in _API_LIMIT_PATTERNS:
            if pattern.search(line):
                return pattern.pattern
    return None


def analyze_response(output: str, *, changed_files: int | None = None) -> ResponseAnalysis:
    """Extract progress and error signals; falls back to empty analysis."""

    try:
        return _analyze(output, changed_files=changed_files)
    except (TypeError, ValueError, re.error) as error:
        logger.warning("Response analysis failed, using defaults: %s", error)
        return ResponseAnalysis()


def _analyze(output: str, *, changed_files: int | None) -> ResponseAnalysis:
    if changed_files is not None:
        files_modified = changed_files
    else:
        files_modified = len({match.group("path") for match in _FILE_ACTION.finditer(output)})

    error_message = ""
    for line in output.splitlines():
        if _NEGATED_ERROR.search(line):
            continue
        if _ERROR_LINE.match(line) or _ERROR_MARKER.match(line):
            error_message = line.strip()[:_MAX_ERROR_MESSAGE_CHARS]
            break

    return ResponseAnalysis(
        files_modified=max(0, files_modified),
        has_errors=bool(error_message),
        error_message=error_message,
        exit_signal=bool(_EXIT_SIGNAL.search(output)),
    )


class ResponseAnalyzer:
    """Runs ``analyze_response`` and keeps the last result on disk."""

    def __init__(self, *, state_dir: Path) -> None:
        self.path = state_dir / ANALYSIS_FILE

    def analyze(self, output: str, *, changed_files: int | None = None) -> ResponseAnalysis:
        analysis = analyze_response(output, changed_files=changed_files)
        try:
            write_analysis_snapshot(
                self.path,
                AnalysisSnapshot(
                    timestamp=datetime.now(tz=UTC).isoformat(),
                    files_modified=analysis.files_modified,
                    has_errors=analysis.has_errors,
                    error_message=analysis.error_message,
                    exit_signal=analysis.exit_signal,
                    output_size=len(output.encode("utf-8")),
                ),
            )
        except OSError as error:
            logger.warning("Could not persist analysis snapshot %s: %s", self.path, error)

        logger.info(
            "Analysis: files_modified=%d has_errors=%s exit_signal=%s",
            analysis.files_modified,
            str(analysis.has_errors).lower(),
            str(analysis.exit_signal).lower(),
        )
        if analysis.has_errors:
            logger.warning("Agent reported error: %s", analysis.error_message)
        return analysis
