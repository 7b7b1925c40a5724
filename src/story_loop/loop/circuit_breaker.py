"""Circuit breaker that halts the loop on sustained no-progress outcomes.

Every iteration is an expensive, rate-limited agent call. The breaker stops
the loop from spending the hourly budget on an agent that keeps failing
without changing anything in the workspace.

Transitions::

    CLOSED --(half_open_threshold no-progress outcomes)--> HALF_OPEN
    HALF_OPEN --(progress)--> CLOSED
    HALF_OPEN --(no_progress_threshold no-progress outcomes)--> OPEN
    any --(same_error_threshold identical errors in a row)--> OPEN
    OPEN --(reset)--> CLOSED

``OPEN`` is sticky: outcomes recorded while open are kept as evidence but
never move the state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from story_loop.config import BreakerSettings
from story_loop.loop.contracts import (
    BREAKER_FILE,
    BreakerEvidence,
    BreakerRecord,
    read_breaker_record,
    write_breaker_record,
)
from story_loop.loop.models import BreakerState

logger = logging.getLogger(__name__)

_MAX_ERROR_MESSAGE_CHARS = 500


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class CircuitBreaker:
    """File-backed breaker shared by ``run``, ``status`` and ``reset``."""

    def __init__(
        self,
        *,
        state_dir: Path,
        settings: BreakerSettings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.path = state_dir / BREAKER_FILE
        self.settings = settings or BreakerSettings()
        self.clock = clock

    def load(self) -> BreakerRecord:
        return read_breaker_record(self.path)

    def state(self) -> BreakerState:
        return self.load().state

    def should_halt(self) -> bool:
        return self.state() is BreakerState.OPEN

    def record_outcome(  # noqa: PLR0913
        self,
        *,
        iteration: int,
        files_modified: int,
        has_error: bool,
        output_size: int,
        error_message: str = "",
    ) -> BreakerState:
        record = self.load()
        now = self.clock().isoformat()
        message = error_message.strip()[:_MAX_ERROR_MESSAGE_CHARS]
        record.failure_history.append(
            BreakerEvidence(
                iteration=iteration,
                files_modified=max(0, files_modified),
                has_error=has_error,
                output_size=max(0, output_size),
                error_message=message,
                timestamp=now,
            ),
        )
        del record.failure_history[: -self.settings.history_limit]

        made_progress = (
            files_modified > 0 and output_size >= self.settings.degenerate_output_chars
        )
        if made_progress:
            record.consecutive_no_progress = 0
        else:
            record.consecutive_no_progress += 1

        if has_error and message and message == record.last_error_message:
            record.consecutive_same_error += 1
        elif has_error:
            record.consecutive_same_error = 1
        else:
            record.consecutive_same_error = 0
        record.last_error_message = message if has_error else ""

        previous = record.state
        record.state = self._next_state(record, made_progress=made_progress)
        record.updated_at = now
        if record.state is not previous:
            record.last_change = now
            self._log_transition(previous, record)
        write_breaker_record(self.path, record)
        return record.state

    def reset(self, reason: str) -> None:
        previous = self.state()
        now = self.clock().isoformat()
        write_breaker_record(
            self.path,
            BreakerRecord(
                state=BreakerState.CLOSED,
                last_reset_reason=reason,
                last_change=now,
                updated_at=now,
            ),
        )
        logger.info("Circuit breaker reset (%s -> CLOSED): %s", previous.value, reason)

    def describe(self) -> list[str]:
        record = self.load()
        lines = [
            f"Circuit breaker: {record.state.value}",
            f"  No-progress streak: {record.consecutive_no_progress}"
            f"/{self.settings.no_progress_threshold}",
            f"  Same-error streak:  {record.consecutive_same_error}"
            f"/{self.settings.same_error_threshold}",
        ]
        if record.last_reset_reason:
            lines.append(f"  Last reset reason:  {record.last_reset_reason}")
        if record.last_change:
            lines.append(f"  Last change:        {record.last_change}")
        if record.failure_history:
            last = record.failure_history[-1]
            lines.append(
                f"  Last outcome:       loop #{last.iteration} "
                f"files={last.files_modified} error={str(last.has_error).lower()} "
                f"output={last.output_size}B",
            )
        return lines

    def _next_state(self, record: BreakerRecord, *, made_progress: bool) -> BreakerState:
        settings = self.settings
        if record.state is BreakerState.OPEN:
            return BreakerState.OPEN
        if record.consecutive_same_error >= settings.same_error_threshold:
            return BreakerState.OPEN
        if record.state is BreakerState.HALF_OPEN:
            if made_progress:
                return BreakerState.CLOSED
            if record.consecutive_no_progress >= settings.no_progress_threshold:
                return BreakerState.OPEN
            return BreakerState.HALF_OPEN
        if record.consecutive_no_progress >= settings.half_open_threshold:
            return BreakerState.HALF_OPEN
        return BreakerState.CLOSED

    def _log_transition(self, previous: BreakerState, record: BreakerRecord) -> None:
        details = (
            f"no_progress={record.consecutive_no_progress} "
            f"same_error={record.consecutive_same_error}"
        )
        if record.state is BreakerState.OPEN:
            logger.error("Circuit breaker %s -> OPEN (%s)", previous.value, details)
        elif record.state is BreakerState.HALF_OPEN:
            logger.warning("Circuit breaker %s -> HALF_OPEN (%s)", previous.value, details)
        else:
            logger.info("Circuit breaker %s -> CLOSED (progress detected)", previous.value)
