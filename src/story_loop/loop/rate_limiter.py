"""Hourly call budget persisted as two scalar files."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from story_loop.loop.contracts import (
    CALL_COUNT_FILE,
    LAST_RESET_FILE,
    read_scalar,
    write_scalar,
)
from story_loop.loop.waits import Waiter, format_duration

logger = logging.getLogger(__name__)

BUCKET_FORMAT = "%Y%m%d%H"


def hour_bucket(moment: datetime) -> str:
    return moment.strftime(BUCKET_FORMAT)


def seconds_until_next_hour(moment: datetime) -> int:
    return 3600 - (moment.minute * 60 + moment.second)


class RateLimiter:
    """Tracks calls made within the current wall-clock hour."""

    def __init__(
        self,
        *,
        state_dir: Path,
        max_calls_per_hour: int,
        waiter: Waiter,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.count_path = state_dir / CALL_COUNT_FILE
        self.bucket_path = state_dir / LAST_RESET_FILE
        self.max_calls_per_hour = max_calls_per_hour
        self.waiter = waiter
        self.clock = clock

    def roll_over(self) -> bool:
        """Start a fresh bucket if the hour changed; return whether it did."""

        current = hour_bucket(self.clock())
        if read_scalar(self.bucket_path) == current:
            return False
        write_scalar(self.count_path, 0)
        write_scalar(self.bucket_path, current)
        logger.info("Rate limit counter reset for hour %s", current)
        return True

    def calls_this_hour(self) -> int:
        self.roll_over()
        return self._read_count()

    def can_call(self) -> bool:
        return self.calls_this_hour() < self.max_calls_per_hour

    def record_call(self) -> int:
        calls = self.calls_this_hour() + 1
        write_scalar(self.count_path, calls)
        return calls

    def wait_until_next_hour(self) -> bool:
        """Block until the next hour starts, then reset the bucket.

        Returns ``False`` when the wait was interrupted; the bucket is left
        untouched in that case.
        """

        calls = self._read_count()
        logger.warning(
            "Rate limit reached (%d/%d). Waiting for reset...",
            calls,
            self.max_calls_per_hour,
        )
        wait_seconds = seconds_until_next_hour(self.clock())
        logger.info("Sleeping for %s until next hour...", format_duration(wait_seconds))
        if not self.waiter.wait(wait_seconds, label="Time until reset"):
            return False

        write_scalar(self.count_path, 0)
        write_scalar(self.bucket_path, hour_bucket(self.clock()))
        logger.info("Rate limit reset! Ready for new calls.")
        return True

    def _read_count(self) -> int:
        raw = read_scalar(self.count_path)
        if raw is None:
            return 0
        try:
            value = int(raw)
        except ValueError:
            logger.warning("Ignoring malformed call counter %s: %r", self.count_path, raw)
            return 0
        return max(0, value)
