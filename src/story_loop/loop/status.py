"""Status snapshot publishing and rendering."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from story_loop.loop.contracts import (
    STATUS_FILE,
    StatusSnapshot,
    read_status_snapshot,
    write_status_snapshot,
)
from story_loop.loop.ledger import LedgerSnapshot, TaskLedger
from story_loop.loop.models import LoopStatus
from story_loop.loop.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

PENDING_PREVIEW_LIMIT = 5
_STORY_PREVIEW_CHARS = 45


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class StatusPublisher:
    """Overwrites ``status.json`` with fresh ledger and budget counts."""

    def __init__(
        self,
        *,
        state_dir: Path,
        ledger: TaskLedger,
        rate_limiter: RateLimiter,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.path = state_dir / STATUS_FILE
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.clock = clock

    def publish(
        self,
        *,
        loop_count: int,
        status: LoopStatus,
        current_story: str = "",
    ) -> StatusSnapshot:
        snapshot = self.ledger.load()
        status_snapshot = StatusSnapshot(
            timestamp=self.clock().isoformat(),
            status=status.value,
            loop_count=loop_count,
            current_story=current_story,
            stories_complete=snapshot.complete,
            stories_total=snapshot.total,
            calls_this_hour=self.rate_limiter.calls_this_hour(),
            max_calls_per_hour=self.rate_limiter.max_calls_per_hour,
        )
        write_status_snapshot(self.path, status_snapshot)
        logger.debug("Published status %s (loop #%d)", status.value, loop_count)
        return status_snapshot

    def read(self) -> StatusSnapshot | None:
        return read_status_snapshot(self.path)


def render_status_lines(
    *,
    project_name: str,
    snapshot: StatusSnapshot,
    ledger: LedgerSnapshot,
    breaker_lines: list[str],
) -> list[str]:
    """Human-readable status report for the ``status`` command."""

    lines = [
        f"Project: {project_name}",
        f"  Status:          {snapshot.status}",
        f"  Loop count:      {snapshot.loop_count}",
        f"  Current story:   {snapshot.current_story or 'none'}",
        f"  Progress:        {snapshot.stories_complete}/{snapshot.stories_total} stories",
        f"  Calls this hour: {snapshot.calls_this_hour}/{snapshot.max_calls_per_hour}",
        f"  Last updated:    {snapshot.timestamp}",
        "",
        "Pending stories:",
    ]
    pending = ledger.pending(limit=PENDING_PREVIEW_LIMIT)
    if not ledger.readable:
        lines.append("  (ledger unreadable)")
    elif not pending:
        lines.append("  (none)")
    for story in pending:
        lines.append(f"  - [{story.id}] P{story.priority} {story.story[:_STORY_PREVIEW_CHARS]}")
    lines.append("")
    lines.extend(breaker_lines)
    return lines
