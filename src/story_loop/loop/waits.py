"""Blocking waits with a visible countdown and cooperative stop."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

import rich_click as click

logger = logging.getLogger(__name__)


class Waiter(Protocol):
    """Anything that can block for a number of seconds."""

    def wait(self, seconds: float, *, label: str) -> bool:
        """Block; return ``False`` if interrupted before the deadline."""


def format_duration(seconds: float) -> str:
    """Format seconds as ``HH:MM:SS``."""

    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class CountdownWaiter:
    """Sleeps in short ticks, redrawing a countdown line on the terminal."""

    def __init__(
        self,
        *,
        stop_event: threading.Event | None = None,
        show_countdown: bool = True,
        tick_seconds: float = 1.0,
        log_every_seconds: float = 600.0,
        echo: Callable[..., None] = click.echo,
    ) -> None:
        self.stop_event = stop_event or threading.Event()
        self.show_countdown = show_countdown
        self.tick_seconds = tick_seconds
        self.log_every_seconds = log_every_seconds
        self._echo = echo

    def wait(self, seconds: float, *, label: str) -> bool:
        if seconds <= 0:
            return not self.stop_event.is_set()

        deadline = time.monotonic() + seconds
        last_log = time.monotonic()
        drawn = False
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return True
                if self.show_countdown:
                    self._echo(
                        click.style(f"\r{label}: {format_duration(remaining)} ", fg="yellow"),
                        nl=False,
                    )
                    drawn = True
                if time.monotonic() - last_log >= self.log_every_seconds:
                    logger.info("Still waiting... %s remaining", format_duration(remaining))
                    last_log = time.monotonic()
                if self.stop_event.wait(min(self.tick_seconds, remaining)):
                    logger.info("Wait interrupted (%s)", label)
                    return False
        finally:
            if drawn:
                self._echo("")
