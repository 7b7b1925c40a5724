"""Console and per-project file logging for CLI runs."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import rich_click as click

_LEVEL_COLORS = {
    logging.DEBUG: "bright_black",
    logging.INFO: "blue",
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}
_FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MANAGED_ATTR = "_story_loop_handler"


class _ClickEchoHandler(logging.Handler):
    """Writes coloured records through ``click.echo`` to the current stderr."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            color = _LEVEL_COLORS.get(record.levelno)
            if color is not None:
                message = click.style(message, fg=color, bold=record.levelno >= logging.ERROR)
            click.echo(message, err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def configure_logging(*, log_dir: Path | None = None, verbose: bool = False) -> Path | None:
    """Install console (and optional daily file) handlers on the package logger.

    Safe to call repeatedly: handlers from an earlier call are replaced.
    Returns the log file path when one was opened.
    """

    package_logger = logging.getLogger("story_loop")
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(package_logger.handlers):
        if getattr(handler, _MANAGED_ATTR, False):
            package_logger.removeHandler(handler)
            handler.close()

    console = _ClickEchoHandler()
    console.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", "%H:%M:%S"))
    _install(package_logger, console)

    if log_dir is None:
        return None
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"story_loop_{datetime.now().strftime('%Y%m%d')}.log"
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, _DATE_FORMAT))
    _install(package_logger, file_handler)
    return log_path


def _install(target: logging.Logger, handler: logging.Handler) -> None:
    setattr(handler, _MANAGED_ATTR, True)
    target.addHandler(handler)
