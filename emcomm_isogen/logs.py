"""Logging setup for emcomm_isogen.

This module handles:
- Console logging through rich's RichHandler
- A per-build log file receiving every record, DEBUG included
- Timestamped build log naming
- Optional echo of every external command on the console
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
FILE_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

# Attribute set on handlers owned by configure_logging
_OWNED = "_isogen_handler"

# Logger receiving one record per external command line
COMMAND_LOGGER = "emcomm_isogen.commands"


class ConsoleFilter(logging.Filter):
    """Pass records at or above a level, plus command lines when echoing."""

    def __init__(self, level: int, echo_commands: bool = False) -> None:
        super().__init__()
        self.level = level
        self.echo_commands = echo_commands

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self.level:
            return True
        return self.echo_commands and record.name == COMMAND_LOGGER


def build_log_path(logs_dir: Path, now: datetime | None = None) -> Path:
    """Return a timestamped build log path inside logs_dir.

    Args:
        logs_dir: Directory holding build logs.
        now: Optional timestamp (defaults to current local time).

    Returns:
        Path like ``logs_dir/build_20240101_120000.log``.
    """
    now = now or datetime.now()
    return logs_dir / f"build_{now:%Y%m%d_%H%M%S}.log"


def configure_logging(
    level: str | int = "INFO",
    log_path: Path | None = None,
    console: Console | None = None,
    echo_commands: bool = False,
) -> Path | None:
    """Configure root logging for a CLI run.

    Calling this again replaces the handlers installed by a previous call.

    Args:
        level: Console log level.
        log_path: Optional build log file; receives all records.
        console: Optional rich console (stderr by default).
        echo_commands: Also show every external command line on the console.

    Returns:
        The log file path in use, if any.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _OWNED, False):
            root.removeHandler(handler)
            handler.close()

    root.setLevel(logging.DEBUG)

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        markup=False,
    )
    console_level = level if isinstance(level, int) else logging.getLevelName(level.upper())
    rich_handler.setLevel(logging.DEBUG)
    rich_handler.addFilter(ConsoleFilter(console_level, echo_commands))
    setattr(rich_handler, _OWNED, True)
    root.addHandler(rich_handler)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, FILE_DATEFMT))
        setattr(file_handler, _OWNED, True)
        root.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return log_path


__all__ = ["COMMAND_LOGGER", "ConsoleFilter", "build_log_path", "configure_logging"]
