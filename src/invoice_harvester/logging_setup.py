# src/invoice_harvester/logging_setup.py

"""
Logging for the harvester process.

The console is for the operator watching a queue drain; the log file keeps
everything (every dispatch, ack and poll tick) to reconstruct what happened to
one item afterwards. A harvest can run for hours, so the file rotates.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

APP_LOGGER = "invoice_harvester"
LOG_FILE_NAME = "harvest.log"

# Loggers that speak on every poll tick / history scan: console shows them from WARNING.
CHATTY_PREFIXES = (
    "invoice_harvester.harvest.detector",
    "invoice_harvester.history.",
)


class _ConsoleNoiseFilter(logging.Filter):
    """Console filter: app logs pass (chatty ones from WARNING), everything else from ERROR."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name == APP_LOGGER or name.startswith(APP_LOGGER + "."):
            if name.startswith(CHATTY_PREFIXES):
                return record.levelno >= logging.WARNING
            return True

        # Third-party libraries and captured warnings ('py.warnings').
        return record.levelno >= logging.ERROR


def _formatter() -> logging.Formatter:
    return logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_logging(
    *,
    log_dir: str | Path = ".local/harvest",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> Path:
    """
    Install a filtered stderr handler and a rotating file handler on the root logger.

    Call once at startup, before the first log line. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(_formatter())
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(_formatter())
    root.addHandler(file_handler)

    logging.captureWarnings(True)
    return log_file
