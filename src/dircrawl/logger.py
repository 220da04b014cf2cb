from __future__ import annotations

import logging
import sys
import tempfile
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "dircrawl"
CONSOLE_FORMAT = "[%(levelname)s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
MAX_LOG_BYTES = 100 * 1024 * 1024
LOG_BACKUPS = 5

VERBOSITY: dict[str, int] = {
    "ALL":   logging.DEBUG,
    "INFO":  logging.INFO,
    "WARN":  logging.WARNING,
    "ERROR": logging.ERROR,
}


def parse_verbosity(verbosity: str | None) -> int:
    """Map ALL/INFO/WARN/ERROR to a logging level, falling back to INFO."""
    # Logging is not set up yet, so warnings go straight to stdout
    if verbosity is None:
        print("[WARN] Log verbosity is not set. Will use 'INFO'.", flush=True)
        return logging.INFO

    level = VERBOSITY.get(verbosity.strip().upper())
    if level is None:
        print(f"[WARN] Invalid log verbosity '{verbosity}'. Will use 'INFO'.", flush=True)
        return logging.INFO
    return level


def default_log_path() -> Path:
    return Path(tempfile.gettempdir()) / "crawler" / f"{uuid.uuid4()}.log"


class _CrawlerHandler:
    """Marker mixin for handlers installed by configure_logging()."""


class _ConsoleHandler(_CrawlerHandler, logging.StreamHandler):
    pass


class _FileHandler(_CrawlerHandler, RotatingFileHandler):
    pass


def configure_logging(verbosity: str | None, log_file: str | Path | None = None) -> Path:
    """Send dircrawl logs to stdout and a size-rotated file.

    Calling it again replaces the handlers a previous call installed.

    Args:
        verbosity: ALL, INFO, WARN or ERROR.
        log_file: Log file path (default: a new file under <tmp>/crawler/).

    Returns:
        Path of the log file.
    """
    level = parse_verbosity(verbosity)
    path = Path(log_file) if log_file else default_log_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger(LOGGER_NAME)
    for handler in [h for h in root.handlers if isinstance(h, _CrawlerHandler)]:
        root.removeHandler(handler)
        handler.close()

    console = _ConsoleHandler(sys.stdout)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)

    file_handler = _FileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    root.addHandler(file_handler)

    root.setLevel(level)
    root.propagate = False
    return path
