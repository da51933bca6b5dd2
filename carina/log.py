"""Process-wide logger writing to the console and to a size-rotated file."""

from __future__ import annotations

import logging
import os
import sys
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_PATH = "/var/log/carina/carina.log"
MAX_BYTES = 30 * 1024 * 1024
BACKUP_COUNT = 3
MAX_AGE_DAYS = 1

_LOGGER_NAME = "carina"
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
_LABELS = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
}

_logger = logging.getLogger(_LOGGER_NAME)
_logger.propagate = False
_configured = False


class _ConsoleFormatter(logging.Formatter):
    """time, level, caller and message separated by tabs."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="milliseconds")
        label = getattr(record, "carina_level", None) or _LABELS.get(record.levelno, record.levelname.lower())
        line = f"{stamp}\t{label}\t{record.filename}:{record.lineno}\t{record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class _RotatingFile(RotatingFileHandler):
    """Size-based rotation that also drops backups older than MAX_AGE_DAYS."""

    def doRollover(self) -> None:
        super().doRollover()
        cutoff = time.time() - MAX_AGE_DAYS * 86400
        base = Path(self.baseFilename)
        for backup in base.parent.glob(base.name + ".*"):
            try:
                if backup.stat().st_mtime < cutoff:
                    backup.unlink()
            except FileNotFoundError:
                pass


def _resolve_level(level: str | int | None) -> int:
    if level is None:
        return logging.DEBUG if os.environ.get("DEBUG") else logging.INFO
    if isinstance(level, int):
        return level
    try:
        return _LEVELS[level.lower()]
    except KeyError:
        raise ValueError(f"unknown log level: {level!r}") from None


def setup(
    log_path: str | Path | None = LOG_PATH,
    level: str | int | None = None,
    console: bool = True,
) -> logging.Logger:
    """(Re)configure the logger and return it.

    ``level`` defaults to debug when the DEBUG environment variable is set,
    otherwise info. ``log_path`` of None disables the file output.
    """
    global _configured
    resolved = _resolve_level(level)
    for handler in list(_logger.handlers):
        _logger.removeHandler(handler)
        handler.close()

    formatter = _ConsoleFormatter()
    if console:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(formatter)
        _logger.addHandler(stream)
    if log_path is not None:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = _RotatingFile(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, delay=True)
        rotating.setFormatter(formatter)
        _logger.addHandler(rotating)
    if not _logger.handlers:
        _logger.addHandler(logging.NullHandler())

    _logger.setLevel(resolved)
    _configured = True
    return _logger


def get_logger() -> logging.Logger:
    """Return the logger, configuring it with defaults on first use."""
    if not _configured:
        try:
            setup()
        except OSError:
            setup(log_path=None)
    return _logger


def _log(level: int, msg: str, args: tuple, label: str | None = None) -> str:
    logger = get_logger()
    logger.log(level, msg, *args, stacklevel=3, extra={"carina_level": label})
    return msg % args if args else msg


def debug(msg: str, *args: object) -> None:
    """Log at debug level."""
    _log(logging.DEBUG, msg, args)


def info(msg: str, *args: object) -> None:
    """Log at info level."""
    _log(logging.INFO, msg, args)


def warn(msg: str, *args: object) -> None:
    """Log at warn level."""
    _log(logging.WARNING, msg, args)


def error(msg: str, *args: object) -> None:
    """Log at error level."""
    _log(logging.ERROR, msg, args)


def panic(msg: str, *args: object) -> None:
    """Log at panic level, then raise RuntimeError with the message."""
    text = _log(logging.CRITICAL, msg, args, label="panic")
    raise RuntimeError(text)


def fatal(msg: str, *args: object) -> None:
    """Log at fatal level, then exit the process with status 1."""
    _log(logging.CRITICAL, msg, args, label="fatal")
    sys.exit(1)