"""Log formatting and size-rotated log files for the daemon and its members."""

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List

# One rotated generation is kept, as "<name>.old"
ROTATED_SUFFIX = ".old"
DEFAULT_MAX_LOG_BYTES = 10 * 1024 * 1024

# The webhook server logs through these; uvicorn.error and uvicorn.access are children
SERVER_LOGGERS = ("uvicorn",)

_LEVEL_NAMES = {"WARNING": "WARN", "CRITICAL": "FATAL"}


class DaemonLogFormatter(logging.Formatter):
    """Formats records as ``[<ISO-8601 UTC>] [<LEVEL>] <message>``."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )
        level = _LEVEL_NAMES.get(record.levelname, record.levelname)
        line = f"[{timestamp}] [{level}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def rotated_name(path: Path) -> Path:
    return path.with_name(path.name + ROTATED_SUFFIX)


def rotate_log_file(path: Path, max_bytes: int = DEFAULT_MAX_LOG_BYTES) -> bool:
    """Rename ``path`` to ``<path>.old`` when it has grown past ``max_bytes``.

    Returns True when a rotation happened. Any previous ``.old`` is replaced.
    """
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return False
    if size <= max_bytes:
        return False
    os.replace(path, rotated_name(path))
    return True


def _rotating_handler(log_path: Path, max_bytes: int) -> logging.handlers.RotatingFileHandler:
    handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=1, encoding="utf-8"
    )
    # Default rollover name is "<file>.1"
    handler.namer = lambda name: name[: -len(".1")] + ROTATED_SUFFIX if name.endswith(".1") else name
    return handler


def setup_daemon_logging(
    log_path: Path,
    log_level: str = "INFO",
    max_bytes: int = DEFAULT_MAX_LOG_BYTES,
) -> logging.Logger:
    """
    Route the ``agent_supervisor`` and uvicorn logger hierarchies into the daemon log.

    Args:
        log_path: Daemon log file (append-only, size-rotated)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        max_bytes: Rotation ceiling for the log file

    Returns:
        The configured package logger
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("agent_supervisor")
    logger.setLevel(getattr(logging, log_level.upper()))

    formatter = DaemonLogFormatter()
    handlers: List[logging.Handler] = []

    file_handler = _rotating_handler(log_path, max_bytes)
    file_handler.setFormatter(formatter)
    handlers.append(file_handler)

    # When detached, stderr is already redirected into the same log file
    stderr_is_redirected = not sys.stderr.isatty() if hasattr(sys.stderr, "isatty") else True
    if not stderr_is_redirected:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    for name in ("agent_supervisor", *SERVER_LOGGERS):
        target = logging.getLogger(name)
        target.propagate = False
        # Close existing handlers before clearing (prevents file descriptor leak)
        for handler in target.handlers[:]:
            handler.close()
            target.removeHandler(handler)
        for handler in handlers:
            target.addHandler(handler)

    return logger
