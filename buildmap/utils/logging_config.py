"""
Buildmap logging.

Every module logs through ``get_logger(__name__)``. Per-record context is
passed as ``extra`` and rendered after the message:

    logger.warning("Building search failed", extra={"record_id": "katedrala", "radius_m": 120})
    # 2025-01-01 12:00:00 | WARNING  | buildmap.geo.footprint_matcher | Building search failed [record_id=katedrala, radius_m=120]

Console output goes to stderr so it never interleaves with report tables.
With ``log_to_file`` a JSON-lines file is written as well, one object per
record, always at DEBUG.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union


DEFAULT_LOG_LEVEL = os.environ.get("BUILDMAP_LOG_LEVEL", "INFO").upper()

LOG_DIR = Path(os.environ.get("BUILDMAP_LOG_DIR", "logs"))

# Rendered in this order when present on a record
CONTEXT_KEYS = ("record_id", "query", "radius_m", "osm_ref", "attempts")

# Chatty libraries capped at WARNING
QUIET_LOGGERS = ("urllib3", "requests", "pyproj")


class BuildmapFormatter(logging.Formatter):
    """Console formatter: one line per record, level-coloured on a TTY."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True, stream=None):
        stream = stream or sys.stderr
        self.use_colors = use_colors and hasattr(stream, "isatty") and stream.isatty()
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = ", ".join(
            f"{key}={getattr(record, key)}" for key in CONTEXT_KEYS if hasattr(record, key)
        )
        if context:
            line = f"{line} [{context}]"
        if not self.use_colors:
            return line
        return f"{self.COLORS.get(record.levelname, '')}{line}{self.RESET}"


class FileFormatter(logging.Formatter):
    """JSON-lines formatter for the log file."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_KEYS + ("error_type",):
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def setup_logging(
    level: Union[str, int] = DEFAULT_LOG_LEVEL,
    log_to_file: bool = False,
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """
    Configure the root logger. Safe to call more than once; handlers are replaced.

    Args:
        level: Console log level name or number
        log_to_file: Also write JSON lines to ``log_file``
        log_file: Log file path (default: logs/buildmap_YYYYMMDD.log)

    Raises:
        ValueError: If ``level`` is not a known level name
    """
    console_level = _resolve_level(level)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(BuildmapFormatter(stream=sys.stderr))
    console_handler.setLevel(console_level)
    root_logger.addHandler(console_handler)

    root_level = console_level
    if log_to_file:
        path = Path(log_file) if log_file else LOG_DIR / f"buildmap_{datetime.now():%Y%m%d}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(FileFormatter())
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)
        root_level = logging.DEBUG

    root_logger.setLevel(root_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Module logger; pass ``__name__``."""
    return logging.getLogger(name)
