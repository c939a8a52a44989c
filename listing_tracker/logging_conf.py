"""Logging configuration built around structlog JSON logging.

Every record goes to the console, ``logs/tracker.log`` and, from ERROR up,
``logs/error.log``. Loggers returned by :func:`portal_logger` additionally
write to ``logs/portals/<portal>.log`` and carry the ``portal`` key, so
components only bind what is specific to them.
"""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Iterable

import structlog

_LOGGING_INITIALISED = False
LOGGER_NAME = "listing_tracker"


def log_dir() -> Path:
    """Return the log root; ``LISTING_TRACKER_HOME`` relocates it."""

    env_root = os.environ.get("LISTING_TRACKER_HOME")
    if env_root:
        return Path(env_root).expanduser().resolve() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def _portal_log_path(portal: str) -> Path:
    return log_dir() / "portals" / f"{portal}.log"


def _logging_config(root: Path, level: str) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
            }
        },
        "handlers": {
            "console": {"class": "logging.StreamHandler", "level": level, "formatter": "json"},
            "tracker_file": {
                "class": "logging.FileHandler",
                "level": "INFO",
                "filename": str(root / "tracker.log"),
                "formatter": "json",
            },
            "error_file": {
                "class": "logging.FileHandler",
                "level": "ERROR",
                "filename": str(root / "error.log"),
                "formatter": "json",
            },
        },
        "loggers": {
            LOGGER_NAME: {
                "handlers": ["console", "tracker_file", "error_file"],
                "level": level,
                "propagate": False,
            },
        },
    }


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Configure structlog + stdlib handlers and return the application logger.

    Handlers are installed once per process; a later ``verbose=True`` call
    still lowers the level to DEBUG.
    """

    global _LOGGING_INITIALISED
    root = log_dir()
    (root / "portals").mkdir(parents=True, exist_ok=True)

    if not _LOGGING_INITIALISED:
        logging.config.dictConfig(_logging_config(root, "DEBUG" if verbose else "INFO"))
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True
    elif verbose:
        logging.getLogger(LOGGER_NAME).setLevel(logging.DEBUG)
    return structlog.get_logger(LOGGER_NAME)


def portal_logger(portal: str, verbose: bool = False, **context: Any) -> structlog.BoundLogger:
    """Return a logger bound to ``portal`` (plus ``context``) with its own file."""

    configure_logging(verbose)
    path = _portal_log_path(portal)
    logger_name = f"{LOGGER_NAME}.portal.{portal}"
    py_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(path)
        for handler in py_logger.handlers
    ):
        file_handler = logging.FileHandler(path, encoding="utf-8")
        parent = logging.getLogger(LOGGER_NAME)
        if parent.handlers:
            file_handler.setFormatter(parent.handlers[0].formatter)
        file_handler.setLevel(logging.INFO)
        py_logger.addHandler(file_handler)

    return structlog.get_logger(logger_name).bind(portal=portal, **context)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    """Return the last N lines from a log file."""

    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        lines = stream.readlines()
    return lines[-line_count:]


def available_portal_logs() -> Iterable[Path]:
    portals_dir = log_dir() / "portals"
    if not portals_dir.exists():
        return []
    return sorted(portals_dir.glob("*.log"))


__all__ = [
    "available_portal_logs",
    "configure_logging",
    "log_dir",
    "portal_logger",
    "tail_log",
]
