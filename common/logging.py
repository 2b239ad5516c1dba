# common/logging.py
from __future__ import annotations
import logging, os
from logging.handlers import RotatingFileHandler
from typing import Optional, Set

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

_FORMAT = logging.Formatter(
    fmt="%(asctime)s %(levelname)s %(name)s - %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S%z",
)

# names handed out by get_logger, so set_level can reach modules imported earlier
_configured: Set[str] = set()


def _resolve(level: Optional[str]) -> int:
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    return _LEVELS.get(name, logging.INFO)


def get_logger(name: str, log_dir: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    """
    Service logger writing to stdout and <log_dir>/<name>.log (rotating: 5MB x 5 files).
    log_dir falls back to $LOG_DIR, then "logs"; level falls back to $LOG_LEVEL.
    Calling twice with the same name returns the already configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    log_dir = log_dir or os.getenv("LOG_DIR", "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_level = _resolve(level)

    fh = RotatingFileHandler(
        filename=os.path.join(log_dir, f"{name}.log"),
        maxBytes=5_000_000,
        backupCount=5,
        encoding="utf-8",
    )
    ch = logging.StreamHandler()
    for h in (fh, ch):
        h.setFormatter(_FORMAT)
        h.setLevel(log_level)
        logger.addHandler(h)

    logger.setLevel(log_level)
    logger.propagate = False
    _configured.add(name)
    return logger


def set_level(level: str):
    """Apply a configured level (e.g. runtime.log_level) to every service logger."""
    log_level = _resolve(level)
    for name in _configured:
        logger = logging.getLogger(name)
        logger.setLevel(log_level)
        for h in logger.handlers:
            h.setLevel(log_level)
