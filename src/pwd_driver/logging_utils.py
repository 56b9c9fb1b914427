from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAMESPACE = "pwd_driver"
DEFAULT_LOG_FILE = "logs/pwd-driver.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_TRUTHY = {"1", "true", "yes", "on"}


def _parse_int(value: str, name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {value}") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got: {value}")
    return parsed


def _resolve_level(level: str | int) -> int:
    if not isinstance(level, str):
        return int(level)
    normalized = level.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric = logging.getLevelName(normalized)
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid log level: {level}")
    return numeric


def _has_handler(logger: logging.Logger, predicate) -> logging.Handler | None:
    for existing in logger.handlers:
        if predicate(existing):
            return existing
    return None


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
    stderr: bool | None = None,
) -> logging.Logger:
    """
    Configure rotating file logging for the pwd_driver logger namespace.

    Environment variable overrides:
    - PWD_DRIVER_LOG_FILE
    - PWD_DRIVER_LOG_LEVEL
    - PWD_DRIVER_LOG_MAX_BYTES
    - PWD_DRIVER_LOG_BACKUP_COUNT
    - PWD_DRIVER_LOG_STDERR (mirror records to stderr, for debugging a host tool run)

    Calling it again with the same file only updates the level.
    """

    resolved_log_file = Path(
        str(log_file or os.environ.get("PWD_DRIVER_LOG_FILE", DEFAULT_LOG_FILE))
    )
    numeric_level = _resolve_level(
        level or os.environ.get("PWD_DRIVER_LOG_LEVEL", DEFAULT_LOG_LEVEL)
    )
    if max_bytes is None:
        max_bytes = _parse_int(
            os.environ.get("PWD_DRIVER_LOG_MAX_BYTES", str(DEFAULT_LOG_MAX_BYTES)),
            "PWD_DRIVER_LOG_MAX_BYTES",
        )
    if backup_count is None:
        backup_count = _parse_int(
            os.environ.get("PWD_DRIVER_LOG_BACKUP_COUNT", str(DEFAULT_LOG_BACKUP_COUNT)),
            "PWD_DRIVER_LOG_BACKUP_COUNT",
        )
    if max_bytes < 0:
        raise ValueError("max_bytes must be >= 0.")
    if backup_count < 0:
        raise ValueError("backup_count must be >= 0.")
    if stderr is None:
        stderr = os.environ.get("PWD_DRIVER_LOG_STDERR", "").strip().lower() in _TRUTHY

    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(numeric_level)
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT)

    if stderr:
        console = _has_handler(
            logger,
            lambda h: isinstance(h, logging.StreamHandler)
            and not isinstance(h, logging.FileHandler),
        )
        if console is None:
            console = logging.StreamHandler(sys.stderr)
            console.setFormatter(formatter)
            logger.addHandler(console)
        console.setLevel(numeric_level)

    resolved_log_file.parent.mkdir(parents=True, exist_ok=True)
    resolved_path = resolved_log_file.resolve()
    existing = _has_handler(
        logger,
        lambda h: isinstance(h, RotatingFileHandler)
        and Path(h.baseFilename).resolve() == resolved_path,
    )
    if existing is not None:
        existing.setLevel(numeric_level)
        return logger

    handler = RotatingFileHandler(
        resolved_log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    logger.info(
        "Configured rotating file logging (path=%s, level=%s, max_bytes=%d, backup_count=%d, stderr=%s)",
        resolved_log_file,
        logging.getLevelName(numeric_level),
        max_bytes,
        backup_count,
        stderr,
    )
    return logger
