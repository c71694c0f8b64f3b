from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from warden.core.settings import env_flag, env_int

from .json_formatter import JSONFormatter

ROOT_LOGGER = "warden"
_STDOUT_HANDLER = "warden-stdout"
_FILE_HANDLER_PREFIX = "warden-file:"


def _stdout_handler(formatter: logging.Formatter) -> logging.Handler:
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.set_name(_STDOUT_HANDLER)
    handler.setFormatter(formatter)
    return handler


def _file_handler(log_path: Path, formatter: logging.Formatter) -> logging.Handler:
    handler = RotatingFileHandler(
        filename=log_path,
        maxBytes=env_int("WARDEN_LOG_MAX_BYTES", 5_000_000),
        backupCount=env_int("WARDEN_LOG_BACKUP_COUNT", 5),
        encoding="utf-8",
    )
    handler.set_name(f"{_FILE_HANDLER_PREFIX}{log_path}")
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    state_dir: Path,
    level: str | None = None,
    to_file: bool | None = None,
    log_dir: Path | None = None,
) -> logging.Logger:
    """Send ``warden.*`` records as JSON lines to stdout and ``<log_dir>/warden.log``.

    Safe to call repeatedly: handlers are found again by name and never duplicated.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    level_name = (level or os.getenv("WARDEN_LOG_LEVEL", "INFO")).strip().upper()
    logger.setLevel(logging.getLevelName(level_name) if level_name in logging.getLevelNamesMapping() else logging.INFO)
    logger.propagate = False

    installed = {handler.get_name() for handler in logger.handlers}
    formatter = JSONFormatter()

    if _STDOUT_HANDLER not in installed:
        logger.addHandler(_stdout_handler(formatter))

    if to_file if to_file is not None else env_flag("WARDEN_LOG_TO_FILE", "on"):
        target_dir = Path(log_dir or os.getenv("WARDEN_LOG_DIR") or Path(state_dir) / "logs")
        target_dir.mkdir(parents=True, exist_ok=True)
        log_path = target_dir / "warden.log"
        if f"{_FILE_HANDLER_PREFIX}{log_path}" not in installed:
            logger.addHandler(_file_handler(log_path, formatter))

    return logger
