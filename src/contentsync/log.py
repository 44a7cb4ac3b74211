"""Logging setup shared by the CLI and long-running services."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from contentsync.config.models import LoggingSettings

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def configure_logging(
    settings: LoggingSettings,
    *,
    home: Path | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """Install console and optional rotating-file handlers on the package logger.

    Args:
        settings: Logging section of the loaded configuration.
        home: Directory that relative log file names resolve against.
        console: Rich console used for terminal output (stderr by default).

    Returns:
        logging.Logger: The configured ``contentsync`` logger.
    """

    logger = logging.getLogger("contentsync")
    level = logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        level = logging.WARNING
    logger.setLevel(level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(
        RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
    )

    if settings.file:
        log_path = Path(settings.file).expanduser()
        if not log_path.is_absolute() and home is not None:
            log_path = home / log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max(1, settings.max_size_mb) * 1024 * 1024,
            backupCount=max(0, settings.backup_count),
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


__all__ = ["configure_logging"]
