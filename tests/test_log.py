"""Logging setup tests."""

from __future__ import annotations

import io
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from contentsync.config.models import LoggingSettings
from contentsync.log import configure_logging


def test_configure_logging_adds_rotating_file_under_home(tmp_path: Path) -> None:
    settings = LoggingSettings(level="info", file="logs/contentsync.log", max_size_mb=2, backup_count=3)

    logger = configure_logging(settings, home=tmp_path, console=Console(file=io.StringIO()))
    try:
        handlers = logger.handlers
        assert logger.level == logging.INFO
        assert any(isinstance(handler, RichHandler) for handler in handlers)
        [file_handler] = [handler for handler in handlers if isinstance(handler, RotatingFileHandler)]
        assert Path(file_handler.baseFilename) == tmp_path / "logs" / "contentsync.log"
        assert file_handler.maxBytes == 2 * 1024 * 1024
        assert file_handler.backupCount == 3

        logging.getLogger("contentsync.content.scanner").info("scanned %s", "media")
        file_handler.flush()
        assert "scanned media" in (tmp_path / "logs" / "contentsync.log").read_text(encoding="utf-8")
    finally:
        configure_logging(LoggingSettings(), console=Console(file=io.StringIO()))


def test_reconfiguring_replaces_handlers() -> None:
    console = Console(file=io.StringIO())
    configure_logging(LoggingSettings(), console=console)
    logger = configure_logging(LoggingSettings(level="bogus"), console=console)

    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING
