"""Tests for logger setup"""

import logging

from cueleague.config import Config
from cueleague.utils.logger import setup_logger

def test_logger_writes_daily_file(tmp_path, monkeypatch):
    monkeypatch.setattr(Config, "LOG_TO_FILE", True)

    logger = setup_logger("cueleague.tests.file_logger", log_dir=str(tmp_path / "logs"))
    logger.info("bracket generated")
    for handler in logger.handlers:
        handler.flush()

    files = list((tmp_path / "logs").glob("cueleague_*.log"))
    assert len(files) == 1
    assert "bracket generated" in files[0].read_text(encoding="utf-8")

def test_logger_console_only_and_reused(monkeypatch):
    monkeypatch.setattr(Config, "LOG_TO_FILE", False)

    logger = setup_logger("cueleague.tests.console_logger")

    assert [type(handler) for handler in logger.handlers] == [logging.StreamHandler]
    assert setup_logger("cueleague.tests.console_logger") is logger
    assert len(logger.handlers) == 1
