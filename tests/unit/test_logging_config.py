"""Tests for logging setup."""

import logging
import logging.handlers

import pytest

from devherd.logging_config import resolve_level, setup_logging


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


def test_file_handler_written_under_log_dir(tmp_path):
    setup_logging("orchestrator", level="INFO", log_dir=tmp_path)
    logging.getLogger("devherd.test").debug("debug line")

    root = logging.getLogger()
    file_handlers = [h for h in root.handlers if isinstance(h, logging.handlers.WatchedFileHandler)]
    assert len(file_handlers) == 1
    assert root.level == logging.DEBUG
    for handler in root.handlers:
        handler.flush()
    assert "debug line" in (tmp_path / "orchestrator.log").read_text()


def test_console_only_without_service_name():
    setup_logging(level="WARNING", quiet=True)

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.WARNING
    assert logging.getLogger("aiohttp").level == logging.WARNING


def test_repeated_setup_replaces_handlers(tmp_path):
    setup_logging("orchestrator", log_dir=tmp_path)
    setup_logging("orchestrator", log_dir=tmp_path)

    assert len(logging.getLogger().handlers) == 2


def test_resolve_level(monkeypatch):
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(logging.ERROR) == logging.ERROR
    monkeypatch.setenv("DEVHERD_LOG_LEVEL", "warning")
    assert resolve_level(None) == logging.WARNING
    with pytest.raises(ValueError, match="Unknown log level"):
        resolve_level("chatty")
