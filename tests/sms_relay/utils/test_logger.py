import json
import logging
import sys

import pytest
from colorlog import ColoredFormatter

from sms_relay.utils.logger import JsonLogFormatter, LoggerManager


@pytest.fixture
def log_dir(tmp_path):
    """Provide a log directory and close handlers of loggers created in it."""
    before = set(LoggerManager._loggers)
    yield tmp_path
    for name in set(LoggerManager._loggers) - before:
        logger = LoggerManager._loggers.pop(name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)


@pytest.fixture
def restore_defaults():
    level, log_dir = LoggerManager._default_level, LoggerManager._default_log_dir
    yield
    LoggerManager._default_level, LoggerManager._default_log_dir = level, log_dir


def test_get_logger_returns_same_instance(log_dir):
    """Tests that get_logger returns the same logger instance for the same name."""
    log_file = str(log_dir / "singleton.log")

    logger1 = LoggerManager.get_logger("test_singleton", log_file=log_file)
    logger2 = LoggerManager.get_logger("test_singleton", log_file=log_file)

    assert logger1 is logger2
    assert len(logger1.handlers) == 2


def test_console_and_file_handlers_added(log_dir):
    """Tests that a stdout console handler and a file handler are attached."""
    logger = LoggerManager.get_logger("test_handlers", log_file=str(log_dir / "handlers.log"))

    console = [h for h in logger.handlers if type(h) is logging.StreamHandler]
    files = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]

    assert len(console) == 1 and console[0].stream is sys.stdout
    assert len(files) == 1
    assert isinstance(console[0].formatter, ColoredFormatter)
    assert isinstance(files[0].formatter, JsonLogFormatter)
    assert logger.propagate is False


def test_json_file_output_includes_extra_fields(log_dir):
    """Tests that `extra` fields land in the JSON log line."""
    log_file = log_dir / "json.log"
    logger = LoggerManager.get_logger("test_json_output", log_file=str(log_file))

    logger.info("Conversation turn completed", extra={"session_id": "abc", "chunk_count": 2})
    for handler in logger.handlers:
        handler.flush()

    record = json.loads(log_file.read_text(encoding="utf-8").strip().splitlines()[-1])
    assert record["message"] == "Conversation turn completed"
    assert record["level"] == "INFO"
    assert record["logger"] == "test_json_output"
    assert record["session_id"] == "abc"
    assert record["chunk_count"] == 2


def test_json_formatter_handles_exceptions_and_unserializable():
    """Tests exc_info rendering and str() fallback for odd values."""
    formatter = JsonLogFormatter()
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord(
            "x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
        )
    record.path = object()

    data = json.loads(formatter.format(record))

    assert "ValueError: boom" in data["exc_info"]
    assert data["path"].startswith("<object object")


def test_default_log_file_in_log_dir(log_dir, restore_defaults):
    """Tests that loggers without log_file write to <log_dir>/<name>.log."""
    LoggerManager.configure(log_dir=str(log_dir))

    LoggerManager.get_logger("test_default_file").info("hello")

    assert (log_dir / "test_default_file.log").exists()


def test_configure_relevels_existing_loggers(log_dir, restore_defaults):
    """Tests that configure() applies the new level to existing loggers."""
    logger = LoggerManager.get_logger(
        "test_relevel", log_file=str(log_dir / "relevel.log"), level="INFO"
    )

    LoggerManager.configure(level="debug")

    assert logger.level == logging.DEBUG
    assert all(h.level == logging.DEBUG for h in logger.handlers)
