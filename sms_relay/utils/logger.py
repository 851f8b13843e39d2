"""
Centralized logging for the relay.

`LoggerManager` hands out singleton `logging.Logger` instances wired to a
colored console handler and a per-logger file handler. `JsonLogFormatter`
renders file records as one JSON object per line, including any fields
passed through `extra={...}`.
"""

import json
import logging
import os
import sys
from typing import Dict, Optional

from colorlog import ColoredFormatter

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class LoggerManager:
    """
    Factory for configured, de-duplicated loggers.

    For any logger name the same instance is returned on every call, so
    handlers are attached exactly once. Loggers do not propagate to the root
    logger, which keeps uvicorn's own handlers from printing records twice.

    The default level and directory can be set once at startup with
    `configure()`; they also honor `SMS_RELAY_LOG_LEVEL` and
    `SMS_RELAY_LOG_DIR`.
    """

    _loggers: Dict[str, logging.Logger] = {}
    _default_log_dir = os.getenv("SMS_RELAY_LOG_DIR", "logs")
    _default_level = os.getenv("SMS_RELAY_LOG_LEVEL", "INFO")

    @classmethod
    def configure(cls, level: Optional[str] = None, log_dir: Optional[str] = None) -> None:
        """
        Set defaults for loggers and re-level the ones already created.

        Args:
            level (Optional[str]): Level name such as "INFO" or "DEBUG".
            log_dir (Optional[str]): Directory for log files created from now on.
        """
        if log_dir:
            cls._default_log_dir = log_dir
        if level:
            cls._default_level = level.upper()
            for logger in cls._loggers.values():
                logger.setLevel(cls._default_level)
                for handler in logger.handlers:
                    handler.setLevel(cls._default_level)

    @classmethod
    def get_logger(
        cls,
        name: str,
        log_file: Optional[str] = None,
        level: Optional[str] = None,
        use_json: bool = True,
        use_color: bool = True,
    ) -> logging.Logger:
        """
        Retrieve or create a logger configured for console and file output.

        Args:
            name (str): Logger name, typically the module's `__name__`.
            log_file (Optional[str]): Full path to the log file. Defaults to
                `<log_dir>/<name>.log`.
            level (Optional[str]): Level threshold. Defaults to the configured one.
            use_json (bool): Format file records as JSON lines.
            use_color (bool): Color console output.

        Returns:
            logging.Logger: A fully configured logger instance.
        """
        if name in cls._loggers:
            return cls._loggers[name]

        level = (level or cls._default_level).upper()

        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.propagate = False

        log_dir = os.path.dirname(log_file) if log_file else cls._default_log_dir
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        if not log_file:
            log_file = os.path.join(log_dir, f"{name}.log")

        logger.addHandler(cls._setup_file_handler(log_file, level, use_json))
        logger.addHandler(cls._setup_console_handler(level, use_color))

        cls._loggers[name] = logger
        return logger

    @staticmethod
    def _setup_file_handler(filepath: str, level: str, use_json: bool) -> logging.Handler:
        handler = logging.FileHandler(filepath, encoding="utf-8")
        handler.setLevel(level)
        handler.setFormatter(LoggerManager._get_formatter(use_json=use_json, color=False))
        return handler

    @staticmethod
    def _setup_console_handler(level: str, use_color: bool) -> logging.Handler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(LoggerManager._get_formatter(use_json=False, color=use_color))
        return handler

    @staticmethod
    def _get_formatter(use_json: bool = False, color: bool = False) -> logging.Formatter:
        """
        Returns a log formatter object based on configuration.

        Args:
            use_json (bool): Return a `JsonLogFormatter`.
            color (bool): Return a colored console formatter.

        Returns:
            logging.Formatter: A formatter instance.
        """
        if use_json:
            return JsonLogFormatter()

        fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        datefmt = "%Y-%m-%d %H:%M:%S"

        if color:
            return ColoredFormatter(
                fmt="%(log_color)s" + fmt,
                datefmt=datefmt,
                log_colors={
                    "DEBUG": "cyan",
                    "INFO": "green",
                    "WARNING": "yellow",
                    "ERROR": "red",
                    "CRITICAL": "bold_red",
                },
            )
        return logging.Formatter(fmt, datefmt)


class JsonLogFormatter(logging.Formatter):
    """
    Formats records as JSON lines for file handlers.

    Example Output:
        {
            "timestamp": "2025-05-07 13:12:01",
            "level": "INFO",
            "logger": "sms_relay.chat.orchestrator",
            "message": "Conversation turn completed",
            "session_id": "3kP...",
            "chunk_count": 2
        }

    Every attribute passed via `extra={...}` is merged into the object.
    Values that are not JSON serializable are rendered with `str()`.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": self.formatTime(record, "%Y-%m-%d %H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_"):
                log_record[key] = value
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str, ensure_ascii=False)
