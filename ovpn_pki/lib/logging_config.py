"""JSON logging configuration for PKI workflow operations."""

import logging
import os

from pythonjsonlogger import jsonlogger

LOG_LEVEL_ENV = "OVPN_PKI_LOG_LEVEL"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with focused field set.

    Keeps timestamp, level, message, exc_info, funcName and lineno, plus the
    operation and role a workflow step passes through ``extra``.
    """

    allowed_fields = frozenset(
        {
            "timestamp",
            "level",
            "message",
            "exc_info",
            "funcName",
            "lineno",
            "operation",
            "role",
        }
    )

    def add_fields(self, log_record, record, message_dict):
        """Override to include only the allowed fields.

        Args:
            log_record: Dict to be logged as JSON
            record: LogRecord object from logging framework
            message_dict: Dict containing message and args
        """
        super().add_fields(log_record, record, message_dict)

        if "levelname" in log_record:
            log_record["level"] = log_record.pop("levelname")

        for key in [key for key in log_record if key not in self.allowed_fields]:
            log_record.pop(key)


def set_log_level(level: str | int) -> None:
    """Change the level of the package logger.

    Raises:
        ValueError: If level is not a known logging level name
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level: {level}")
        level = resolved
    LOGGER.setLevel(level)


def _setup_logger() -> logging.Logger:
    """Initialize and configure singleton logger.

    Returns:
        Configured logger with CustomJsonFormatter
    """
    logger = logging.getLogger("ovpn_pki")

    # Module reloads must not stack handlers
    if any(isinstance(handler.formatter, CustomJsonFormatter) for handler in logger.handlers):
        return logger

    handler = logging.StreamHandler()
    formatter = CustomJsonFormatter(
        fmt="%(timestamp)s %(levelname)s %(funcName)s %(lineno)d %(message)s",
        timestamp=True,
    )
    handler.setFormatter(formatter)

    logger.setLevel(os.environ.get(LOG_LEVEL_ENV, "INFO").upper())
    logger.addHandler(handler)
    logger.propagate = False

    return logger


# Singleton logger instance - import this in other modules
LOGGER = _setup_logger()
