"""
kvchat :: Structured Logging

Structured logging with human and JSON output.
Every module logs under the "kvchat" hierarchy; conversation turns are
tagged with an integer turn_id so a whole query can be traced.

INL - 2025
"""

import logging
import json
import time
import sys
from typing import Dict, Optional


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "turn_id"):
            log_entry["turn_id"] = record.turn_id
        if hasattr(record, "extra_data"):
            log_entry.update(record.extra_data)
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


class HumanFormatter(logging.Formatter):
    """Human-readable formatter for terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = self.formatTime(record, "%H:%M:%S")
        prefix = f"{color}{ts} [{record.levelname:>7}]{self.RESET}"
        msg = f"{prefix} {record.getMessage()}"
        if hasattr(record, "turn_id"):
            msg += f" [turn={record.turn_id}]"
        if hasattr(record, "extra_data") and record.extra_data:
            msg += " " + " ".join(f"{k}={v}" for k, v in record.extra_data.items())
        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for kvchat.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Use JSON format on the console
        log_file: Optional file path, always written as JSON
    """
    logger = logging.getLogger("kvchat")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = JSONFormatter() if json_output else HumanFormatter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())
        logger.addHandler(fh)

    return logger


def get_logger(name: str = "kvchat") -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


class TurnLogger:
    """
    Logger bound to one conversation turn, and the turn's clock.

    The decoding engine creates one per generate() call once the call has
    been validated; elapsed_ms() is the turn's wall time from that point,
    which is what the generation stats report.
    """

    def __init__(self, turn_id: int, logger: Optional[logging.Logger] = None):
        self.turn_id = turn_id
        self.logger = logger or get_logger()
        self.start_time = time.perf_counter()

    def _log(self, level: int, msg: str, kwargs: Dict, exc_info: bool = False):
        self.logger.log(level, msg, exc_info=exc_info, extra={"turn_id": self.turn_id, "extra_data": kwargs})

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, kwargs)

    def error(self, msg: str, exc_info: bool = False, **kwargs):
        self._log(logging.ERROR, msg, kwargs, exc_info=exc_info)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
