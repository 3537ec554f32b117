"""
Logging configuration for the envsim engine
Supports JSON logs for batch runs and human-readable logs for interactive use
Stamps records emitted during a run with its run ID
"""

import logging
import sys
import json
import uuid
from typing import Any, Dict, Optional
from logging.handlers import RotatingFileHandler
from contextvars import ContextVar
import os

from envsim.config import get_settings

# Context variable for the ID of the run in progress
run_id_context: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

# LogRecord attributes that are not user-supplied extras
_RECORD_ATTRIBUTES = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "run_id",
}


def _record_run_id(record: logging.LogRecord) -> Optional[str]:
    run_id = run_id_context.get()
    if not run_id and hasattr(record, "run_id"):
        run_id = record.run_id
    return run_id


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        run_id = _record_run_id(record)
        if run_id:
            log_data["run_id"] = run_id

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields from record
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter with run ID support"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as human-readable string"""
        run_id = _record_run_id(record)

        base_format = "%(asctime)s - %(name)s - %(levelname)s"
        if run_id:
            base_format += f" - [run_id={run_id}]"
        base_format += " - %(message)s"

        formatter = logging.Formatter(base_format, datefmt="%Y-%m-%d %H:%M:%S")

        return formatter.format(record)


def setup_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    log_file: Optional[str] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
) -> None:
    """
    Setup logging configuration

    Arguments left as None are taken from the engine settings.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format
        log_file: Optional log file path
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup log files to keep
    """
    settings = get_settings()
    level = level or settings.log_level
    json_format = settings.log_format_json if json_format is None else json_format
    log_file = log_file or settings.log_file
    max_bytes = max_bytes or settings.log_max_bytes
    backup_count = settings.log_backup_count if backup_count is None else backup_count

    formatter = JSONFormatter() if json_format else HumanReadableFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_run_id(run_id: Optional[str] = None) -> str:
    """
    Set run ID in context

    Args:
        run_id: Optional run ID. If None, generates a short random ID.

    Returns:
        The run ID (generated or provided)
    """
    if run_id is None:
        run_id = uuid.uuid4().hex[:12]
    run_id_context.set(run_id)
    return run_id


def get_run_id() -> Optional[str]:
    """Get current run ID from context"""
    return run_id_context.get()


def clear_run_id() -> None:
    run_id_context.set(None)
