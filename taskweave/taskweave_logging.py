"""Logging utilities for Taskweave.

This module provides structured logging for workspace operations and the
explicit, per-call logging configuration handed to the ID engine.
"""

from __future__ import annotations

import json
import time
import logging as std_logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union


LOG_LEVELS: Dict[str, int] = {
    "debug": 0,
    "info": 1,
    "warn": 2,
    "error": 3,
    "success": 1,
}

_STDLIB_LEVELS = {
    "debug": std_logging.DEBUG,
    "info": std_logging.INFO,
    "warn": std_logging.WARNING,
    "error": std_logging.ERROR,
    "success": std_logging.INFO,
}


def normalize_level(level: Union[str, int, None], default: str = "info") -> str:
    """Map a user supplied level name onto one of LOG_LEVELS."""
    if level is None:
        return default
    if isinstance(level, int):
        for name, value in (("error", std_logging.ERROR), ("warn", std_logging.WARNING), ("info", std_logging.INFO)):
            if level >= value:
                return name
        return "debug"
    name = str(level).strip().lower()
    if name == "warning":
        name = "warn"
    if name not in LOG_LEVELS:
        raise ValueError(f"Unknown log level '{level}'. Expected one of: {', '.join(LOG_LEVELS)}")
    return name


# Configure structured logging
def setup_logging(log_level: Union[str, int] = "info", log_file: Optional[Path] = None) -> None:
    """Setup structured logging for Taskweave."""

    level = _STDLIB_LEVELS[normalize_level(log_level)]

    logger = std_logging.getLogger("taskweave")
    logger.setLevel(level)

    # Clear existing handlers
    logger.handlers.clear()

    detailed_formatter = std_logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Console handler; stdout belongs to the MCP stdio transport
    console_handler = std_logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(detailed_formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = std_logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    logger.debug("Taskweave logging initialized")


class JsonFormatter(std_logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: std_logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


@dataclass(frozen=True)
class LogSettings:
    """Logging configuration bound to a single engine operation."""

    level: str = "info"
    logger_name: str = "taskweave.engine"

    def __post_init__(self) -> None:
        object.__setattr__(self, "level", normalize_level(self.level))

    def enabled_for(self, level: str) -> bool:
        return LOG_LEVELS[level] >= LOG_LEVELS[self.level]


@dataclass
class OperationLog:
    """Logger passed into ID engine calls.

    Messages at or above the configured threshold go to the standard
    logging tree. Warnings and errors are always kept in ``messages`` so
    callers can report dropped references regardless of the threshold.
    """

    settings: LogSettings = field(default_factory=LogSettings)
    messages: List[Tuple[str, str]] = field(default_factory=list)

    def log(self, level: str, message: str) -> None:
        level = normalize_level(level)
        if LOG_LEVELS[level] >= LOG_LEVELS["warn"]:
            self.messages.append((level, message))
        if self.settings.enabled_for(level):
            std_logging.getLogger(self.settings.logger_name).log(_STDLIB_LEVELS[level], message)

    def debug(self, message: str) -> None:
        self.log("debug", message)

    def info(self, message: str) -> None:
        self.log("info", message)

    def warn(self, message: str) -> None:
        self.log("warn", message)

    def error(self, message: str) -> None:
        self.log("error", message)

    @property
    def warnings(self) -> List[str]:
        return [message for level, message in self.messages if level == "warn"]


def log_performance(operation_name: str):
    """Decorator to log the duration of an operation."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            logger = std_logging.getLogger("taskweave.performance")

            try:
                logger.debug(f"Starting operation: {operation_name}")
                result = func(*args, **kwargs)

                duration = time.time() - start_time
                logger.info(
                    f"Completed operation: {operation_name} in {duration:.3f}s",
                    extra={"extra_fields": {
                        "operation": operation_name,
                        "duration": duration,
                        "status": "success"
                    }}
                )
                return result

            except Exception as e:
                duration = time.time() - start_time
                logger.error(
                    f"Failed operation: {operation_name} after {duration:.3f}s - {str(e)}",
                    extra={"extra_fields": {
                        "operation": operation_name,
                        "duration": duration,
                        "status": "error",
                        "error_type": type(e).__name__,
                        "error_message": str(e)
                    }}
                )
                raise

        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields):
    """Context manager to log operations with custom fields."""
    logger = std_logging.getLogger("taskweave.operations")
    start_time = time.time()

    logger.debug(f"Starting operation: {operation_name}", extra={"extra_fields": {
        "operation": operation_name,
        "status": "started",
        **extra_fields
    }})

    try:
        yield

        duration = time.time() - start_time
        logger.info(f"Completed operation: {operation_name} in {duration:.3f}s", extra={"extra_fields": {
            "operation": operation_name,
            "status": "completed",
            "duration": duration,
            **extra_fields
        }})

    except Exception as e:
        duration = time.time() - start_time
        logger.error(f"Failed operation: {operation_name} after {duration:.3f}s - {str(e)}", extra={"extra_fields": {
            "operation": operation_name,
            "status": "failed",
            "duration": duration,
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields
        }})
        raise


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields):
    """Log an error with rich context information."""
    logger = std_logging.getLogger("taskweave.errors")

    error_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields
    }

    logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {str(error)}",
        extra={"extra_fields": error_data},
        exc_info=True
    )
