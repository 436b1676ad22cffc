"""
Logging setup for the Site Migrator.

This module provides console logging through Rich, optional rotating
file logs, structured JSON output, and a job-scoped logger used by the
orchestrator while it executes work units.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, field, asdict
from enum import Enum

from rich.console import Console
from rich.logging import RichHandler


ROOT_LOGGER_NAME = "site_migrator"


class LogLevel(str, Enum):
    """Log levels for structured logging."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogCategory(str, Enum):
    """Categories for structured logging."""
    SYSTEM = "system"
    JOB = "job"


_RECORD_ATTRIBUTES = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage',
    'exc_info', 'exc_text', 'stack_info', 'taskName', 'message', 'log_entry',
}


@dataclass
class LogEntry:
    """Structured log entry with metadata."""
    timestamp: datetime = field(default_factory=datetime.now)
    level: LogLevel = LogLevel.INFO
    category: LogCategory = LogCategory.SYSTEM
    message: str = ""
    job_id: Optional[str] = None
    unit: Optional[str] = None
    duration: Optional[float] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert log entry to dictionary."""
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    def to_json(self) -> str:
        """Convert log entry to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class StructuredFormatter(logging.Formatter):
    """Formatter for structured JSON logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = getattr(record, 'log_entry', None)

        if log_entry and isinstance(log_entry, LogEntry):
            return log_entry.to_json()

        log_entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created),
            level=LogLevel(record.levelname),
            message=record.getMessage(),
            metadata={
                'logger': record.name,
                'function': record.funcName,
                'line': record.lineno,
            }
        )

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_entry.metadata[key] = value

        return log_entry.to_json()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    rich_console: bool = True,
    structured_logging: bool = False,
    max_log_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    console: Optional[Console] = None
) -> logging.Logger:
    """
    Configure the ``site_migrator`` logger hierarchy.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path, rotated at ``max_log_size``
        rich_console: Whether to use the Rich console handler
        structured_logging: Whether to emit JSON lines instead of text
        max_log_size: Maximum log file size before rotation
        backup_count: Number of rotated log files to keep
        console: Rich console to log to (stderr console by default)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()

    if rich_console and not structured_logging:
        console_handler = RichHandler(
            console=console or Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True
        )
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        if structured_logging:
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))

    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_log_size,
            backupCount=backup_count
        )
        if structured_logging:
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module."""
    if name.startswith(ROOT_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class JobLogger:
    """Logger bound to one migration job.

    Every record carries the job id so that interleaved invocations of
    different jobs can be told apart in shared log files.
    """

    def __init__(self, job_id: str, structured: bool = False):
        self.job_id = job_id
        self.structured = structured
        self.logger = get_logger("jobs")

    def _log(
        self,
        level: LogLevel,
        message: str,
        category: LogCategory = LogCategory.JOB,
        unit: Optional[str] = None,
        duration: Optional[float] = None,
        error_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        log_method = getattr(self.logger, level.value.lower())
        text = f"[{self.job_id}] {message}"
        if self.structured:
            entry = LogEntry(
                level=level,
                category=category,
                message=message,
                job_id=self.job_id,
                unit=unit,
                duration=duration,
                error_code=error_code,
                metadata=metadata or {}
            )
            log_method(text, extra={'log_entry': entry})
        else:
            log_method(text, extra={'job_id': self.job_id, **(metadata or {})})

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(LogLevel.ERROR, message, **kwargs)

    def unit_start(self, unit_label: str):
        """Log the start of a work unit."""
        self.info(f"Starting unit: {unit_label}", unit=unit_label,
                  metadata={'unit_status': 'started'})

    def unit_complete(self, unit_label: str, duration: float):
        """Log work unit completion."""
        self.info(
            f"Completed unit: {unit_label} (took {duration:.2f}s)",
            unit=unit_label,
            duration=duration,
            metadata={'unit_status': 'completed'}
        )

    def unit_failed(self, unit_label: str, error: str, error_code: Optional[str] = None):
        """Log work unit failure."""
        self.error(
            f"Failed unit: {unit_label} - {error}",
            unit=unit_label,
            error_code=error_code,
            metadata={'unit_status': 'failed'}
        )
