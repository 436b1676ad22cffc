"""
Custom exceptions for the Site Migrator.

This module defines custom exception classes used throughout
the application for better error handling and reporting.
"""

from typing import Any, Dict, Optional


class SiteMigratorError(Exception):
    """Base exception class for Site Migrator errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}


class ConfigurationError(SiteMigratorError):
    """Raised when there's an error in configuration."""
    pass


class ValidationError(SiteMigratorError):
    """Raised when request input has the wrong shape."""
    pass


class JobAlreadyRunning(SiteMigratorError):
    """Raised when a job is started while another one is active for the site."""

    def __init__(self, active_job_id: str, **kwargs):
        super().__init__(
            f"Another migration job is running: {active_job_id}",
            **kwargs
        )
        self.active_job_id = active_job_id
        self.details.setdefault("active_job_id", active_job_id)


class JobNotFound(SiteMigratorError):
    """Raised when a job id has no persisted record."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Migration job not found: {job_id}", **kwargs)
        self.job_id = job_id


class JobConflict(SiteMigratorError):
    """Raised when a job record changed between read and write."""
    pass


class UnitExecutionError(SiteMigratorError):
    """Raised when a single work unit fails.

    Carries the failing unit's index and label plus the underlying cause.
    """

    def __init__(
        self,
        message: str,
        unit_index: Optional[int] = None,
        unit_label: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.unit_index = unit_index
        self.unit_label = unit_label
        self.cause = cause
        if unit_index is not None:
            self.details.setdefault("unit_index", unit_index)
        if unit_label:
            self.details.setdefault("unit", unit_label)
        if cause is not None:
            self.details.setdefault("cause", f"{type(cause).__name__}: {cause}")


class ArchiveCorrupt(SiteMigratorError):
    """Raised when an archive's manifest and content disagree."""
    pass


class StorageUnavailable(SiteMigratorError):
    """Raised when the database or file-system collaborator is unreachable."""
    pass


class CancellationRequested(SiteMigratorError):
    """Raised when a job was cancelled before or during a unit."""

    def __init__(self, message: str = "Migration job was cancelled", **kwargs):
        super().__init__(message, **kwargs)
