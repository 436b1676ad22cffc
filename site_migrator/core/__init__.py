"""
Core module for the Site Migrator.

This module contains the exception hierarchy shared by every
component of the migration engine.
"""

from site_migrator.core.exceptions import (
    SiteMigratorError,
    ConfigurationError,
    ValidationError,
    JobAlreadyRunning,
    JobNotFound,
    JobConflict,
    UnitExecutionError,
    ArchiveCorrupt,
    StorageUnavailable,
    CancellationRequested,
)

__all__ = [
    "SiteMigratorError",
    "ConfigurationError",
    "ValidationError",
    "JobAlreadyRunning",
    "JobNotFound",
    "JobConflict",
    "UnitExecutionError",
    "ArchiveCorrupt",
    "StorageUnavailable",
    "CancellationRequested",
]
