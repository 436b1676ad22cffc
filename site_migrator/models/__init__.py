"""
Data models for the Site Migrator.

This module contains all Pydantic models used throughout the application
for settings, content selection and job state.
"""

from site_migrator.models.config import (
    MigratorSettings,
    MigrationOptions,
    FILE_CATEGORIES,
    load_settings,
)
from site_migrator.models.selection import (
    ContentSelection,
    SelectionBuilder,
    build_selection,
)
from site_migrator.models.job import (
    Direction,
    JobError,
    JobStatus,
    MigrationJob,
    ProgressReport,
    WorkUnit,
    WorkUnitKind,
)

__all__ = [
    # Configuration models
    "MigratorSettings",
    "MigrationOptions",
    "FILE_CATEGORIES",
    "load_settings",
    # Selection models
    "ContentSelection",
    "SelectionBuilder",
    "build_selection",
    # Job models
    "Direction",
    "JobError",
    "JobStatus",
    "MigrationJob",
    "ProgressReport",
    "WorkUnit",
    "WorkUnitKind",
]
