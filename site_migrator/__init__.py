"""
Site Migrator

Chunked, resumable export and import of a content-managed site's
database, media, plugins and themes through a single portable archive.
"""

__version__ = "0.1.0"
__author__ = "Site Migrator Team"

from site_migrator.models.config import MigratorSettings, MigrationOptions
from site_migrator.models.job import MigrationJob, JobStatus
from site_migrator.models.selection import ContentSelection, build_selection

__all__ = [
    "MigratorSettings",
    "MigrationOptions",
    "MigrationJob",
    "JobStatus",
    "ContentSelection",
    "build_selection",
]
