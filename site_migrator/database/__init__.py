"""
Database dump and restore for the Site Migrator.

This module contains the database collaborator interface, its
SQLAlchemy implementation, the dump/restore codec and the environment
replacer applied to imported rows.
"""

from site_migrator.database.attachments import AttachmentCollection, AttachmentCollector
from site_migrator.database.base import (
    DatabaseClient,
    DatabaseDump,
    RestoreReport,
    TableDump,
)
from site_migrator.database.codec import (
    DatabaseCodec,
    detect_table_prefix,
    filter_content_rows,
)
from site_migrator.database.replacer import EnvironmentReplacer
from site_migrator.database.sqlalchemy_client import SqlAlchemyDatabaseClient

__all__ = [
    "AttachmentCollection",
    "AttachmentCollector",
    "DatabaseClient",
    "DatabaseDump",
    "RestoreReport",
    "TableDump",
    "DatabaseCodec",
    "detect_table_prefix",
    "filter_content_rows",
    "EnvironmentReplacer",
    "SqlAlchemyDatabaseClient",
]
