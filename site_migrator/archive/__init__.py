"""
Archive packaging for the Site Migrator.

This module bundles database dumps and site files into a single
portable archive and reads them back.
"""

from site_migrator.archive.packer import (
    FORMAT_VERSION,
    SUPPORTED_FORMAT_VERSIONS,
    ArchiveContainer,
    ArchiveFileEntry,
    ArchiveManifest,
    ArchivePacker,
    ArchiveReader,
    ArchiveWriter,
)

__all__ = [
    "FORMAT_VERSION",
    "SUPPORTED_FORMAT_VERSIONS",
    "ArchiveContainer",
    "ArchiveFileEntry",
    "ArchiveManifest",
    "ArchivePacker",
    "ArchiveReader",
    "ArchiveWriter",
]
