"""
File-system access for the Site Migrator.

This module contains the file-system collaborator interface and its
local-disk implementation.
"""

from site_migrator.filesystem.base import FileSystem
from site_migrator.filesystem.local import CATEGORY_DIRS, LocalFileSystem

__all__ = [
    "FileSystem",
    "LocalFileSystem",
    "CATEGORY_DIRS",
]
