"""
CLI module for the Site Migrator.

This module provides the command-line interface using Click and Rich.
"""

from site_migrator.cli.main import main

__all__ = ["main"]
