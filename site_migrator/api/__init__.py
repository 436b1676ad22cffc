"""
API module for the Site Migrator.

This module provides the REST job-control surface using FastAPI.
"""

from site_migrator.api.main import app, start_server

__all__ = ["app", "start_server"]
