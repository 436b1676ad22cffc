"""
Utilities module for the Site Migrator.

This module contains utility functions and helper classes
used throughout the application.
"""

from site_migrator.utils.helpers import (
    utcnow,
    generate_job_id,
    sanitize_key,
    sanitize_option_key,
    absint,
    load_config_file,
    is_safe_relative_path,
)
from site_migrator.utils.logging import (
    setup_logging,
    get_logger,
    JobLogger,
)

__all__ = [
    # Helper functions
    "utcnow",
    "generate_job_id",
    "sanitize_key",
    "sanitize_option_key",
    "absint",
    "load_config_file",
    "is_safe_relative_path",
    # Logging utilities
    "setup_logging",
    "get_logger",
    "JobLogger",
]
