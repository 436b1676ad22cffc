"""
Monitoring components for the Site Migrator.

This module provides read-only progress reporting for migration jobs.
"""

from .progress import ProgressReporter, estimate_eta

__all__ = [
    "ProgressReporter",
    "estimate_eta",
]
