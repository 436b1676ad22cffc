"""
Migration orchestrator module.

This module provides the chunked state machine driving export and
import jobs, its work-queue builder and the durable job store.
"""

from .store import JobStore, RunLease, SiteLock
from .queue import QueueBuilder, batch_files
from .orchestrator import CancellationCheck, MigrationOrchestrator, build_orchestrator

__all__ = [
    "JobStore",
    "RunLease",
    "SiteLock",
    "QueueBuilder",
    "batch_files",
    "CancellationCheck",
    "MigrationOrchestrator",
    "build_orchestrator",
]
