"""
Progress reporting for migration jobs.

This module exposes read-only views of persisted job state for status
polling. It never writes to the job store and never waits for the
orchestrator.
"""

from typing import TYPE_CHECKING, List, Optional

from site_migrator.models.job import JobStatus, MigrationJob, ProgressReport

if TYPE_CHECKING:
    from site_migrator.orchestrator.store import JobStore


def estimate_eta(job: MigrationJob) -> Optional[int]:
    """Seconds remaining, extrapolated from the progress made so far."""
    if job.status != JobStatus.RUNNING or job.percent_complete <= 0:
        return None
    elapsed = (job.updated_at - job.created_at).total_seconds()
    if elapsed <= 0:
        return None
    remaining = elapsed * (100.0 - job.percent_complete) / job.percent_complete
    return int(remaining)


class ProgressReporter:
    """Pure reads of job progress."""

    def __init__(self, store: "JobStore"):
        self.store = store

    def status(self, job_id: str) -> ProgressReport:
        """
        Current progress of a job.

        Raises:
            JobNotFound: If the job does not exist
        """
        job = self.store.load(job_id)
        return self.report(job)

    @staticmethod
    def report(job: MigrationJob) -> ProgressReport:
        report = ProgressReport.from_job(job)
        report.eta_seconds = estimate_eta(job)
        return report

    def list_jobs(self, site_id: Optional[str] = None) -> List[ProgressReport]:
        return [self.report(job) for job in self.store.list_jobs(site_id)]

