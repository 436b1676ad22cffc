"""
Job models for the Site Migrator.

This module defines the persisted migration job record, its work-unit
queue and the progress report returned to pollers.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from site_migrator.models.config import MigrationOptions
from site_migrator.models.selection import ContentSelection
from site_migrator.utils.helpers import utcnow


class JobStatus(str, Enum):
    """Migration job status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Direction(str, Enum):
    """Migration direction."""
    EXPORT = "export"
    IMPORT = "import"


class WorkUnitKind(str, Enum):
    """Kinds of work unit a job queue can hold."""
    EXPORT_TABLE = "export_table"
    EXPORT_FILE_BATCH = "export_file_batch"
    SNAPSHOT_TABLE = "snapshot_table"
    IMPORT_TABLE = "import_table"
    IMPORT_FILE_BATCH = "import_file_batch"
    FINALIZE = "finalize"


class WorkUnit(BaseModel):
    """One bounded step of a job."""
    index: int
    kind: WorkUnitKind
    label: str
    table: Optional[str] = None
    category: Optional[str] = None
    paths: List[str] = Field(default_factory=list)
    bytes: int = 0


class JobError(BaseModel):
    """Error recorded on a failed job."""
    kind: str
    message: str
    unit_index: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class MigrationJob(BaseModel):
    """Persisted, resumable migration job."""
    job_id: str
    site_id: str = "default"
    direction: Direction
    selection: Dict[str, Any] = Field(default_factory=dict)
    options: MigrationOptions = Field(default_factory=MigrationOptions)
    queue: List[WorkUnit] = Field(default_factory=list)
    cursor: int = 0
    status: JobStatus = JobStatus.PENDING
    error: Optional[JobError] = None
    percent_complete: float = 0.0
    status_message: str = "Waiting to start"
    warnings: List[str] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    cancel_requested: bool = False
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def content_selection(self) -> ContentSelection:
        return ContentSelection.from_dict(self.selection)

    @property
    def current_unit(self) -> Optional[WorkUnit]:
        if self.cursor < len(self.queue):
            return self.queue[self.cursor]
        return None

    def advance(self, message: str):
        """Move the cursor past the current unit and refresh progress."""
        self.cursor += 1
        self.percent_complete = max(self.percent_complete, self._percent())
        self.status_message = message
        if self.queue and self.cursor >= len(self.queue):
            self.complete()

    def _percent(self) -> float:
        if not self.queue:
            return 0.0
        return round(self.cursor / len(self.queue) * 100, 2)

    def complete(self):
        self.status = JobStatus.COMPLETED
        self.percent_complete = 100.0
        self.completed_at = utcnow()
        label = "Export" if self.direction == Direction.EXPORT else "Import"
        self.status_message = f"{label} completed"

    def fail(self, error: JobError, message: str):
        self.status = JobStatus.FAILED
        self.error = error
        self.status_message = message
        self.completed_at = utcnow()

    def add_warning(self, warning: str):
        if warning not in self.warnings:
            self.warnings.append(warning)


class ProgressReport(BaseModel):
    """Read-only view of a job for pollers."""
    job_id: str
    direction: Direction
    status: JobStatus
    percent: float
    message: str
    cursor: int
    total_units: int
    warnings: List[str] = Field(default_factory=list)
    error: Optional[JobError] = None
    archive_path: Optional[str] = None
    updated_at: Optional[datetime] = None
    eta_seconds: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_job(cls, job: MigrationJob) -> "ProgressReport":
        return cls(
            job_id=job.job_id,
            direction=job.direction,
            status=job.status,
            percent=job.percent_complete,
            message=job.status_message,
            cursor=job.cursor,
            total_units=len(job.queue),
            warnings=list(job.warnings),
            error=job.error,
            archive_path=job.options.archive_path,
            updated_at=job.updated_at,
        )
