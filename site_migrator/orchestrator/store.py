"""
Durable job storage and the per-site lock.

Each job is one JSON file replaced atomically on every write, so status
readers never observe a half-written record. Writers serialize through
an exclusive lock file per job and check the record's version before
replacing it.
"""

import json
import logging
import os
import re
import tempfile
import time
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from site_migrator.core.exceptions import (
    JobAlreadyRunning,
    JobConflict,
    JobNotFound,
    StorageUnavailable,
    ValidationError,
)
from site_migrator.models.job import MigrationJob
from site_migrator.utils.helpers import utcnow


logger = logging.getLogger(__name__)

_JOB_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")


def validate_job_id(job_id: str) -> str:
    if not isinstance(job_id, str) or not _JOB_ID.match(job_id):
        raise ValidationError(f"Invalid job id: {job_id!r}")
    return job_id


def _atomic_write(path: Path, data: str) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class JobStore:
    """File-backed store of MigrationJob records."""

    def __init__(
        self,
        directory: Union[str, Path],
        job_ttl_seconds: int = 86400,
        lock_timeout: float = 5.0,
        stale_lock_seconds: float = 30.0
    ):
        self.directory = Path(directory)
        self.job_ttl_seconds = job_ttl_seconds
        self.lock_timeout = lock_timeout
        self.stale_lock_seconds = stale_lock_seconds
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create job storage {self.directory}: {e}") from e
        self.purge_expired()

    def _path(self, job_id: str) -> Path:
        return self.directory / f"{validate_job_id(job_id)}.json"

    @contextmanager
    def _locked(self, job_id: str) -> Iterator[None]:
        lock_path = self.directory / f"{validate_job_id(job_id)}.lock"
        deadline = time.monotonic() + self.lock_timeout

        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                try:
                    age = time.time() - lock_path.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age > self.stale_lock_seconds:
                    logger.warning(f"Removing stale write lock for job {job_id}")
                    lock_path.unlink(missing_ok=True)
                    continue
                if time.monotonic() >= deadline:
                    raise JobConflict(f"Timed out waiting for the write lock of job {job_id}")
                time.sleep(0.01)

        try:
            os.write(fd, str(os.getpid()).encode())
            os.close(fd)
            yield
        finally:
            lock_path.unlink(missing_ok=True)

    def _read(self, path: Path, job_id: str) -> MigrationJob:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise JobNotFound(job_id) from None
        try:
            return MigrationJob.model_validate_json(raw)
        except PydanticValidationError as e:
            raise StorageUnavailable(f"Job record {job_id} is unreadable: {e}") from e

    def exists(self, job_id: str) -> bool:
        return self._path(job_id).is_file()

    def load(self, job_id: str) -> MigrationJob:
        """Read a job record; raises JobNotFound when it does not exist."""
        return self._read(self._path(job_id), job_id)

    def create(self, job: MigrationJob) -> MigrationJob:
        path = self._path(job.job_id)
        with self._locked(job.job_id):
            if path.exists():
                raise JobConflict(f"Job {job.job_id} already exists")
            job.version = 1
            job.updated_at = utcnow()
            _atomic_write(path, job.model_dump_json(indent=2))
        logger.debug(f"Created job record {job.job_id}")
        return job

    def save(self, job: MigrationJob) -> MigrationJob:
        """
        Persist a job if nobody else changed it since it was loaded.

        Raises:
            JobConflict: If the stored version differs from ``job.version``
        """
        path = self._path(job.job_id)
        with self._locked(job.job_id):
            current = self._read(path, job.job_id)
            if current.version != job.version:
                raise JobConflict(
                    f"Job {job.job_id} was modified concurrently",
                    details={"expected_version": job.version, "stored_version": current.version}
                )
            job.version += 1
            job.updated_at = utcnow()
            _atomic_write(path, job.model_dump_json(indent=2))
        return job

    def update(
        self,
        job_id: str,
        mutate: Callable[[MigrationJob], bool],
        retries: int = 5
    ) -> MigrationJob:
        """Load, mutate and save a job, retrying on version conflicts.

        ``mutate`` returns False when it made no change, in which case
        nothing is written.
        """
        for attempt in range(retries):
            job = self.load(job_id)
            if not mutate(job):
                return job
            try:
                return self.save(job)
            except JobConflict:
                if attempt == retries - 1:
                    raise
        raise JobConflict(f"Could not update job {job_id}")

    def delete(self, job_id: str) -> None:
        self._path(job_id).unlink(missing_ok=True)

    def lease(self, job_id: str, stale_after: float) -> "RunLease":
        """The execution lease guarding ``continue_job`` for one job."""
        return RunLease(self.directory, job_id, stale_after)

    def list_jobs(self, site_id: Optional[str] = None) -> List[MigrationJob]:
        jobs = []
        for path in self.directory.glob("*.json"):
            try:
                job = MigrationJob.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, PydanticValidationError) as e:
                logger.warning(f"Skipping unreadable job record {path.name}: {e}")
                continue
            if site_id is None or job.site_id == site_id:
                jobs.append(job)
        return sorted(jobs, key=lambda j: j.created_at)

    def purge_expired(self) -> int:
        """Delete terminal jobs not touched for ``job_ttl_seconds``."""
        cutoff = utcnow() - timedelta(seconds=self.job_ttl_seconds)
        purged = 0
        for job in self.list_jobs():
            if job.is_terminal and job.updated_at < cutoff:
                self.delete(job.job_id)
                purged += 1
        if purged:
            logger.info(f"Purged {purged} expired job records")
        return purged


class SiteLock:
    """At most one active job per site, held through an exclusive lock file."""

    def __init__(self, directory: Union[str, Path], site_id: str):
        self.directory = Path(directory)
        self.site_id = site_id
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / f"{validate_job_id(site_id)}.lock"

    def holder(self) -> Optional[str]:
        """Job id holding the lock, or None."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return ""
        return data.get("job_id", "") if isinstance(data, dict) else ""

    def age(self) -> float:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return 0.0

    def acquire(self, job_id: str, is_stale: Callable[[str], bool]) -> None:
        """
        Take the lock for ``job_id``.

        Args:
            job_id: Job that wants to run
            is_stale: Tells whether the current holder may be evicted

        Raises:
            JobAlreadyRunning: If another live job holds the lock
        """
        for _ in range(50):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                current = self.holder()
                if current is None:
                    continue
                if current == job_id:
                    return
                if current and not is_stale(current):
                    raise JobAlreadyRunning(current)
                if not current and self.age() < 5:
                    # holder is still writing its id
                    time.sleep(0.05)
                    continue
                logger.warning(f"Reclaiming stale site lock held by {current or 'unknown job'}")
                self.path.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"job_id": job_id, "acquired_at": utcnow().isoformat()}, f)
            logger.debug(f"Site lock for {self.site_id} acquired by {job_id}")
            return

        raise JobConflict(f"Could not acquire the site lock for {self.site_id}")

    def release(self, job_id: str) -> bool:
        if self.holder() != job_id:
            return False
        self.path.unlink(missing_ok=True)
        logger.debug(f"Site lock for {self.site_id} released by {job_id}")
        return True


class RunLease:
    """Exclusive right to execute one job's units, held through a lease file.

    A lease older than ``stale_after`` seconds was left behind by a worker
    that died mid-call and is reclaimed.
    """

    def __init__(self, directory: Union[str, Path], job_id: str, stale_after: float):
        self.job_id = job_id
        self.path = Path(directory) / f"{validate_job_id(job_id)}.run"
        self.stale_after = stale_after
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> bool:
        """Take the lease; False when another live worker holds it."""
        for _ in range(3):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                try:
                    age = time.time() - self.path.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age <= self.stale_after:
                    return False
                logger.warning(f"Reclaiming stale run lease of job {self.job_id}")
                self.path.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(str(os.getpid()))
            self._held = True
            return True
        return False

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False
