"""
Migration orchestrator driving chunked export and import jobs.

This module provides the MigrationOrchestrator class. A job is split
into an ordered queue of bounded work units; every ``continue_job`` call
executes a small fixed number of them, persists the cursor and returns
a progress report. Callers poll ``continue_job`` until the job reaches
a terminal state.
"""

import asyncio
import logging
import shutil
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from site_migrator.archive.packer import ArchiveManifest, ArchiveReader, ArchiveWriter
from site_migrator.core.exceptions import (
    CancellationRequested,
    ConfigurationError,
    JobConflict,
    JobNotFound,
    SiteMigratorError,
    StorageUnavailable,
    UnitExecutionError,
    ValidationError,
)
from site_migrator.database.attachments import ATTACHMENT_TYPE, AttachmentCollector
from site_migrator.database.base import DatabaseClient, DatabaseDump, RestoreReport
from site_migrator.database.codec import (
    CONTENT_TABLE_SUFFIXES,
    DatabaseCodec,
    detect_table_prefix,
    filter_content_rows,
)
from site_migrator.database.replacer import EnvironmentReplacer
from site_migrator.database.sqlalchemy_client import SqlAlchemyDatabaseClient
from site_migrator.filesystem.base import FileSystem
from site_migrator.filesystem.local import LocalFileSystem
from site_migrator.models.config import FILE_CATEGORIES, MigrationOptions, MigratorSettings
from site_migrator.models.job import (
    Direction,
    JobError,
    JobStatus,
    MigrationJob,
    ProgressReport,
    WorkUnit,
    WorkUnitKind,
)
from site_migrator.models.selection import ContentSelection, build_selection
from site_migrator.monitoring.progress import ProgressReporter
from site_migrator.orchestrator.queue import QueueBuilder
from site_migrator.orchestrator.store import JobStore, SiteLock, validate_job_id
from site_migrator.utils.helpers import generate_job_id, utcnow
from site_migrator.utils.logging import JobLogger

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".wpbkp"
LOCK_GRACE_SECONDS = 30.0


class CancellationCheck:
    """Callable telling a running unit whether its job was cancelled.

    The stored record is re-read at most every ``interval`` seconds so
    that per-file checks stay cheap.
    """

    def __init__(self, store: JobStore, job_id: str, interval: float = 0.25):
        self.store = store
        self.job_id = job_id
        self.interval = interval
        self._aborted = threading.Event()
        self._checked_at = 0.0
        self._cancelled = False

    def abort(self):
        self._aborted.set()

    def __call__(self) -> bool:
        if self._aborted.is_set():
            return True
        now = time.monotonic()
        if now - self._checked_at >= self.interval:
            self._checked_at = now
            try:
                job = self.store.load(self.job_id)
            except JobNotFound:
                self._cancelled = True
            else:
                self._cancelled = job.cancel_requested
        return self._cancelled


class MigrationOrchestrator:
    """
    Runs export and import jobs as resumable queues of work units.

    Job state lives in the JobStore only; the orchestrator keeps nothing
    between calls, so any process can continue any job.
    """

    def __init__(
        self,
        settings: MigratorSettings,
        database: DatabaseClient,
        filesystem: FileSystem,
        store: Optional[JobStore] = None
    ):
        """
        Initialize the migration orchestrator.

        Args:
            settings: Engine settings
            database: Database collaborator
            filesystem: File-system collaborator
            store: Job store (created under ``settings.storage_dir`` when omitted)
        """
        self.settings = settings
        self.database = database
        self.filesystem = filesystem
        self.codec = DatabaseCodec(
            database,
            filesystem,
            table_prefix=settings.table_prefix,
            protected_suffixes=settings.protected_table_suffixes
        )
        self.store = store or JobStore(settings.jobs_dir, job_ttl_seconds=settings.job_ttl_seconds)
        self.site_lock = SiteLock(Path(settings.storage_dir) / "locks", settings.site_id)
        self.queue_builder = QueueBuilder(settings, self.codec, filesystem)
        self.reporter = ProgressReporter(self.store)

        self._handlers: Dict[WorkUnitKind, Callable[[MigrationJob, WorkUnit, CancellationCheck], None]] = {
            WorkUnitKind.EXPORT_TABLE: self._export_table,
            WorkUnitKind.EXPORT_FILE_BATCH: self._export_files,
            WorkUnitKind.SNAPSHOT_TABLE: self._snapshot_table,
            WorkUnitKind.IMPORT_TABLE: self._import_table,
            WorkUnitKind.IMPORT_FILE_BATCH: self._import_files,
        }

        # Progress callbacks
        self._progress_callbacks: List[Callable[[ProgressReport], None]] = []

    def add_progress_callback(self, callback: Callable[[ProgressReport], None]):
        """Add a progress callback function."""
        self._progress_callbacks.append(callback)

    def _notify_progress(self, job: MigrationJob):
        """Notify all progress callbacks."""
        report = self.reporter.report(job)
        for callback in self._progress_callbacks:
            try:
                callback(report)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    # ------------------------------------------------------------------
    # job lifecycle

    async def start_job(
        self,
        direction: Union[Direction, str],
        selection: Union[ContentSelection, Mapping[str, Any], None] = None,
        options: Union[MigrationOptions, Mapping[str, Any], None] = None,
        job_id: Optional[str] = None
    ) -> MigrationJob:
        """
        Create a job, or attach to an existing one with the same id.

        Args:
            direction: ``export`` or ``import``
            selection: ContentSelection or raw request parameters
            options: Categories to include and the archive path
            job_id: Caller-supplied idempotency key

        Returns:
            The pending (or attached) job

        Raises:
            ValidationError: On malformed input
            JobAlreadyRunning: If another job is active for the site
        """
        try:
            direction = Direction(direction)
        except ValueError:
            raise ValidationError(f"Unknown migration direction: {direction!r}") from None

        if not isinstance(selection, ContentSelection):
            selection = build_selection(selection if selection is not None else {})
        options = self._coerce_options(options)

        if job_id is not None:
            validate_job_id(job_id)
            if await asyncio.to_thread(self.store.exists, job_id):
                job = await asyncio.to_thread(self.store.load, job_id)
                if job.direction != direction:
                    raise ValidationError(
                        f"Job {job_id} is an {job.direction.value} job, not {direction.value}"
                    )
                logger.info(f"Attaching to existing job {job_id}")
                return job

        job_id = job_id or generate_job_id()
        if not options.archive_path:
            if direction == Direction.IMPORT:
                raise ValidationError("An import job needs options.archive_path")
            options.archive_path = str(Path(self.settings.storage_dir) / "archives" / f"{job_id}{ARCHIVE_SUFFIX}")

        await asyncio.to_thread(self.site_lock.acquire, job_id, self._holder_is_stale)

        job = MigrationJob(
            job_id=job_id,
            site_id=self.settings.site_id,
            direction=direction,
            selection=selection.to_dict(),
            options=options,
            status_message=f"{direction.value.capitalize()} queued",
        )
        try:
            await asyncio.to_thread(self.store.create, job)
        except Exception:
            await asyncio.to_thread(self.site_lock.release, job_id)
            raise

        logger.info(f"Started {direction.value} job {job_id}")
        return job

    @staticmethod
    def _coerce_options(options: Union[MigrationOptions, Mapping[str, Any], None]) -> MigrationOptions:
        if options is None:
            return MigrationOptions()
        if isinstance(options, MigrationOptions):
            return options.model_copy()
        if not isinstance(options, Mapping):
            raise ValidationError("Migration options must be a mapping")
        try:
            return MigrationOptions(**options)
        except Exception as e:
            raise ValidationError(f"Invalid migration options: {e}") from e

    def _holder_is_stale(self, holder_id: str) -> bool:
        """Whether the site lock's holder may be evicted."""
        try:
            holder = self.store.load(holder_id)
        except JobNotFound:
            return self.site_lock.age() > LOCK_GRACE_SECONDS

        if holder.is_terminal:
            return True

        idle = (utcnow() - holder.updated_at).total_seconds()
        if idle <= self.settings.lock_ttl_seconds:
            return False

        def abandon(job: MigrationJob) -> bool:
            if job.is_terminal:
                return False
            job.fail(
                JobError(
                    kind="CancellationRequested",
                    message=f"Job abandoned after {int(idle)}s without progress",
                    unit_index=job.cursor if job.queue else None,
                ),
                "Abandoned: no progress within the lock timeout"
            )
            return True

        self.store.update(holder_id, abandon)
        logger.warning(f"Job {holder_id} abandoned after {int(idle)}s idle")
        return True

    async def continue_job(self, job_id: str) -> ProgressReport:
        """
        Execute the next work unit(s) of a job.

        Terminal jobs are returned unchanged. Otherwise the queue is built
        on the first call, ``settings.units_per_call`` units run, and the
        job is persisted before returning, also on failure. A call made
        while another worker is executing the same job returns the
        stored progress without running anything.

        Raises:
            JobNotFound: If the job does not exist
        """
        job = await asyncio.to_thread(self.store.load, job_id)
        if job.is_terminal:
            return self.reporter.report(job)

        lease = self.store.lease(job_id, self._lease_ttl())
        if not await asyncio.to_thread(lease.acquire):
            logger.info(f"Job {job_id} is being executed by another worker")
            return self.reporter.report(job)

        try:
            # re-read under the lease; the previous holder may have advanced it
            job = await asyncio.to_thread(self.store.load, job_id)
            if job.is_terminal:
                return self.reporter.report(job)
            return await self._run_units(job)
        finally:
            await asyncio.to_thread(lease.release)

    def _lease_ttl(self) -> float:
        return self.settings.unit_timeout_seconds * (self.settings.units_per_call + 1) + LOCK_GRACE_SECONDS

    async def _run_units(self, job: MigrationJob) -> ProgressReport:
        job_log = JobLogger(job.job_id, structured=self.settings.structured_logging)
        cancel_check = CancellationCheck(self.store, job.job_id)
        self.codec.set_cancellation_check(cancel_check)

        try:
            if job.status == JobStatus.PENDING:
                job.status = JobStatus.RUNNING
                job_log.info(f"{job.direction.value.capitalize()} started")

            if not job.queue:
                await self._prepare(job)

            for _ in range(self.settings.units_per_call):
                if job.is_terminal:
                    break
                if await asyncio.to_thread(cancel_check):
                    raise CancellationRequested()
                unit = job.current_unit
                await self._execute_unit(job, unit, cancel_check, job_log)
                job.advance(self._next_message(job))
                self._notify_progress(job)

        except SiteMigratorError as e:
            self._fail(job, e, job_log)
        except Exception as e:
            logger.exception(f"Unexpected error in job {job.job_id}")
            self._fail(job, UnitExecutionError(str(e), unit_index=job.cursor, cause=e), job_log)
        finally:
            self.codec.set_cancellation_check(None)

        return await asyncio.to_thread(self._persist, job, job_log)

    async def cancel_job(self, job_id: str) -> ProgressReport:
        """
        Cancel a pending or running job.

        The job moves to FAILED with a cancellation error and its
        ``cancel_requested`` flag makes a unit running elsewhere stop at
        its next check. Terminal jobs are acknowledged unchanged.
        """
        def mark_cancelled(job: MigrationJob) -> bool:
            if job.is_terminal:
                return False
            job.cancel_requested = True
            job.fail(
                JobError(
                    kind="CancellationRequested",
                    message="Migration job was cancelled",
                    unit_index=job.cursor if job.queue else None,
                ),
                "Cancelled by request"
            )
            return True

        job = await asyncio.to_thread(self.store.update, job_id, mark_cancelled)
        if job.is_terminal:
            await asyncio.to_thread(self._on_terminal, job)
        logger.info(f"Cancel requested for job {job_id}")
        return self.reporter.report(job)

    async def rollback_job(self, job_id: str) -> ProgressReport:
        """
        Put the database back to its state before an import ran.

        Tables saved by the pre-import snapshot are restored and tables
        the import created are dropped. Files written by the import stay
        in place. Rolling back a job twice returns the first outcome.

        Raises:
            JobNotFound: If the job does not exist
            ValidationError: If the job is not a finished import with a snapshot
            JobAlreadyRunning: If another job holds the site
        """
        job = await asyncio.to_thread(self.store.load, job_id)
        if job.direction != Direction.IMPORT:
            raise ValidationError(f"Job {job_id} is an {job.direction.value} job; only imports can be rolled back")
        if not job.is_terminal:
            raise ValidationError(f"Job {job_id} is still running; cancel it before rolling back")
        if job.context.get("rollback"):
            return self.reporter.report(job)

        snapshot = job.context.get("snapshot")
        if not snapshot or not snapshot.get("complete"):
            raise ValidationError(f"Job {job_id} has no pre-import snapshot")
        if snapshot["tables"] and not Path(snapshot["path"]).is_file():
            raise ValidationError(f"The pre-import snapshot of job {job_id} is no longer available")

        await asyncio.to_thread(self.site_lock.acquire, job_id, self._holder_is_stale)
        lease = self.store.lease(job_id, self._lease_ttl())
        try:
            if not await asyncio.to_thread(lease.acquire):
                raise JobConflict(f"Job {job_id} is being rolled back by another worker")
            outcome = await asyncio.to_thread(self._restore_snapshot, snapshot)

            def record(stored: MigrationJob) -> bool:
                if stored.context.get("rollback"):
                    return False
                stored.context["rollback"] = outcome
                stored.status_message = "Rolled back to the pre-import snapshot"
                stored.add_warning("Database rolled back to its state before this import")
                for name, message in outcome["failures"].items():
                    stored.add_warning(f"Table {name} was not rolled back: {message}")
                return True

            job = await asyncio.to_thread(self.store.update, job_id, record)
        finally:
            await asyncio.to_thread(lease.release)
            await asyncio.to_thread(self.site_lock.release, job_id)

        logger.info(f"Job {job_id} rolled back")
        return self.reporter.report(job)

    def _restore_snapshot(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        report = RestoreReport()
        if snapshot["tables"]:
            with ArchiveReader(snapshot["path"]) as reader:
                for name in reader.table_names():
                    self.codec.restore_table(reader.read_table(name), report=report)

        dropped = []
        for name in snapshot["created"]:
            if self.database.table_exists(name):
                self.database.drop_table(name)
                dropped.append(name)

        return {
            "rolled_back_at": utcnow().isoformat(),
            "restored": report.restored,
            "dropped": dropped,
            "failures": report.failures,
        }

    def status(self, job_id: str) -> ProgressReport:
        """Current progress of a job, read from the store."""
        return self.reporter.status(job_id)

    def list_jobs(self) -> List[ProgressReport]:
        return self.reporter.list_jobs(self.settings.site_id)

    async def run_to_completion(self, job_id: str, poll_interval: float = 0.0) -> ProgressReport:
        """Drive ``continue_job`` until the job is terminal."""
        while True:
            report = await self.continue_job(job_id)
            if report.is_terminal:
                return report
            if poll_interval:
                await asyncio.sleep(poll_interval)

    # ------------------------------------------------------------------
    # state transitions

    def _next_message(self, job: MigrationJob) -> str:
        unit = job.current_unit
        if unit is None:
            return job.status_message
        return f"{unit.label}…"

    def _fail(self, job: MigrationJob, error: SiteMigratorError, job_log: JobLogger):
        unit_index = job.cursor if job.queue else None
        job.fail(
            JobError(
                kind=error.code,
                message=error.message,
                unit_index=unit_index,
                details=error.details,
            ),
            self._failure_message(job, error)
        )
        job_log.error(f"Job failed: {error.message}", error_code=error.code)

    @staticmethod
    def _failure_message(job: MigrationJob, error: SiteMigratorError) -> str:
        if isinstance(error, CancellationRequested):
            return "Cancelled by request"
        label = job.direction.value.capitalize()
        if job.queue and job.cursor < len(job.queue):
            unit = job.queue[job.cursor]
            return f"{label} failed at step {job.cursor + 1}/{len(job.queue)} ({unit.label}): {error.message}"
        return f"{label} failed: {error.message}"

    def _persist(self, job: MigrationJob, job_log: JobLogger) -> ProgressReport:
        try:
            self.store.save(job)
        except JobConflict:
            fresh = self.store.load(job.job_id)
            if not fresh.is_terminal:
                raise
            job_log.warning("Job was cancelled while a unit was running")
            job = fresh

        if job.is_terminal:
            self._on_terminal(job)
            job_log.info(f"Job finished with status {job.status.value}")
        return self.reporter.report(job)

    def _on_terminal(self, job: MigrationJob):
        self.site_lock.release(job.job_id)
        if job.status == JobStatus.FAILED:
            shutil.rmtree(self._work_dir(job), ignore_errors=True)
            snapshot = job.context.get("snapshot")
            if snapshot and not snapshot.get("complete"):
                Path(snapshot["path"]).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # queue preparation

    def _work_dir(self, job: MigrationJob) -> Path:
        return self.settings.work_dir / job.job_id

    def _work_archive(self, job: MigrationJob) -> Path:
        return self._work_dir(job) / "archive.zip"

    async def _prepare(self, job: MigrationJob):
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._prepare_sync, job),
                timeout=self.settings.unit_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise UnitExecutionError(
                f"Preparing the work queue timed out after {self.settings.unit_timeout_seconds}s",
                cause=TimeoutError("preparation deadline exceeded")
            ) from e

    def _prepare_sync(self, job: MigrationJob):
        self.filesystem.ping()
        if job.options.database:
            self.database.ping()

        try:
            if job.direction == Direction.EXPORT:
                self._prepare_export(job)
            else:
                self._prepare_import(job)
        except OSError as e:
            raise StorageUnavailable(f"Cannot prepare job {job.job_id}: {e}") from e

        job.status_message = self._next_message(job)

    def _prepare_export(self, job: MigrationJob):
        selection = job.content_selection
        if not selection.is_empty:
            self._collect_attachments(job, selection)
        job.queue = self.queue_builder.build_export(job)

        urls = self.codec.read_site_urls() if job.options.database else {"site_url": "", "home_url": ""}
        manifest = ArchiveManifest(
            site_url=urls["site_url"],
            home_url=urls["home_url"],
            flags=job.options.flags(),
        )
        work_archive = self._work_archive(job)
        ArchiveWriter(work_archive).create(manifest)
        job.context["work_archive"] = str(work_archive)

    def _collect_attachments(self, job: MigrationJob, selection: ContentSelection):
        collection = AttachmentCollector(self.database, self.codec.table_prefix).collect(selection)
        if collection.ids:
            job.selection = selection.with_items((ATTACHMENT_TYPE, i) for i in collection.ids).to_dict()
        job.context["attachments"] = collection.ids
        if job.options.media:
            job.context["media_files"] = collection.files

    def _prepare_import(self, job: MigrationJob):
        with ArchiveReader(job.options.archive_path) as reader:
            meta = reader.read_meta()
            table_names = reader.table_names()
            archive_selection = reader.read_selection()
            source_prefix = meta.table_prefix or detect_table_prefix(table_names)
            snapshot_tables = self._plan_snapshot(job, reader.manifest, table_names, source_prefix)
            job.queue = self.queue_builder.build_import(job, reader, snapshot_tables=snapshot_tables)

        for warning in meta.dump_warnings:
            job.add_warning(warning)

        targets = self.codec.read_site_urls() if job.options.database else {}
        job.context.update({
            "source": meta.model_dump(exclude={"tables", "dump_warnings"}),
            "source_prefix": source_prefix,
            "target_site_url": job.options.target_site_url or targets.get("site_url") or "",
            "target_home_url": job.options.target_home_url or targets.get("home_url") or "",
            "target_paths": self.filesystem.path_roots(),
            "archive_selection": archive_selection,
        })

    def _snapshot_path(self, job: MigrationJob) -> Path:
        return self.settings.snapshots_dir / f"{job.job_id}{ARCHIVE_SUFFIX}"

    def _plan_snapshot(
        self,
        job: MigrationJob,
        manifest: ArchiveManifest,
        table_names: List[str],
        source_prefix: str
    ) -> List[str]:
        """
        Decide which target tables are saved before the import touches them.

        Tables that already exist are snapshotted. Tables the import
        would create are only recorded, so a rollback can drop them.
        """
        if not (job.options.database and manifest.includes("database") and self.settings.snapshot_before_import):
            return []

        existing: List[str] = []
        created: List[str] = []
        for name in table_names:
            target = self.codec.target_table(name, source_prefix)
            if target is None or target in existing or target in created:
                continue
            if self.database.table_exists(target):
                existing.append(target)
            else:
                created.append(target)

        path = self._snapshot_path(job)
        job.context["snapshot"] = {
            "path": str(path),
            "tables": existing,
            "created": created,
            "complete": not existing,
        }
        if existing:
            flags = {category: False for category in FILE_CATEGORIES}
            flags["database"] = True
            urls = self.codec.read_site_urls()
            ArchiveWriter(path).create(
                ArchiveManifest(site_url=urls["site_url"], home_url=urls["home_url"], flags=flags)
            )
        return existing

    # ------------------------------------------------------------------
    # unit execution

    async def _execute_unit(
        self,
        job: MigrationJob,
        unit: WorkUnit,
        cancel_check: CancellationCheck,
        job_log: JobLogger
    ):
        """Run one unit in a worker thread under the unit deadline."""
        job_log.unit_start(unit.label)
        started = time.monotonic()

        if unit.kind == WorkUnitKind.FINALIZE:
            handler = self._finalize_export if job.direction == Direction.EXPORT else self._finalize_import
        else:
            handler = self._handlers[unit.kind]

        try:
            await asyncio.wait_for(
                asyncio.to_thread(handler, job, unit, cancel_check),
                timeout=self.settings.unit_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            cancel_check.abort()
            job_log.unit_failed(unit.label, "timed out", error_code="UnitExecutionError")
            raise UnitExecutionError(
                f"{unit.label} timed out after {self.settings.unit_timeout_seconds}s",
                unit_index=unit.index,
                unit_label=unit.label,
                cause=TimeoutError("unit deadline exceeded")
            ) from e
        except UnitExecutionError as e:
            if e.unit_index is None:
                e.unit_index = unit.index
                e.details["unit_index"] = unit.index
            job_log.unit_failed(unit.label, e.message, error_code=e.code)
            raise
        except SiteMigratorError as e:
            job_log.unit_failed(unit.label, e.message, error_code=e.code)
            raise
        except Exception as e:
            job_log.unit_failed(unit.label, str(e), error_code="UnitExecutionError")
            raise UnitExecutionError(
                f"{unit.label} failed: {e}",
                unit_index=unit.index,
                unit_label=unit.label,
                cause=e
            ) from e

        job_log.unit_complete(unit.label, time.monotonic() - started)

    def _snapshot_table(self, job: MigrationJob, unit: WorkUnit, cancel_check: CancellationCheck):
        snapshot = job.context["snapshot"]
        writer = ArchiveWriter(snapshot["path"])
        writer.add_table(self.codec.dump_table(unit.table))

        following = job.queue[unit.index + 1] if unit.index + 1 < len(job.queue) else None
        if following is None or following.kind != WorkUnitKind.SNAPSHOT_TABLE:
            writer.finalize(self.codec.describe())
            snapshot["complete"] = True
            logger.info(f"Pre-import snapshot of {len(snapshot['tables'])} tables written to {writer.path}")
            self._prune_snapshots(keep=writer.path)

    def _prune_snapshots(self, keep: Path):
        """Delete the oldest snapshots beyond ``settings.snapshot_retention``."""
        older = sorted(
            (path for path in self.settings.snapshots_dir.glob(f"*{ARCHIVE_SUFFIX}") if path != keep),
            key=lambda path: path.stat().st_mtime,
            reverse=True
        )
        for path in older[self.settings.snapshot_retention - 1:]:
            logger.info(f"Removing old snapshot {path.name}")
            path.unlink(missing_ok=True)

    def _export_table(self, job: MigrationJob, unit: WorkUnit, cancel_check: CancellationCheck):
        try:
            table_dump = self.codec.dump_table(unit.table)
        except UnitExecutionError as e:
            warning = f"Skipped table {unit.table}: {e.cause or e.message}"
            logger.warning(warning)
            job.add_warning(warning)
            job.context.setdefault("dump_warnings", []).append(warning)
            return

        selection = job.content_selection
        suffix = self.codec.table_suffix(unit.table)
        if not selection.is_empty and suffix in CONTENT_TABLE_SUFFIXES:
            table_dump.rows = filter_content_rows(suffix, table_dump.rows, selection)

        if cancel_check():
            raise CancellationRequested()
        ArchiveWriter(self._work_archive(job)).add_table(table_dump)

    def _export_files(self, job: MigrationJob, unit: WorkUnit, cancel_check: CancellationCheck):
        root = self.filesystem.category_root(unit.category)
        present = []
        for path in unit.paths:
            try:
                self.filesystem.file_size(root / path)
            except FileNotFoundError:
                job.add_warning(f"File removed before export: {unit.category}/{path}")
                continue
            present.append(path)

        ArchiveWriter(self._work_archive(job)).add_files(
            unit.category,
            root,
            present,
            opener=self.filesystem.open_file,
            cancel_check=cancel_check
        )

    def _finalize_export(self, job: MigrationJob, unit: WorkUnit, cancel_check: CancellationCheck):
        meta = self.codec.describe() if job.options.database else None
        if meta is not None:
            meta.dump_warnings = list(job.context.get("dump_warnings", []))
        selection = job.content_selection
        writer = ArchiveWriter(self._work_archive(job))
        writer.finalize(meta, selection=None if selection.is_empty else selection.to_dict())

        target = Path(job.options.archive_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(writer.path), str(target))
        shutil.rmtree(self._work_dir(job), ignore_errors=True)
        logger.info(f"Archive for job {job.job_id} written to {target}")

    def _import_selection(self, job: MigrationJob) -> Optional[ContentSelection]:
        selection = job.content_selection
        if selection.is_empty:
            selection = ContentSelection.from_dict(job.context.get("archive_selection"))
        return None if selection.is_empty else selection

    def _replacer(self, job: MigrationJob) -> Optional[EnvironmentReplacer]:
        if not job.options.replace_urls:
            return None
        source = DatabaseDump(**job.context.get("source", {}))
        replacer = EnvironmentReplacer.for_dump(
            source,
            job.context.get("target_site_url"),
            job.context.get("target_home_url"),
            job.context.get("target_paths"),
        )
        return replacer if replacer.is_active else None

    def _import_table(self, job: MigrationJob, unit: WorkUnit, cancel_check: CancellationCheck):
        with ArchiveReader(job.options.archive_path, verify_checksums=False) as reader:
            table_dump = reader.read_table(unit.table)

        report = self.codec.restore_table(
            table_dump,
            selection=self._import_selection(job),
            source_prefix=job.context.get("source_prefix", ""),
            replacer=self._replacer(job)
        )

        summary = job.context.setdefault(
            "restore", {"restored": [], "preserved": [], "skipped": [], "failures": {}, "rows_inserted": 0}
        )
        summary["restored"].extend(report.restored)
        summary["preserved"].extend(report.preserved)
        summary["skipped"].extend(report.skipped)
        summary["failures"].update(report.failures)
        summary["rows_inserted"] += report.rows_inserted

        for name, message in report.failures.items():
            job.add_warning(f"Table {name} was not restored: {message}")
        for warning in report.warnings:
            job.add_warning(warning)

    def _import_files(self, job: MigrationJob, unit: WorkUnit, cancel_check: CancellationCheck):
        root = self.filesystem.category_root(unit.category)
        with ArchiveReader(job.options.archive_path, verify_checksums=False) as reader:
            for path in unit.paths:
                if cancel_check():
                    raise CancellationRequested()
                with reader.open_file(unit.category, path) as stream:
                    self.filesystem.write_stream(root / path, stream)

    def _finalize_import(self, job: MigrationJob, unit: WorkUnit, cancel_check: CancellationCheck):
        site_url = job.context.get("target_site_url")
        home_url = job.context.get("target_home_url")
        options_table = self.codec.options_table

        if job.options.database and self.database.table_exists(options_table):
            if site_url:
                self.database.set_option(options_table, "siteurl", site_url)
            if home_url:
                self.database.set_option(options_table, "home", home_url)
            logger.info(f"Site URLs kept at {site_url} / {home_url}")

        shutil.rmtree(self._work_dir(job), ignore_errors=True)


def build_orchestrator(
    settings: MigratorSettings,
    database: Optional[DatabaseClient] = None,
    filesystem: Optional[FileSystem] = None,
    store: Optional[JobStore] = None
) -> MigrationOrchestrator:
    """
    Wire an orchestrator from settings.

    Raises:
        ConfigurationError: If no database collaborator can be built
    """
    if database is None:
        if not settings.database_url:
            raise ConfigurationError("database_url is not configured")
        database = SqlAlchemyDatabaseClient(settings.database_url, insert_batch_size=settings.insert_batch_size)

    if filesystem is None:
        filesystem = LocalFileSystem(
            settings.site_root,
            content_dir=settings.content_dir,
            excluded_paths=[settings.storage_dir]
        )

    return MigrationOrchestrator(settings, database, filesystem, store=store)
