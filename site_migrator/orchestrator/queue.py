"""Work-queue construction for export and import jobs."""

import logging
from typing import List, Sequence, Tuple

from site_migrator.archive.packer import ArchiveReader
from site_migrator.database.codec import DatabaseCodec
from site_migrator.filesystem.base import FileSystem
from site_migrator.models.config import MigratorSettings
from site_migrator.models.job import MigrationJob, WorkUnit, WorkUnitKind


logger = logging.getLogger(__name__)


def batch_files(
    files: Sequence[Tuple[str, int]],
    max_files: int,
    max_bytes: int
) -> List[Tuple[List[str], int]]:
    """
    Split ``(path, size)`` pairs into bounded batches.

    A batch closes when adding the next file would exceed ``max_files``
    or ``max_bytes``. A single file larger than ``max_bytes`` gets a
    batch of its own.
    """
    batches: List[Tuple[List[str], int]] = []
    current: List[str] = []
    current_bytes = 0

    for path, size in files:
        if current and (len(current) >= max_files or current_bytes + size > max_bytes):
            batches.append((current, current_bytes))
            current, current_bytes = [], 0
        current.append(path)
        current_bytes += size

    if current:
        batches.append((current, current_bytes))
    return batches


class QueueBuilder:
    """Decomposes a job into an ordered list of work units."""

    def __init__(self, settings: MigratorSettings, codec: DatabaseCodec, filesystem: FileSystem):
        self.settings = settings
        self.codec = codec
        self.filesystem = filesystem

    def _file_units(self, category: str, files: Sequence[Tuple[str, int]], kind: WorkUnitKind, verb: str) -> List[WorkUnit]:
        batches = batch_files(files, self.settings.file_batch_max_files, self.settings.file_batch_max_bytes)
        units = []
        for number, (paths, size) in enumerate(batches, start=1):
            units.append(WorkUnit(
                index=0,
                kind=kind,
                label=f"{verb} {category} files (batch {number}/{len(batches)})",
                category=category,
                paths=paths,
                bytes=size,
            ))
        return units

    @staticmethod
    def _number(units: List[WorkUnit]) -> List[WorkUnit]:
        for index, unit in enumerate(units):
            unit.index = index
        return units

    @staticmethod
    def _attached_media(job: MigrationJob, paths: Sequence[str]) -> List[str]:
        """Restrict uploads to the files of the selection's attachments."""
        wanted = list(job.context["media_files"])
        present = set(paths)
        for path in wanted:
            if path not in present:
                job.add_warning(f"Attachment file not found in uploads: {path}")
        return [path for path in wanted if path in present]

    def build_export(self, job: MigrationJob) -> List[WorkUnit]:
        units: List[WorkUnit] = []

        if job.options.database:
            for table in self.codec.list_tables():
                units.append(WorkUnit(
                    index=0,
                    kind=WorkUnitKind.EXPORT_TABLE,
                    label=f"Exporting table {table}",
                    table=table,
                ))

        for category in job.options.file_categories():
            root = self.filesystem.category_root(category)
            paths = self.filesystem.list_tree(root)
            if category == "media" and "media_files" in job.context:
                paths = self._attached_media(job, paths)
            files = [(path, self.filesystem.file_size(root / path)) for path in paths]
            units.extend(self._file_units(category, files, WorkUnitKind.EXPORT_FILE_BATCH, "Exporting"))

        units.append(WorkUnit(index=0, kind=WorkUnitKind.FINALIZE, label="Finalizing archive"))
        logger.info(f"Export job {job.job_id}: {len(units)} work units")
        return self._number(units)

    def build_import(
        self,
        job: MigrationJob,
        reader: ArchiveReader,
        snapshot_tables: Sequence[str] = ()
    ) -> List[WorkUnit]:
        """Import units, led by one snapshot unit per target table the import will replace."""
        units: List[WorkUnit] = [
            WorkUnit(
                index=0,
                kind=WorkUnitKind.SNAPSHOT_TABLE,
                label=f"Snapshotting table {table}",
                table=table,
            )
            for table in snapshot_tables
        ]
        manifest = reader.manifest

        if job.options.database:
            if manifest.includes("database"):
                for table in reader.table_names():
                    units.append(WorkUnit(
                        index=0,
                        kind=WorkUnitKind.IMPORT_TABLE,
                        label=f"Importing table {table}",
                        table=table,
                    ))
            else:
                job.add_warning("Archive has no database section; database import skipped")

        for category in job.options.file_categories():
            if not manifest.includes(category):
                job.add_warning(f"Archive has no {category} section; {category} import skipped")
                continue
            files = [(entry.relative_path, entry.size) for entry in reader.file_entries(category)]
            units.extend(self._file_units(category, files, WorkUnitKind.IMPORT_FILE_BATCH, "Importing"))

        units.append(WorkUnit(index=0, kind=WorkUnitKind.FINALIZE, label="Finalizing import"))
        logger.info(f"Import job {job.job_id}: {len(units)} work units")
        return self._number(units)
