"""
Archive packaging for the Site Migrator.

An archive is a ZIP container whose central directory serves as the
offset/length index of its entries. Entries are written in this order:

* ``manifest.json``: format version, creation time, site URLs and the
  category flags. Always the first entry.
* ``database/meta.json``: dump metadata and the ordered table list.
* ``database/tables/<name>.json``: one entry per table.
* ``files/<category>/<relative path>``: raw file bytes, categories in
  media, plugins, themes order.
* ``contents.json``: per-category entry counts and a sha256 per entry,
  written when the archive is finalized.

Archives can be written in one go with ``ArchivePacker.pack`` or
incrementally across several invocations with ``ArchiveWriter``.
"""

import asyncio
import base64
import hashlib
import json
import logging
import os
import shutil
import zipfile
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from site_migrator import __version__
from site_migrator.core.exceptions import ArchiveCorrupt, CancellationRequested, ValidationError
from site_migrator.database.base import DatabaseDump, TableDump
from site_migrator.models.config import FILE_CATEGORIES
from site_migrator.utils.helpers import is_safe_relative_path, utcnow


logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
SUPPORTED_FORMAT_VERSIONS = {1}
CONTAINER = "zip"

MANIFEST_NAME = "manifest.json"
META_NAME = "database/meta.json"
TABLES_PREFIX = "database/tables/"
FILES_PREFIX = "files/"
CONTENTS_NAME = "contents.json"

# already compressed, deflating again only costs time
STORED_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif", ".heic",
    ".mp3", ".mp4", ".m4a", ".m4v", ".mov", ".webm", ".ogg", ".ogv",
    ".zip", ".gz", ".bz2", ".xz", ".7z", ".rar", ".woff", ".woff2", ".pdf",
}

FileSet = Tuple[str, Union[str, Path], Sequence[str]]


class ArchiveManifest(BaseModel):
    """Header describing what an archive contains."""
    format_version: int = FORMAT_VERSION
    created_at: str = Field(default_factory=lambda: utcnow().isoformat())
    site_url: str = ""
    home_url: str = ""
    flags: Dict[str, bool] = Field(
        default_factory=lambda: {"database": False, "media": False, "plugins": False, "themes": False}
    )
    generator: str = f"site-migrator/{__version__}"
    container: str = CONTAINER

    def includes(self, category: str) -> bool:
        return bool(self.flags.get(category, False))


class ArchiveContainer(BaseModel):
    """A finished archive on disk."""
    path: str
    manifest: ArchiveManifest


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"__bytes__": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, datetime):
        return {"__datetime__": value.isoformat()}
    if isinstance(value, date):
        return {"__date__": value.isoformat()}
    if isinstance(value, time):
        return {"__time__": value.isoformat()}
    if isinstance(value, timedelta):
        return {"__timedelta__": value.total_seconds()}
    if isinstance(value, Decimal):
        return {"__decimal__": str(value)}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# Tagged values written by _json_default, keyed by their single marker key
_TAGGED_DECODERS = {
    "__bytes__": base64.b64decode,
    "__datetime__": datetime.fromisoformat,
    "__date__": date.fromisoformat,
    "__time__": time.fromisoformat,
    "__timedelta__": lambda seconds: timedelta(seconds=seconds),
    "__decimal__": Decimal,
}


def _json_object_hook(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1:
        (key, value), = obj.items()
        decoder = _TAGGED_DECODERS.get(key)
        if decoder is not None:
            return decoder(value)
    return obj


def encode_json(data: Any) -> bytes:
    return json.dumps(data, default=_json_default, ensure_ascii=False).encode("utf-8")


def decode_json(raw: bytes) -> Any:
    return json.loads(raw.decode("utf-8"), object_hook=_json_object_hook)


def table_entry_name(table_name: str) -> str:
    if not is_safe_relative_path(table_name):
        raise ValidationError(f"Unsafe table name for archive entry: {table_name}")
    return f"{TABLES_PREFIX}{table_name}.json"


def file_entry_name(category: str, relative_path: str) -> str:
    if category not in FILE_CATEGORIES:
        raise ValidationError(f"Unknown file category: {category}")
    if not is_safe_relative_path(relative_path):
        raise ValidationError(f"Unsafe file path for archive entry: {relative_path}")
    return f"{FILES_PREFIX}{category}/{relative_path}"


def _compression_for(name: str) -> int:
    if Path(name).suffix.lower() in STORED_EXTENSIONS:
        return zipfile.ZIP_STORED
    return zipfile.ZIP_DEFLATED


def _sha256_entry(zf: zipfile.ZipFile, name: str) -> str:
    digest = hashlib.sha256()
    with zf.open(name) as member:
        for chunk in iter(lambda: member.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ArchiveFileEntry:
    """A file stored in an archive, read lazily."""

    def __init__(self, archive_path: Union[str, Path], category: str, relative_path: str, size: int):
        self.archive_path = Path(archive_path)
        self.category = category
        self.relative_path = relative_path
        self.size = size

    @property
    def entry_name(self) -> str:
        return file_entry_name(self.category, self.relative_path)

    def read(self) -> bytes:
        with zipfile.ZipFile(self.archive_path, "r") as zf:
            return zf.read(self.entry_name)

    @contextmanager
    def open(self) -> Iterator[BinaryIO]:
        """Stream the entry's bytes without loading them into memory."""
        with zipfile.ZipFile(self.archive_path, "r") as zf:
            with zf.open(self.entry_name) as member:
                yield member

    def __repr__(self) -> str:
        return f"ArchiveFileEntry({self.category!r}, {self.relative_path!r}, size={self.size})"


class ArchiveWriter:
    """Builds an archive incrementally.

    ``create`` starts a new archive holding only the manifest. Tables and
    file batches are then appended, each call reopening the ZIP in append
    mode, and ``finalize`` writes the database metadata and the contents
    index.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def create(self, manifest: ArchiveManifest) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(self.path, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(MANIFEST_NAME, encode_json(manifest.model_dump(mode="json")))
        logger.debug(f"Created archive {self.path}")

    def read_manifest(self) -> ArchiveManifest:
        with zipfile.ZipFile(self.path, "r") as zf:
            return ArchiveManifest.model_validate(decode_json(zf.read(MANIFEST_NAME)))

    def add_table(self, table_dump: TableDump) -> str:
        name = table_entry_name(table_dump.name)
        with zipfile.ZipFile(self.path, "a", zipfile.ZIP_DEFLATED) as zf:
            if name not in zf.namelist():
                zf.writestr(name, encode_json(table_dump.model_dump()))
        return name

    def add_files(
        self,
        category: str,
        root: Union[str, Path],
        relative_paths: Sequence[str],
        opener: Optional[Callable[[Path], BinaryIO]] = None,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> int:
        """
        Append a batch of files from ``root``.

        Args:
            category: File category the batch belongs to
            root: Directory the relative paths are resolved against
            relative_paths: Files to add, POSIX-relative to ``root``
            opener: Callable opening a path for binary reads
            cancel_check: Callable returning True when the job was cancelled

        Returns:
            Number of files written
        """
        root = Path(root)
        opener = opener or (lambda p: open(p, "rb"))
        written = 0

        with zipfile.ZipFile(self.path, "a", zipfile.ZIP_DEFLATED) as zf:
            existing = set(zf.namelist())
            for relative_path in relative_paths:
                if cancel_check is not None and cancel_check():
                    raise CancellationRequested()
                name = file_entry_name(category, relative_path)
                if name in existing:
                    continue
                source = root / relative_path
                info = zipfile.ZipInfo.from_file(source, name)
                info.compress_type = _compression_for(name)
                with opener(source) as src, zf.open(info, "w") as dst:
                    shutil.copyfileobj(src, dst, 1024 * 1024)
                existing.add(name)
                written += 1

        return written

    def finalize(
        self,
        meta: Optional[DatabaseDump] = None,
        selection: Optional[Dict[str, Any]] = None
    ) -> ArchiveContainer:
        """
        Write ``database/meta.json`` and ``contents.json``.

        Args:
            meta: Dump metadata; its ``tables`` give the table order.
                Required when the manifest flags the database.
            selection: Selection the content tables were filtered by, if any

        Returns:
            The finished ArchiveContainer
        """
        manifest = self.read_manifest()

        with zipfile.ZipFile(self.path, "a", zipfile.ZIP_DEFLATED) as zf:
            names = zf.namelist()
            if manifest.includes("database"):
                if meta is None:
                    raise ValidationError("Database metadata is required to finalize this archive")
                table_order = [
                    n[len(TABLES_PREFIX):-len(".json")]
                    for n in names if n.startswith(TABLES_PREFIX)
                ]
                listed = [t for t in meta.tables if table_entry_name(t) in names]
                ordered = listed + [t for t in table_order if t not in listed]
                if META_NAME not in names:
                    zf.writestr(META_NAME, encode_json({
                        "site_url": meta.site_url,
                        "home_url": meta.home_url,
                        "table_prefix": meta.table_prefix,
                        "paths": meta.paths,
                        "tables": ordered,
                        "dump_warnings": meta.dump_warnings,
                        "selection": selection or {},
                    }))
                    names.append(META_NAME)

            counts = {"database": sum(1 for n in names if n.startswith(TABLES_PREFIX))}
            for category in FILE_CATEGORIES:
                prefix = f"{FILES_PREFIX}{category}/"
                counts[category] = sum(1 for n in names if n.startswith(prefix))

            entries = {
                name: _sha256_entry(zf, name)
                for name in names if name not in (MANIFEST_NAME, CONTENTS_NAME)
            }
            if CONTENTS_NAME not in names:
                zf.writestr(CONTENTS_NAME, encode_json({"counts": counts, "entries": entries}))

        logger.info(f"Finalized archive {self.path} with {len(entries)} entries")
        return ArchiveContainer(path=str(self.path), manifest=manifest)


class ArchiveReader:
    """Validating, lazy reader over a finished archive."""

    def __init__(self, path: Union[str, Path], verify_checksums: bool = True):
        self.path = Path(path)
        self.verify_checksums = verify_checksums
        self.manifest: Optional[ArchiveManifest] = None
        self._zip: Optional[zipfile.ZipFile] = None
        self._meta: Optional[Dict[str, Any]] = None
        self._contents: Optional[Dict[str, Any]] = None

    def __enter__(self) -> "ArchiveReader":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def open(self) -> ArchiveManifest:
        """Open and validate the archive; returns its manifest."""
        if self._zip is None:
            if not self.path.is_file():
                raise ArchiveCorrupt(f"Archive not found: {self.path}")
            try:
                self._zip = zipfile.ZipFile(self.path, "r")
            except zipfile.BadZipFile as e:
                raise ArchiveCorrupt(f"Not a valid archive: {self.path}: {e}") from e
            try:
                self.validate()
            except Exception:
                self.close()
                raise
        return self.manifest

    def close(self) -> None:
        if self._zip is not None:
            self._zip.close()
            self._zip = None

    def _read_json(self, name: str) -> Any:
        try:
            return decode_json(self._zip.read(name))
        except KeyError:
            raise ArchiveCorrupt(f"Archive is missing {name}") from None
        except (ValueError, zipfile.BadZipFile) as e:
            raise ArchiveCorrupt(f"Archive entry {name} is not valid JSON: {e}") from e

    def validate(self) -> ArchiveManifest:
        """
        Check that the archive's manifest and content agree.

        Raises:
            ArchiveCorrupt: On any mismatch
        """
        infos = self._zip.infolist()
        names = [info.filename for info in infos]

        if not names or names[0] != MANIFEST_NAME:
            raise ArchiveCorrupt("Archive does not start with a manifest")

        for name in names:
            if not is_safe_relative_path(name):
                raise ArchiveCorrupt(f"Unsafe entry path in archive: {name}")

        try:
            manifest = ArchiveManifest.model_validate(self._read_json(MANIFEST_NAME))
        except PydanticValidationError as e:
            raise ArchiveCorrupt(f"Invalid manifest: {e}") from e

        if manifest.format_version not in SUPPORTED_FORMAT_VERSIONS:
            raise ArchiveCorrupt(
                f"Unsupported archive format version {manifest.format_version}",
                details={"supported": sorted(SUPPORTED_FORMAT_VERSIONS)}
            )
        if manifest.container != CONTAINER:
            raise ArchiveCorrupt(f"Unsupported container type: {manifest.container}")

        if CONTENTS_NAME not in names:
            raise ArchiveCorrupt("Archive was never finalized (contents index missing)")
        contents = self._read_json(CONTENTS_NAME)
        counts = contents.get("counts", {}) if isinstance(contents, dict) else {}
        entries = contents.get("entries", {}) if isinstance(contents, dict) else {}

        table_names = [n for n in names if n.startswith(TABLES_PREFIX)]
        if manifest.includes("database"):
            if META_NAME not in names:
                raise ArchiveCorrupt("Manifest declares a database section but it is missing")
            meta = self._read_json(META_NAME)
            for table_name in meta.get("tables", []):
                if f"{TABLES_PREFIX}{table_name}.json" not in names:
                    raise ArchiveCorrupt(f"Archive is missing table {table_name}")
            self._meta = meta
        elif table_names or META_NAME in names:
            raise ArchiveCorrupt("Archive holds a database section its manifest does not declare")

        for category in FILE_CATEGORIES:
            prefix = f"{FILES_PREFIX}{category}/"
            present = sum(1 for n in names if n.startswith(prefix))
            if manifest.includes(category):
                expected = counts.get(category)
                if expected is None or expected != present:
                    raise ArchiveCorrupt(
                        f"Archive declares {expected} {category} entries but holds {present}"
                    )
            elif present:
                raise ArchiveCorrupt(f"Archive holds {category} entries its manifest does not declare")

        for name in names:
            if name in (MANIFEST_NAME, CONTENTS_NAME):
                continue
            if name not in entries:
                raise ArchiveCorrupt(f"Archive entry {name} is not in the contents index")
        for name, checksum in entries.items():
            if name not in names:
                raise ArchiveCorrupt(f"Archive is missing indexed entry {name}")
            if self.verify_checksums and _sha256_entry(self._zip, name) != checksum:
                raise ArchiveCorrupt(f"Checksum mismatch for {name}")

        self.manifest = manifest
        self._contents = contents
        return manifest

    def read_meta(self) -> DatabaseDump:
        """Dump metadata without any table content."""
        self.open()
        meta = self._meta or {}
        return DatabaseDump(
            site_url=meta.get("site_url") or self.manifest.site_url,
            home_url=meta.get("home_url") or self.manifest.home_url,
            table_prefix=meta.get("table_prefix", ""),
            paths=meta.get("paths", {}),
            dump_warnings=meta.get("dump_warnings", []),
        )

    def table_names(self) -> List[str]:
        self.open()
        return list((self._meta or {}).get("tables", []))

    def read_selection(self) -> Dict[str, Any]:
        """Selection recorded at export time; empty for a full export."""
        self.open()
        return dict((self._meta or {}).get("selection") or {})

    def read_table(self, name: str) -> TableDump:
        self.open()
        data = self._read_json(table_entry_name(name))
        try:
            return TableDump.model_validate(data)
        except PydanticValidationError as e:
            raise ArchiveCorrupt(f"Table entry {name} is malformed: {e}") from e

    def read_dump(self) -> DatabaseDump:
        dump = self.read_meta()
        for name in self.table_names():
            dump.add_table(self.read_table(name))
        return dump

    @contextmanager
    def open_file(self, category: str, relative_path: str) -> Iterator[BinaryIO]:
        """Stream one file entry through the already open container."""
        self.open()
        try:
            member = self._zip.open(file_entry_name(category, relative_path))
        except KeyError:
            raise ArchiveCorrupt(f"Archive is missing {category}/{relative_path}") from None
        with member:
            yield member

    def file_entries(self, category: Optional[str] = None) -> List[ArchiveFileEntry]:
        """File entries, optionally for one category, in archive order."""
        self.open()
        result = []
        for info in self._zip.infolist():
            if not info.filename.startswith(FILES_PREFIX) or info.is_dir():
                continue
            entry_category, _, relative_path = info.filename[len(FILES_PREFIX):].partition("/")
            if category is not None and entry_category != category:
                continue
            result.append(ArchiveFileEntry(self.path, entry_category, relative_path, info.file_size))
        return result


class ArchivePacker:
    """One-shot packing and unpacking of whole archives."""

    def __init__(self, verify_checksums: bool = True):
        self.verify_checksums = verify_checksums

    def pack(
        self,
        dump: Optional[DatabaseDump],
        file_sets: Sequence[FileSet],
        path: Union[str, Path],
        flags: Optional[Dict[str, bool]] = None
    ) -> ArchiveContainer:
        """
        Write a complete archive.

        Args:
            dump: Database dump, or None for an archive without a database section
            file_sets: ``(category, root_path, relative_paths)`` triples
            path: Destination file
            flags: Category flags; derived from the inputs when omitted

        Returns:
            ArchiveContainer for the written file
        """
        if flags is None:
            flags = {category: False for category in FILE_CATEGORIES}
            flags["database"] = dump is not None
            for category, _, _ in file_sets:
                flags[category] = True

        manifest = ArchiveManifest(
            site_url=dump.site_url if dump else "",
            home_url=dump.home_url if dump else "",
            flags=flags,
        )

        target = Path(path)
        partial = target.with_name(target.name + ".part")
        writer = ArchiveWriter(partial)
        writer.create(manifest)

        if dump is not None and flags.get("database"):
            for table_dump in dump.tables.values():
                writer.add_table(table_dump)

        ordered_sets = sorted(
            file_sets, key=lambda item: FILE_CATEGORIES.index(item[0]) if item[0] in FILE_CATEGORIES else -1
        )
        for category, root, relative_paths in ordered_sets:
            writer.add_files(category, root, sorted(relative_paths))

        writer.finalize(dump if flags.get("database") else None)
        os.replace(partial, target)

        logger.info(f"Packed archive {target}")
        return ArchiveContainer(path=str(target), manifest=manifest)

    def unpack(
        self,
        container: Union[ArchiveContainer, str, Path]
    ) -> Tuple[DatabaseDump, List[ArchiveFileEntry]]:
        """
        Read an archive back into its dump and file entries.

        Raises:
            ArchiveCorrupt: If validation fails
        """
        path = container.path if isinstance(container, ArchiveContainer) else container
        with ArchiveReader(path, verify_checksums=self.verify_checksums) as reader:
            dump = reader.read_dump() if reader.manifest.includes("database") else reader.read_meta()
            entries = reader.file_entries()
        return dump, entries

    async def pack_async(self, *args, **kwargs) -> ArchiveContainer:
        return await asyncio.to_thread(self.pack, *args, **kwargs)

    async def unpack_async(self, container) -> Tuple[DatabaseDump, List[ArchiveFileEntry]]:
        return await asyncio.to_thread(self.unpack, container)
