"""
Local file-system collaborator.

Maps the archive's file categories onto a site checkout on local disk:
``media`` lives in ``<content>/uploads``, ``plugins`` in
``<content>/plugins`` and ``themes`` in ``<content>/themes``.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional

from site_migrator.core.exceptions import StorageUnavailable, ValidationError
from site_migrator.filesystem.base import FileSystem


logger = logging.getLogger(__name__)

CATEGORY_DIRS = {
    "media": "uploads",
    "plugins": "plugins",
    "themes": "themes",
}
IGNORED_DIRS = {".git", ".svn", ".hg"}
IGNORED_FILES = {".DS_Store"}
ARCHIVE_SUFFIXES = (".wpbkp",)


class LocalFileSystem(FileSystem):
    """File-system collaborator over a directory tree."""

    def __init__(
        self,
        site_root: str,
        content_dir: str = "wp-content",
        excluded_paths: Optional[Iterable[str]] = None
    ):
        self.site_root = Path(site_root).resolve()
        content = Path(content_dir)
        self.content_root = content if content.is_absolute() else self.site_root / content
        self.content_root = self.content_root.resolve()
        self.excluded_paths = {Path(p).resolve() for p in (excluded_paths or [])}

    def upload_root(self) -> Path:
        return self.category_root("media")

    def category_root(self, category: str) -> Path:
        try:
            return self.content_root / CATEGORY_DIRS[category]
        except KeyError:
            raise ValidationError(f"Unknown file category: {category}") from None

    def _check_inside(self, path: Path) -> Path:
        resolved = Path(path).resolve()
        if resolved != self.site_root and self.site_root not in resolved.parents:
            if self.content_root not in resolved.parents:
                raise ValidationError(f"Path escapes the site root: {path}")
        return resolved

    def read_file(self, path: Path) -> bytes:
        return self._check_inside(path).read_bytes()

    def open_file(self, path: Path) -> BinaryIO:
        return open(self._check_inside(path), "rb")

    def write_file(self, path: Path, data: bytes) -> None:
        target = self._check_inside(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def write_stream(self, path: Path, stream: BinaryIO) -> int:
        target = self._check_inside(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as out:
            shutil.copyfileobj(stream, out)
            return out.tell()

    def _is_ignored(self, path: Path, name: str) -> bool:
        if name in IGNORED_FILES or name.endswith(ARCHIVE_SUFFIXES):
            return True
        return path.resolve() in self.excluded_paths

    def list_tree(self, root: Path) -> List[str]:
        root = Path(root)
        if not root.is_dir():
            return []

        files = []
        for current, dirs, names in os.walk(root):
            current_path = Path(current)
            dirs[:] = sorted(
                d for d in dirs
                if d not in IGNORED_DIRS and not self._is_ignored(current_path / d, d)
            )
            for name in names:
                file_path = current_path / name
                if self._is_ignored(file_path, name) or not file_path.is_file():
                    continue
                files.append(file_path.relative_to(root).as_posix())

        return sorted(files)

    def file_size(self, path: Path) -> int:
        return Path(path).stat().st_size

    def path_roots(self) -> Dict[str, str]:
        return {
            "root": str(self.site_root),
            "content": str(self.content_root),
            "uploads": str(self.upload_root()),
        }

    def ping(self) -> None:
        if not self.site_root.is_dir():
            raise StorageUnavailable(f"Site root is not accessible: {self.site_root}")
