"""File-system collaborator interface."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Dict, List


class FileSystem(ABC):
    """Narrow interface the engine needs from the host file system.

    Paths passed to ``read_file``, ``open_file``, ``write_file`` and
    ``file_size`` are absolute paths under one of the category roots.
    """

    @abstractmethod
    def upload_root(self) -> Path:
        """Directory holding uploaded media."""
        pass

    @abstractmethod
    def category_root(self, category: str) -> Path:
        """Root directory of a file category (media, plugins or themes)."""
        pass

    @abstractmethod
    def read_file(self, path: Path) -> bytes:
        pass

    @abstractmethod
    def open_file(self, path: Path) -> BinaryIO:
        """Open a file for streaming reads."""
        pass

    @abstractmethod
    def write_file(self, path: Path, data: bytes) -> None:
        pass

    @abstractmethod
    def write_stream(self, path: Path, stream: BinaryIO) -> int:
        """Write a file from a readable stream and return the byte count."""
        pass

    @abstractmethod
    def list_tree(self, root: Path) -> List[str]:
        """Relative POSIX paths of every regular file below ``root``, sorted."""
        pass

    @abstractmethod
    def file_size(self, path: Path) -> int:
        pass

    @abstractmethod
    def path_roots(self) -> Dict[str, str]:
        """Absolute ``root``, ``content`` and ``uploads`` directories."""
        pass

    @abstractmethod
    def ping(self) -> None:
        """Raise ``StorageUnavailable`` when the site tree is unreachable."""
        pass
