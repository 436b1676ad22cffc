"""
Environment replacement for imported rows.

Rewrites the source site's URLs and filesystem roots to the target
environment's values in every string cell. PHP-serialized values are
rewritten token by token so that their ``s:N:`` byte lengths stay
correct after the replacement changes a string's length.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional
from urllib.parse import urlsplit

from site_migrator.database.base import DatabaseDump, Row


logger = logging.getLogger(__name__)

_SERIALIZED = re.compile(r'^(?:N;|b:[01];|[id]:[-+0-9.eE]+;|[aOC]:\d+:|s:\d+:")')
_STRING_TOKEN = re.compile(rb's:(\d+):"')


class SerializedFormatError(ValueError):
    """Raised when a value looks serialized but its lengths do not add up."""


def is_serialized(value: str) -> bool:
    """Return True when a string looks like a PHP-serialized payload."""
    return bool(_SERIALIZED.match(value.strip()))


def _url_signatures(url: str) -> List[str]:
    parts = urlsplit(url)
    if not parts.hostname:
        return []

    path = parts.path.strip("/")
    host = parts.hostname
    signatures = []
    if parts.port:
        signatures.append(f"{host}:{parts.port}/{path}".strip("/"))
    signatures.append(f"{host}/{path}".strip("/"))
    return signatures


def _normalize_target(url: str) -> str:
    """Drop the port and trailing slash from a target URL."""
    parts = urlsplit(url.rstrip("/"))
    if not parts.hostname:
        return url.rstrip("/")
    base = f"{parts.scheme}://{parts.hostname}" if parts.scheme else parts.hostname
    return base + parts.path


def build_url_map(old_url: str, new_url: str) -> Dict[str, str]:
    """http and https variants of ``old_url``, with and without trailing slash."""
    url_map: Dict[str, str] = {}
    if not old_url or not new_url:
        return url_map

    target = _normalize_target(new_url)
    for signature in _url_signatures(old_url):
        for scheme in ("http", "https"):
            base = f"{scheme}://{signature}"
            if base == target:
                continue
            url_map[base] = target
            url_map[base + "/"] = target + "/"
    return url_map


def build_path_map(old_paths: Mapping[str, str], new_paths: Mapping[str, str]) -> Dict[str, str]:
    """Map each old path root to the target root of the same key."""
    path_map: Dict[str, str] = {}
    for key, old_path in old_paths.items():
        if not old_path or not isinstance(old_path, str):
            continue
        new_path = str(new_paths.get(key) or "").rstrip("/")
        old_path = old_path.rstrip("/")
        if not new_path or not old_path or new_path == old_path:
            continue
        path_map[old_path] = new_path
        path_map[old_path + "/"] = new_path + "/"
    return path_map


class EnvironmentReplacer:
    """Search/replace over row values that is safe for serialized data."""

    def __init__(self, replacements: Mapping[str, str]):
        # longest search strings first so that a prefix never shadows a longer match
        self.replacements = dict(
            sorted(replacements.items(), key=lambda item: len(item[0]), reverse=True)
        )
        if self.replacements:
            self._pattern = re.compile("|".join(re.escape(key) for key in self.replacements))
        else:
            self._pattern = None

    @classmethod
    def for_dump(
        cls,
        dump: DatabaseDump,
        target_site_url: Optional[str],
        target_home_url: Optional[str],
        target_paths: Optional[Mapping[str, str]] = None
    ) -> "EnvironmentReplacer":
        """Build the replacement map from a dump's metadata and the target values."""
        replacements: Dict[str, str] = {}
        replacements.update(build_url_map(dump.home_url, target_home_url or target_site_url or ""))
        replacements.update(build_url_map(dump.site_url, target_site_url or target_home_url or ""))
        replacements.update(build_path_map(dump.paths, target_paths or {}))
        if replacements:
            logger.info(f"Environment replacement active with {len(replacements)} patterns")
        return cls(replacements)

    @property
    def is_active(self) -> bool:
        return self._pattern is not None

    def replace_text(self, text: str) -> str:
        if self._pattern is None or not text:
            return text
        return self._pattern.sub(lambda match: self.replacements[match.group(0)], text)

    def replace_value(self, value: Any) -> Any:
        """Replace inside one cell value; non-strings pass through."""
        if self._pattern is None or not isinstance(value, str) or not value:
            return value

        if is_serialized(value):
            try:
                return self._replace_serialized(value.encode("utf-8")).decode("utf-8")
            except (SerializedFormatError, UnicodeDecodeError):
                logger.debug("Serialized value has inconsistent lengths, using plain replacement")

        return self.replace_text(value)

    def _replace_serialized(self, data: bytes) -> bytes:
        output = bytearray()
        position = 0

        while True:
            match = _STRING_TOKEN.search(data, position)
            if match is None:
                output += data[position:]
                return bytes(output)

            length = int(match.group(1))
            start = match.end()
            end = start + length
            if data[end:end + 2] != b'";':
                raise SerializedFormatError(f"Bad string length at offset {match.start()}")

            inner = data[start:end].decode("utf-8")
            if is_serialized(inner):
                try:
                    replaced = self._replace_serialized(inner.encode("utf-8"))
                except SerializedFormatError:
                    replaced = self.replace_text(inner).encode("utf-8")
            else:
                replaced = self.replace_text(inner).encode("utf-8")

            output += data[position:match.start()]
            output += b's:%d:"' % len(replaced) + replaced + b'";'
            position = end + 2

    def replace_row(self, row: Row) -> Row:
        return {column: self.replace_value(value) for column, value in row.items()}

    def replace_rows(self, rows: Iterable[Row]) -> List[Row]:
        if self._pattern is None:
            return list(rows)
        return [self.replace_row(row) for row in rows]
