"""
Attachment discovery for selective exports.

A selective export carries the posts it names plus the media they use.
Attachments are found through the featured image meta, image and
gallery markup in post content, and numeric meta values that point at
attachment posts. Each attachment contributes its uploaded file and
the generated size variants listed in its metadata.
"""

import logging
import posixpath
import re
from typing import Iterable, List, Set

from pydantic import BaseModel, Field

from site_migrator.database.base import DatabaseClient, Row
from site_migrator.models.selection import ContentSelection


logger = logging.getLogger(__name__)

ATTACHMENT_TYPE = "attachment"
THUMBNAIL_META_KEY = "_thumbnail_id"
ATTACHED_FILE_META_KEY = "_wp_attached_file"
ATTACHMENT_METADATA_KEY = "_wp_attachment_metadata"

_CONTENT_ID_PATTERNS = (
    re.compile(r"wp-image-([0-9]+)", re.IGNORECASE),
    re.compile(r'data-id="([0-9]+)"', re.IGNORECASE),
    re.compile(r"attachment_([0-9]+)", re.IGNORECASE),
    re.compile(r'"id"\s*:\s*([0-9]+)'),
)
_GALLERY_IDS = re.compile(r'\[gallery[^\]]*\bids="([^"]*)"', re.IGNORECASE)
# size entries inside serialized attachment metadata
_SIZE_FILE = re.compile(r's:4:"file";s:[0-9]+:"([^"]+)";')


class AttachmentCollection(BaseModel):
    """Attachments a selection uses and their files under the uploads root."""
    ids: List[int] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)


def _as_id(value) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def content_attachment_ids(content: str) -> Set[int]:
    """Attachment ids referenced by image, block and gallery markup."""
    if not content:
        return set()

    ids: Set[int] = set()
    for pattern in _CONTENT_ID_PATTERNS:
        ids.update(_as_id(match) for match in pattern.findall(content))
    for listed in _GALLERY_IDS.findall(content):
        ids.update(_as_id(part) for part in listed.split(","))
    ids.discard(0)
    return ids


def attachment_files(attached_file: str, metadata: str = "") -> List[str]:
    """The uploaded file plus its generated sizes, relative to the uploads root."""
    attached_file = (attached_file or "").strip().lstrip("/")
    if not attached_file:
        return []

    directory = posixpath.dirname(attached_file)
    files = [attached_file]
    for size_file in _SIZE_FILE.findall(metadata or ""):
        # the main entry repeats the attached path; sizes carry a bare name
        path = size_file if "/" in size_file else posixpath.join(directory, size_file)
        if path not in files:
            files.append(path)
    return files


class AttachmentCollector:
    """Resolves the attachments used by the posts of a selection."""

    def __init__(self, client: DatabaseClient, table_prefix: str = "wp_"):
        self.client = client
        self.posts_table = f"{table_prefix}posts"
        self.postmeta_table = f"{table_prefix}postmeta"

    def _candidate_ids(self, posts: Iterable[Row], meta: Iterable[Row]) -> Set[int]:
        ids: Set[int] = set()
        for post in posts:
            ids |= content_attachment_ids(str(post.get("post_content") or ""))
        for row in meta:
            value = str(row.get("meta_value") or "").strip()
            if row.get("meta_key") == THUMBNAIL_META_KEY or value.isascii() and value.isdecimal():
                ids.add(_as_id(value))
        ids.discard(0)
        return ids

    def collect(self, selection: ContentSelection) -> AttachmentCollection:
        """
        Find the attachments the selected posts use.

        Args:
            selection: Selection naming the exported posts

        Returns:
            AttachmentCollection with attachment ids not already selected
            and their files
        """
        post_ids = sorted({item_id for content_type, item_id in selection.items if content_type != ATTACHMENT_TYPE})
        if not post_ids or not self.client.table_exists(self.posts_table):
            return AttachmentCollection()

        has_meta = self.client.table_exists(self.postmeta_table)
        posts = self.client.select_rows(self.posts_table, "ID", post_ids)
        meta = self.client.select_rows(self.postmeta_table, "post_id", post_ids) if has_meta else []

        candidates = self._candidate_ids(posts, meta) - set(post_ids)
        attachments = [
            row for row in self.client.select_rows(self.posts_table, "ID", sorted(candidates))
            if row.get("post_type") == ATTACHMENT_TYPE
        ]
        ids = sorted(_as_id(row.get("ID")) for row in attachments)
        if not ids:
            return AttachmentCollection()

        attached = {}
        metadata = {}
        if has_meta:
            for row in self.client.select_rows(self.postmeta_table, "post_id", ids):
                post_id = _as_id(row.get("post_id"))
                if row.get("meta_key") == ATTACHED_FILE_META_KEY:
                    attached[post_id] = str(row.get("meta_value") or "")
                elif row.get("meta_key") == ATTACHMENT_METADATA_KEY:
                    metadata[post_id] = str(row.get("meta_value") or "")

        files: List[str] = []
        for attachment_id in ids:
            for path in attachment_files(attached.get(attachment_id, ""), metadata.get(attachment_id, "")):
                if path not in files:
                    files.append(path)

        logger.info(f"Selection uses {len(ids)} attachments with {len(files)} files")
        return AttachmentCollection(ids=ids, files=files)
