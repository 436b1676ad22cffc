"""
Tests for archive packing, unpacking and validation.
"""

import json
import zipfile
from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest

from site_migrator.archive.packer import (
    ArchiveManifest,
    ArchivePacker,
    ArchiveReader,
    ArchiveWriter,
    decode_json,
    encode_json,
)
from site_migrator.core.exceptions import ArchiveCorrupt, CancellationRequested, ValidationError
from site_migrator.database.base import DatabaseDump, TableDump


OPTIONS_DDL = "CREATE TABLE wp_options (option_id INTEGER PRIMARY KEY, option_name TEXT, option_value TEXT)"
OPTIONS_ROWS = [
    {"option_id": 1, "option_name": "siteurl", "option_value": "http://old.example.com"},
    {"option_id": 2, "option_name": "blob", "option_value": b"\x00\x01binary"},
]


@pytest.fixture
def sample_dump():
    dump = DatabaseDump(
        site_url="http://old.example.com",
        home_url="http://old.example.com",
        table_prefix="wp_",
        paths={"root": "/var/www/old"},
    )
    dump.add_table(TableDump(name="wp_options", schema_ddl=OPTIONS_DDL, rows=OPTIONS_ROWS))
    return dump


@pytest.fixture
def media_root(tmp_path):
    root = tmp_path / "uploads"
    (root / "2024").mkdir(parents=True)
    (root / "2024" / "a.jpg").write_bytes(b"jpeg-data")
    (root / "notes.txt").write_text("hello")
    return root


@pytest.fixture
def packed(tmp_path, sample_dump, media_root):
    path = tmp_path / "site.wpbkp"
    ArchivePacker().pack(sample_dump, [("media", media_root, ["2024/a.jpg", "notes.txt"])], path)
    return path


def rewrite_archive(source, target, mutate):
    """Copy an archive entry by entry, letting ``mutate`` edit names and bytes."""
    with zipfile.ZipFile(source) as src, zipfile.ZipFile(target, "w") as dst:
        for info in src.infolist():
            result = mutate(info.filename, src.read(info.filename))
            if result is not None:
                dst.writestr(result[0], result[1])


class TestJsonCodec:
    """Test cases for the JSON entry encoding."""

    def test_bytes_survive(self):
        data = {"value": b"\xff\x00"}
        assert decode_json(encode_json(data)) == data

    def test_temporal_and_decimal_values_survive(self, tmp_path):
        row = {
            "post_date": datetime(2024, 1, 15, 9, 30, 5),
            "birthday": date(1990, 5, 1),
            "opens_at": time(8, 15),
            "duration": timedelta(hours=1, minutes=2, seconds=3),
            "price": Decimal("19.990"),
            "note": {"nested": True},
        }
        dump = DatabaseDump(site_url="http://old.example.com", home_url="http://old.example.com")
        dump.add_table(TableDump(name="wp_prices", schema_ddl="CREATE TABLE wp_prices (id INTEGER)", rows=[row]))

        path = tmp_path / "typed.wpbkp"
        ArchivePacker().pack(dump, [], path)
        restored, _ = ArchivePacker().unpack(path)

        restored_row = restored.tables["wp_prices"].rows[0]
        assert restored_row == row
        assert isinstance(restored_row["post_date"], datetime)
        assert isinstance(restored_row["price"], Decimal)


class TestArchivePacker:
    """Test cases for whole-archive packing."""

    def test_round_trip(self, packed, sample_dump):
        dump, entries = ArchivePacker().unpack(packed)

        table = dump.tables["wp_options"]
        assert table.schema_ddl == OPTIONS_DDL
        assert table.rows == OPTIONS_ROWS
        assert dump.site_url == sample_dump.site_url
        assert dump.table_prefix == "wp_"
        assert dump.paths == {"root": "/var/www/old"}
        assert sorted(e.relative_path for e in entries) == ["2024/a.jpg", "notes.txt"]
        assert {e.relative_path: e.read() for e in entries}["2024/a.jpg"] == b"jpeg-data"

    def test_entry_order(self, packed):
        with zipfile.ZipFile(packed) as zf:
            names = zf.namelist()

        assert names[0] == "manifest.json"
        assert names[-1] == "contents.json"
        assert names.index("database/tables/wp_options.json") < names.index("files/media/2024/a.jpg")

    def test_manifest_flags(self, packed):
        with ArchiveReader(packed) as reader:
            assert reader.manifest.includes("database")
            assert reader.manifest.includes("media")
            assert not reader.manifest.includes("plugins")
            assert reader.manifest.container == "zip"

    def test_no_partial_file_left(self, packed):
        assert not packed.with_name(packed.name + ".part").exists()

    def test_files_only_archive(self, tmp_path, media_root):
        path = tmp_path / "files.wpbkp"
        ArchivePacker().pack(None, [("media", media_root, ["notes.txt"])], path)

        dump, entries = ArchivePacker().unpack(path)

        assert dump.tables == {}
        assert [e.relative_path for e in entries] == ["notes.txt"]

    def test_unsafe_file_path_rejected(self, tmp_path, media_root):
        with pytest.raises(ValidationError):
            ArchivePacker().pack(None, [("media", media_root, ["../secret"])], tmp_path / "x.wpbkp")

    @pytest.mark.asyncio
    async def test_async_round_trip(self, tmp_path, sample_dump):
        path = tmp_path / "async.wpbkp"
        container = await ArchivePacker().pack_async(sample_dump, [], path)

        dump, entries = await ArchivePacker().unpack_async(container)

        assert dump.table_names == ["wp_options"]
        assert entries == []


class TestArchiveValidation:
    """Test cases for rejecting corrupt archives."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ArchiveCorrupt):
            ArchiveReader(tmp_path / "nope.wpbkp").open()

    def test_not_a_zip(self, tmp_path):
        path = tmp_path / "junk.wpbkp"
        path.write_bytes(b"not an archive")
        with pytest.raises(ArchiveCorrupt):
            ArchiveReader(path).open()

    def test_unfinalized_archive(self, tmp_path):
        path = tmp_path / "partial.zip"
        ArchiveWriter(path).create(ArchiveManifest(flags={"database": False}))

        with pytest.raises(ArchiveCorrupt, match="finalized"):
            ArchiveReader(path).open()

    def test_missing_table_entry(self, tmp_path, packed):
        broken = tmp_path / "broken.wpbkp"
        rewrite_archive(
            packed, broken,
            lambda name, data: None if name == "database/tables/wp_options.json" else (name, data)
        )
        with pytest.raises(ArchiveCorrupt, match="wp_options"):
            ArchiveReader(broken).open()

    def test_tampered_entry(self, tmp_path, packed):
        broken = tmp_path / "tampered.wpbkp"
        rewrite_archive(
            packed, broken,
            lambda name, data: (name, b"evil") if name == "files/media/notes.txt" else (name, data)
        )
        with pytest.raises(ArchiveCorrupt, match="Checksum"):
            ArchiveReader(broken).open()

    def test_unsupported_version(self, tmp_path, packed):
        def bump(name, data):
            if name == "manifest.json":
                manifest = json.loads(data)
                manifest["format_version"] = 99
                return name, json.dumps(manifest).encode()
            return name, data

        broken = tmp_path / "future.wpbkp"
        rewrite_archive(packed, broken, bump)
        with pytest.raises(ArchiveCorrupt, match="version"):
            ArchiveReader(broken).open()

    def test_undeclared_category(self, tmp_path, packed):
        def hide_media(name, data):
            if name == "manifest.json":
                manifest = json.loads(data)
                manifest["flags"]["media"] = False
                return name, json.dumps(manifest).encode()
            return name, data

        broken = tmp_path / "undeclared.wpbkp"
        rewrite_archive(packed, broken, hide_media)
        with pytest.raises(ArchiveCorrupt):
            ArchiveReader(broken).open()

    def test_unsafe_entry_name(self, tmp_path, packed):
        broken = tmp_path / "slip.wpbkp"
        rewrite_archive(
            packed, broken,
            lambda name, data: ("files/media/../../etc/passwd", data) if name == "files/media/notes.txt" else (name, data)
        )
        with pytest.raises(ArchiveCorrupt, match="Unsafe"):
            ArchiveReader(broken).open()


class TestArchiveWriter:
    """Test cases for incremental archive writing."""

    def test_incremental_build(self, tmp_path, sample_dump, media_root):
        path = tmp_path / "work.zip"
        writer = ArchiveWriter(path)
        writer.create(ArchiveManifest(flags={"database": True, "media": True, "plugins": False, "themes": False}))

        writer.add_table(sample_dump.tables["wp_options"])
        writer.add_table(sample_dump.tables["wp_options"])
        assert writer.add_files("media", media_root, ["notes.txt"]) == 1
        assert writer.add_files("media", media_root, ["notes.txt", "2024/a.jpg"]) == 1
        writer.finalize(sample_dump, selection={"items": [["post", 5]]})

        with ArchiveReader(path) as reader:
            assert reader.table_names() == ["wp_options"]
            assert reader.read_selection() == {"items": [["post", 5]]}
            with reader.open_file("media", "2024/a.jpg") as stream:
                assert stream.read() == b"jpeg-data"
            info = {i.filename: i for i in reader._zip.infolist()}
        assert info["files/media/2024/a.jpg"].compress_type == zipfile.ZIP_STORED
        assert info["files/media/notes.txt"].compress_type == zipfile.ZIP_DEFLATED

    def test_add_files_honours_cancellation(self, tmp_path, media_root):
        path = tmp_path / "work.zip"
        writer = ArchiveWriter(path)
        writer.create(ArchiveManifest(flags={"media": True}))

        with pytest.raises(CancellationRequested):
            writer.add_files("media", media_root, ["notes.txt"], cancel_check=lambda: True)

    def test_finalize_requires_meta_for_database(self, tmp_path):
        path = tmp_path / "work.zip"
        writer = ArchiveWriter(path)
        writer.create(ArchiveManifest(flags={"database": True}))

        with pytest.raises(ValidationError):
            writer.finalize(None)
