"""
Tests for the relational dump/restore codec.
"""

from unittest.mock import patch

import pytest

from site_migrator.core.exceptions import CancellationRequested, StorageUnavailable, UnitExecutionError
from site_migrator.database.base import DatabaseDump, TableDump
from site_migrator.database.codec import (
    DatabaseCodec,
    detect_table_prefix,
    filter_content_rows,
    replace_table_prefix,
    rewrite_ddl_prefix,
)
from site_migrator.database.replacer import EnvironmentReplacer
from site_migrator.database.sqlalchemy_client import SqlAlchemyDatabaseClient
from site_migrator.models.selection import build_selection

from conftest import SESSIONS_TABLE, SOURCE_URL, create_site_database


@pytest.fixture
def target_client(tmp_path):
    url = create_site_database(tmp_path / "target.db", "https://new.example.org", with_sessions=True)
    client = SqlAlchemyDatabaseClient(url)
    yield client
    client.close()


class TestPrefixHelpers:
    """Test cases for table prefix detection and rewriting."""

    def test_detect_prefix(self):
        names = ["blog_posts", "blog_options", "blog_users", "other_table"]
        assert detect_table_prefix(names) == "blog_"

    def test_detect_prefix_needs_three_core_tables(self):
        assert detect_table_prefix(["x_posts", "x_options", "x_custom"]) == ""

    def test_replace_table_prefix(self):
        assert replace_table_prefix("old_posts", "old_", "wp_") == "wp_posts"
        assert replace_table_prefix("posts", "", "wp_") == "posts"

    def test_rewrite_ddl_prefix(self):
        ddl = 'CREATE TABLE "old_posts" (ID INTEGER, CONSTRAINT fk FOREIGN KEY (ID) REFERENCES old_users(ID))'
        rewritten = rewrite_ddl_prefix(ddl, "old_", "wp_")

        assert '"wp_posts"' in rewritten
        assert "REFERENCES wp_users" in rewritten


class TestDump:
    """Test cases for dumping tables."""

    def test_dump_all_tables(self, codec):
        dump = codec.dump()

        assert dump.table_names == ["wp_options", "wp_postmeta", "wp_posts"]
        assert dump.site_url == SOURCE_URL
        assert dump.table_prefix == "wp_"
        assert "uploads" in dump.paths
        assert len(dump.tables["wp_posts"].rows) == 3
        assert dump.tables["wp_options"].schema_ddl.startswith("CREATE TABLE wp_options")
        assert dump.dump_warnings == []

    def test_dump_skips_unreadable_table(self, codec, db_client):
        original = db_client.select_all

        def flaky(name):
            if name == "wp_postmeta":
                raise RuntimeError("disk error")
            return original(name)

        with patch.object(db_client, "select_all", side_effect=flaky):
            dump = codec.dump()

        assert "wp_postmeta" not in dump.tables
        assert len(dump.tables) == 2
        assert len(dump.dump_warnings) == 1
        assert "wp_postmeta" in dump.dump_warnings[0]

    def test_dump_table_failure_raises(self, codec, db_client):
        with patch.object(db_client, "select_all", side_effect=RuntimeError("boom")):
            with pytest.raises(UnitExecutionError) as exc_info:
                codec.dump_table("wp_posts")

        assert exc_info.value.unit_label == "wp_posts"

    def test_dump_with_filter(self, codec):
        dump = codec.dump(table_filter=lambda name: name == "wp_posts")
        assert dump.table_names == ["wp_posts"]

    def test_dump_honours_cancellation(self, codec):
        codec.set_cancellation_check(lambda: True)
        with pytest.raises(CancellationRequested):
            codec.dump()


class TestRestore:
    """Test cases for restoring dumps."""

    def test_protected_table_is_preserved(self, codec, target_client):
        dump = codec.dump()
        dump.add_table(TableDump(name="wp_sessions", schema_ddl=SESSIONS_TABLE, rows=[]))
        before = target_client.count_rows("wp_sessions")

        target = DatabaseCodec(target_client, table_prefix="wp_")
        report = target.restore(dump)

        assert target_client.count_rows("wp_sessions") == before == 2
        assert "wp_sessions" in report.preserved
        assert "wp_sessions" not in report.restored
        assert report.is_successful

    def test_full_restore_replaces_tables(self, codec, target_client):
        dump = codec.dump()
        target = DatabaseCodec(target_client, table_prefix="wp_")

        report = target.restore(dump)

        assert sorted(report.restored) == ["wp_options", "wp_postmeta", "wp_posts"]
        assert target_client.count_rows("wp_posts") == 3
        assert target_client.get_option("wp_options", "blogname") == "Old Blog"
        assert report.rows_inserted == sum(len(t.rows) for t in dump.tables.values())

    def test_critical_options_survive_replace(self, codec, target_client):
        target_client.set_option("wp_options", "admin_email", "owner@new.example.org")
        dump = codec.dump()

        DatabaseCodec(target_client, table_prefix="wp_").restore(dump)

        assert target_client.get_option("wp_options", "admin_email") == "owner@new.example.org"

    def test_selection_merges_content_tables(self, codec, target_client):
        dump = codec.dump()
        target_client.execute_ddl("INSERT INTO wp_posts (ID, post_type, post_title) VALUES (77, 'post', 'Keep me')")
        target_client.set_option("wp_options", "blogname", "New Blog")
        target_client.set_option("wp_options", "blogdescription", "Target only")
        selection = build_selection({
            "post_types": ["post"],
            "selected_post_ids": [5],
            "options_keys": ["blogname"],
        })

        report = DatabaseCodec(target_client, table_prefix="wp_").restore(dump, selection=selection)

        rows = {row["ID"]: row for row in target_client.select_all("wp_posts")}
        assert rows[5]["post_title"] == "Selected"
        assert rows[77]["post_title"] == "Keep me"
        assert rows[1]["post_title"] == "Hello"
        meta = target_client.select_all("wp_postmeta")
        assert [m["meta_key"] for m in meta if m["post_id"] == 5] == ["_thumbnail_id"]
        assert target_client.get_option("wp_options", "blogname") == "Old Blog"
        assert target_client.get_option("wp_options", "siteurl") == "https://new.example.org"
        assert target_client.get_option("wp_options", "blogdescription") == "Target only"
        assert target_client.count_rows("wp_sessions") == 2
        assert report.is_successful

    def test_schema_failure_is_reported(self, target_client):
        dump = DatabaseDump(table_prefix="wp_")
        dump.add_table(TableDump(name="wp_broken", schema_ddl="CREATE NONSENSE", rows=[{"a": 1}]))
        dump.add_table(TableDump(
            name="wp_links",
            schema_ddl="CREATE TABLE wp_links (link_id INTEGER PRIMARY KEY, link_url TEXT)",
            rows=[{"link_id": 1, "link_url": "http://x"}]
        ))

        report = DatabaseCodec(target_client, table_prefix="wp_").restore(dump)

        assert report.failures["wp_broken"].startswith("schema:")
        assert report.restored == ["wp_links"]
        assert not report.is_successful

    def test_source_prefix_is_rewritten(self, target_client):
        dump = DatabaseDump(table_prefix="old_")
        dump.add_table(TableDump(
            name="old_links",
            schema_ddl="CREATE TABLE old_links (link_id INTEGER PRIMARY KEY, link_url TEXT)",
            rows=[{"link_id": 1, "link_url": "http://x"}]
        ))

        report = DatabaseCodec(target_client, table_prefix="wp_").restore(dump)

        assert report.restored == ["wp_links"]
        assert target_client.table_exists("wp_links")
        assert not target_client.table_exists("old_links")

    def test_replacer_rewrites_rows(self, codec, target_client):
        dump = codec.dump()
        replacer = EnvironmentReplacer.for_dump(dump, "https://new.example.org", None)

        DatabaseCodec(target_client, table_prefix="wp_").restore(dump, replacer=replacer)

        posts = {row["ID"]: row for row in target_client.select_all("wp_posts")}
        assert posts[2]["post_content"] == "See https://new.example.org/contact"
        widget = target_client.get_option("wp_options", "widget_text")
        text = "Visit https://new.example.org/about"
        assert f's:{len(text)}:"{text}";' in widget

    def test_invalid_table_name_is_skipped(self, target_client):
        dump = DatabaseDump(table_prefix="wp_")
        dump.add_table(TableDump(name="wp_bad; DROP", schema_ddl="CREATE TABLE x (a INT)"))

        report = DatabaseCodec(target_client, table_prefix="wp_").restore(dump)

        assert report.skipped == ["wp_bad; DROP"]


class TestFilterContentRows:
    """Test cases for selection filtering of content rows."""

    def test_posts(self):
        selection = build_selection({"post_types": ["post"], "selected_post_ids": [5]})
        rows = [
            {"ID": 1, "post_type": "post"},
            {"ID": 5, "post_type": "post"},
            {"ID": 5, "post_type": "page"},
        ]
        assert filter_content_rows("posts", rows, selection) == [{"ID": 5, "post_type": "post"}]

    def test_options_include_sidebars_for_widget_groups(self):
        selection = build_selection({"widget_groups": ["widget_text"]})
        rows = [
            {"option_name": "widget_text"},
            {"option_name": "sidebars_widgets"},
            {"option_name": "blogname"},
        ]
        names = [row["option_name"] for row in filter_content_rows("options", rows, selection)]
        assert names == ["widget_text", "sidebars_widgets"]

    def test_other_tables_untouched(self):
        selection = build_selection({"options_keys": ["a"]})
        rows = [{"x": 1}]
        assert filter_content_rows("links", rows, selection) == rows


def test_sqlite_client_reports_unreachable_database(tmp_path):
    client = SqlAlchemyDatabaseClient(f"sqlite:///{tmp_path}/missing/dir/site.db")
    with pytest.raises(StorageUnavailable):
        client.ping()
    client.close()
