"""
Pytest configuration and fixtures for the Site Migrator tests.

This module provides a small site on disk: a SQLite database holding
``wp_``-prefixed options, posts and postmeta tables, and a content tree
with media, plugin and theme files.
"""

from pathlib import Path
from typing import Dict

import pytest
from sqlalchemy import create_engine, text

from site_migrator.database.codec import DatabaseCodec
from site_migrator.database.sqlalchemy_client import SqlAlchemyDatabaseClient
from site_migrator.filesystem.local import LocalFileSystem
from site_migrator.models.config import MigratorSettings
from site_migrator.orchestrator.orchestrator import build_orchestrator
from site_migrator.orchestrator.store import JobStore


SOURCE_URL = "http://old.example.com"

SITE_TABLES = [
    """CREATE TABLE wp_options (
        option_id INTEGER PRIMARY KEY,
        option_name TEXT NOT NULL UNIQUE,
        option_value TEXT,
        autoload TEXT DEFAULT 'yes'
    )""",
    """CREATE TABLE wp_posts (
        ID INTEGER PRIMARY KEY,
        post_type TEXT NOT NULL,
        post_title TEXT,
        post_content TEXT,
        guid TEXT
    )""",
    """CREATE TABLE wp_postmeta (
        meta_id INTEGER PRIMARY KEY,
        post_id INTEGER NOT NULL,
        meta_key TEXT,
        meta_value TEXT
    )""",
]

SESSIONS_TABLE = """CREATE TABLE wp_sessions (
    session_id INTEGER PRIMARY KEY,
    session_key TEXT
)"""


def serialized_string(value: str) -> str:
    return f's:{len(value.encode("utf-8"))}:"{value}";'


def create_site_database(db_path: Path, site_url: str, with_sessions: bool = False) -> str:
    """Create a SQLite site database and return its URL."""
    url = f"sqlite:///{db_path}"
    engine = create_engine(url)
    widget = "a:1:{s:4:\"text\";" + serialized_string(f"Visit {site_url}/about") + "}"

    with engine.begin() as conn:
        for ddl in SITE_TABLES:
            conn.exec_driver_sql(ddl)
        conn.execute(
            text("INSERT INTO wp_options (option_name, option_value) VALUES (:name, :value)"),
            [
                {"name": "siteurl", "value": site_url},
                {"name": "home", "value": site_url},
                {"name": "blogname", "value": "Old Blog"},
                {"name": "admin_email", "value": "admin@old.example.com"},
                {"name": "wp_user_roles", "value": "a:1:{s:13:\"administrator\";b:1;}"},
                {"name": "widget_text", "value": widget},
                {"name": "sidebars_widgets", "value": "a:0:{}"},
            ]
        )
        conn.execute(
            text("INSERT INTO wp_posts (ID, post_type, post_title, post_content, guid) "
                 "VALUES (:id, :type, :title, :content, :guid)"),
            [
                {"id": 1, "type": "post", "title": "Hello", "content": "First post",
                 "guid": f"{site_url}/?p=1"},
                {"id": 2, "type": "page", "title": "About", "content": f"See {site_url}/contact",
                 "guid": f"{site_url}/?page_id=2"},
                {"id": 5, "type": "post", "title": "Selected", "content": "Picked post",
                 "guid": f"{site_url}/?p=5"},
            ]
        )
        conn.execute(
            text("INSERT INTO wp_postmeta (post_id, meta_key, meta_value) VALUES (:post_id, :key, :value)"),
            [
                {"post_id": 1, "key": "_edit_lock", "value": "1"},
                {"post_id": 5, "key": "_thumbnail_id", "value": "9"},
            ]
        )
        if with_sessions:
            conn.exec_driver_sql(SESSIONS_TABLE)
            conn.execute(
                text("INSERT INTO wp_sessions (session_key) VALUES (:key)"),
                [{"key": "a"}, {"key": "b"}]
            )

    engine.dispose()
    return url


def create_site_files(site_root: Path) -> Dict[str, Path]:
    """Create a content tree with one file per category plus ignored files."""
    content = site_root / "wp-content"
    files = {
        "media": content / "uploads" / "2024" / "01" / "photo.jpg",
        "plugins": content / "plugins" / "hello" / "hello.php",
        "themes": content / "themes" / "twenty" / "style.css",
    }
    files["media"].parent.mkdir(parents=True)
    files["media"].write_bytes(b"\xff\xd8\xff fake jpeg bytes")
    files["plugins"].parent.mkdir(parents=True)
    files["plugins"].write_text("<?php // Hello plugin\n")
    files["themes"].parent.mkdir(parents=True)
    files["themes"].write_text("/* Theme Name: Twenty */\n")

    (content / "uploads" / ".DS_Store").write_bytes(b"junk")
    (content / "plugins" / ".git").mkdir()
    (content / "plugins" / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return files


@pytest.fixture
def site_root(tmp_path) -> Path:
    root = tmp_path / "site"
    root.mkdir()
    create_site_files(root)
    return root


@pytest.fixture
def database_url(tmp_path) -> str:
    return create_site_database(tmp_path / "site.db", SOURCE_URL)


@pytest.fixture
def db_client(database_url):
    client = SqlAlchemyDatabaseClient(database_url)
    yield client
    client.close()


@pytest.fixture
def filesystem(site_root) -> LocalFileSystem:
    return LocalFileSystem(str(site_root))


@pytest.fixture
def codec(db_client, filesystem) -> DatabaseCodec:
    return DatabaseCodec(db_client, filesystem, table_prefix="wp_")


@pytest.fixture
def settings(tmp_path, site_root, database_url) -> MigratorSettings:
    return MigratorSettings(
        site_id="test-site",
        site_root=str(site_root),
        storage_dir=str(tmp_path / "storage"),
        database_url=database_url,
        table_prefix="wp_",
    )


@pytest.fixture
def job_store(settings) -> JobStore:
    return JobStore(settings.jobs_dir)


@pytest.fixture
def orchestrator(settings, job_store):
    orch = build_orchestrator(settings, store=job_store)
    yield orch
    orch.database.close()


@pytest.fixture
def target_site(tmp_path):
    """A second, empty-content site with its own database at another URL."""
    root = tmp_path / "target"
    (root / "wp-content").mkdir(parents=True)
    url = create_site_database(tmp_path / "target.db", "https://new.example.org", with_sessions=True)
    settings = MigratorSettings(
        site_id="target-site",
        site_root=str(root),
        storage_dir=str(tmp_path / "target-storage"),
        database_url=url,
    )
    orch = build_orchestrator(settings)
    yield orch
    orch.database.close()
