"""
Tests for environment replacement in row values.
"""

from site_migrator.database.base import DatabaseDump
from site_migrator.database.replacer import (
    EnvironmentReplacer,
    build_path_map,
    build_url_map,
    is_serialized,
)


def php_string(value: str) -> str:
    return f's:{len(value.encode("utf-8"))}:"{value}";'


class TestUrlMap:
    """Test cases for building URL replacement maps."""

    def test_scheme_and_slash_variants(self):
        url_map = build_url_map("http://old.example.com", "https://new.example.org/")

        assert url_map["http://old.example.com"] == "https://new.example.org"
        assert url_map["https://old.example.com"] == "https://new.example.org"
        assert url_map["http://old.example.com/"] == "https://new.example.org/"

    def test_port_variant(self):
        url_map = build_url_map("http://localhost:8080/blog", "https://example.org")

        assert url_map["http://localhost:8080/blog"] == "https://example.org"
        assert url_map["http://localhost/blog"] == "https://example.org"

    def test_missing_values(self):
        assert build_url_map("", "https://example.org") == {}
        assert build_url_map("http://a.example", "") == {}

    def test_path_map(self):
        path_map = build_path_map(
            {"root": "/var/www/old", "uploads": "/var/www/old/wp-content/uploads"},
            {"root": "/srv/new", "uploads": "/srv/new/wp-content/uploads"}
        )

        assert path_map["/var/www/old"] == "/srv/new"
        assert path_map["/var/www/old/"] == "/srv/new/"


class TestEnvironmentReplacer:
    """Test cases for serialized-safe replacement."""

    def setup_method(self):
        self.replacer = EnvironmentReplacer(build_url_map("http://old.example.com", "https://new.example.org"))

    def test_plain_text(self):
        assert self.replacer.replace_value("Go to http://old.example.com/shop") == \
            "Go to https://new.example.org/shop"

    def test_serialized_lengths_are_fixed(self):
        value = "a:2:{s:3:\"url\";" + php_string("http://old.example.com/a") + \
            "s:4:\"note\";" + php_string("ünïcode") + "}"

        result = self.replacer.replace_value(value)

        expected = "a:2:{s:3:\"url\";" + php_string("https://new.example.org/a") + \
            "s:4:\"note\";" + php_string("ünïcode") + "}"
        assert result == expected

    def test_nested_serialized_string(self):
        inner = "a:1:{i:0;" + php_string("http://old.example.com") + "}"
        value = "a:1:{s:5:\"inner\";" + php_string(inner) + "}"

        result = self.replacer.replace_value(value)

        new_inner = "a:1:{i:0;" + php_string("https://new.example.org") + "}"
        assert result == "a:1:{s:5:\"inner\";" + php_string(new_inner) + "}"

    def test_broken_serialized_value_falls_back_to_plain(self):
        value = 's:99:"http://old.example.com";'
        assert self.replacer.replace_value(value) == 's:99:"https://new.example.org";'

    def test_non_strings_pass_through(self):
        row = {"ID": 3, "data": b"http://old.example.com", "title": None}
        assert self.replacer.replace_row(row) == row

    def test_longest_match_wins(self):
        replacer = EnvironmentReplacer({"/var/www": "/srv", "/var/www/old": "/srv/new"})
        assert replacer.replace_text("/var/www/old/file") == "/srv/new/file"

    def test_inactive_replacer(self):
        replacer = EnvironmentReplacer({})
        rows = [{"a": "http://old.example.com"}]

        assert not replacer.is_active
        assert replacer.replace_rows(rows) == rows

    def test_for_dump_uses_home_and_site_urls(self):
        dump = DatabaseDump(
            site_url="http://old.example.com/wp",
            home_url="http://old.example.com",
            paths={"root": "/var/www/old"}
        )

        replacer = EnvironmentReplacer.for_dump(
            dump, "https://new.example.org/wp", "https://new.example.org", {"root": "/srv/new"}
        )

        assert replacer.replace_text("http://old.example.com/wp/wp-admin") == "https://new.example.org/wp/wp-admin"
        assert replacer.replace_text("http://old.example.com/about") == "https://new.example.org/about"
        assert replacer.replace_text("/var/www/old/index.php") == "/srv/new/index.php"


def test_is_serialized():
    assert is_serialized('a:0:{}')
    assert is_serialized('s:3:"abc";')
    assert is_serialized('b:1;')
    assert is_serialized('N;')
    assert not is_serialized('plain text')
    assert not is_serialized('{"json": true}')
