"""
Tests for settings loading and per-job options.
"""

import json

import pytest
import yaml

from site_migrator.core.exceptions import ConfigurationError
from site_migrator.models.config import MigrationOptions, MigratorSettings, load_settings


class TestLoadSettings:
    """Test the layering of settings sources."""

    def test_defaults(self):
        settings = load_settings(environ={})

        assert settings.site_id == "default"
        assert settings.units_per_call == 1
        assert settings.protected_table_suffixes == ["sessions", "rate_limits", "migrator_locks"]
        assert settings.database_url is None

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({"site_id": "blog", "units_per_call": 3}))

        settings = load_settings(path, environ={})

        assert settings.site_id == "blog"
        assert settings.units_per_call == 3

    def test_json_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"table_prefix": "site_"}))

        assert load_settings(path, environ={}).table_prefix == "site_"

    def test_environment_beats_file_and_overrides_beat_environment(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({"site_id": "from-file", "log_level": "ERROR"}))
        environ = {"SITE_MIGRATOR_SITE_ID": "from-env", "SITE_MIGRATOR_LOG_LEVEL": "debug"}

        settings = load_settings(path, environ=environ, site_id="explicit", database_url=None)

        assert settings.site_id == "explicit"
        assert settings.log_level == "DEBUG"

    def test_comma_separated_suffixes(self):
        settings = load_settings(environ={"SITE_MIGRATOR_PROTECTED_TABLE_SUFFIXES": "sessions, cache ,"})

        assert settings.protected_table_suffixes == ["sessions", "cache"]

    def test_invalid_value(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(environ={"SITE_MIGRATOR_UNITS_PER_CALL": "0"})

        assert exc_info.value.details["errors"]

    def test_unknown_log_level(self):
        with pytest.raises(ConfigurationError):
            load_settings(environ={}, log_level="LOUD")

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "missing.yaml", environ={})

        bad = tmp_path / "bad.yaml"
        bad.write_text("site_id: [unclosed")
        with pytest.raises(ConfigurationError):
            load_settings(bad, environ={})

        listing = tmp_path / "list.yaml"
        listing.write_text(yaml.safe_dump(["a", "b"]))
        with pytest.raises(ConfigurationError):
            load_settings(listing, environ={})

        unsupported = tmp_path / "settings.toml"
        unsupported.write_text("site_id = 'x'")
        with pytest.raises(ConfigurationError):
            load_settings(unsupported, environ={})


class TestSettingsPaths:
    def test_storage_layout(self, tmp_path):
        settings = MigratorSettings(storage_dir=str(tmp_path))

        assert settings.jobs_dir == tmp_path / "jobs"
        assert settings.work_dir == tmp_path / "work"


class TestMigrationOptions:
    def test_file_categories_follow_archive_order(self):
        options = MigrationOptions(media=False)

        assert options.file_categories() == ["plugins", "themes"]
        assert options.flags() == {"database": True, "media": False, "plugins": True, "themes": True}
