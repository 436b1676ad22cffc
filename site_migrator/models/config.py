"""
Configuration models for the Site Migrator.

This module defines Pydantic models for engine settings and per-job
migration options, plus loading of settings from YAML files with
environment overrides.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from site_migrator.core.exceptions import ConfigurationError
from site_migrator.utils.helpers import load_config_file


ENV_PREFIX = "SITE_MIGRATOR_"

FILE_CATEGORIES = ("media", "plugins", "themes")


class MigrationOptions(BaseModel):
    """Which categories a job includes and where its archive lives."""
    database: bool = True
    media: bool = True
    plugins: bool = True
    themes: bool = True
    archive_path: Optional[str] = None
    replace_urls: bool = True
    target_site_url: Optional[str] = None
    target_home_url: Optional[str] = None

    def file_categories(self) -> List[str]:
        """Enabled file categories in archive order."""
        return [category for category in FILE_CATEGORIES if getattr(self, category)]

    def flags(self) -> Dict[str, bool]:
        return {
            "database": self.database,
            "media": self.media,
            "plugins": self.plugins,
            "themes": self.themes,
        }


class MigratorSettings(BaseModel):
    """Settings shared by every job the engine runs."""
    site_id: str = "default"
    site_root: str = "."
    content_dir: str = "wp-content"
    storage_dir: str = ".site-migrator"
    database_url: Optional[str] = None
    table_prefix: str = "wp_"
    protected_table_suffixes: List[str] = Field(
        default_factory=lambda: ["sessions", "rate_limits", "migrator_locks"]
    )
    units_per_call: int = Field(default=1, ge=1)
    file_batch_max_files: int = Field(default=200, ge=1)
    file_batch_max_bytes: int = Field(default=32 * 1024 * 1024, ge=1)
    insert_batch_size: int = Field(default=500, ge=1)
    unit_timeout_seconds: float = Field(default=300.0, gt=0)
    lock_ttl_seconds: int = Field(default=600, ge=1)
    job_ttl_seconds: int = Field(default=86400, ge=1)
    snapshot_before_import: bool = True
    snapshot_retention: int = Field(default=3, ge=1)
    log_level: str = "INFO"
    log_file: Optional[str] = None
    structured_logging: bool = False

    @field_validator('protected_table_suffixes', mode='before')
    @classmethod
    def split_suffix_list(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator('log_level')
    @classmethod
    def log_level_must_be_known(cls, v):
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f'Unknown log level: {v}')
        return level

    @property
    def jobs_dir(self) -> Path:
        return Path(self.storage_dir) / "jobs"

    @property
    def work_dir(self) -> Path:
        return Path(self.storage_dir) / "work"

    @property
    def snapshots_dir(self) -> Path:
        return Path(self.storage_dir) / "snapshots"


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for field_name in MigratorSettings.model_fields:
        key = f"{ENV_PREFIX}{field_name.upper()}"
        if key in environ:
            overrides[field_name] = environ[key]
    return overrides


def load_settings(
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any
) -> MigratorSettings:
    """
    Load engine settings.

    Values are layered: defaults, then the YAML (or JSON) file, then
    ``SITE_MIGRATOR_*`` environment variables, then keyword overrides.

    Args:
        config_path: Optional settings file
        environ: Environment mapping (``os.environ`` by default)
        **overrides: Explicit values taking precedence over everything else

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If the file cannot be read or a value is invalid
    """
    data: Dict[str, Any] = {}

    if config_path:
        try:
            loaded = load_config_file(config_path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read settings file {config_path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Settings file {config_path} must contain a mapping")
        data.update(loaded)

    data.update(_env_overrides(os.environ if environ is None else environ))
    data.update({key: value for key, value in overrides.items() if value is not None})

    try:
        return MigratorSettings(**data)
    except PydanticValidationError as e:
        raise ConfigurationError(
            f"Invalid settings: {e}",
            details={"errors": e.errors(include_url=False)}
        ) from e
