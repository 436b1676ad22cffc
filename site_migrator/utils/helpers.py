"""
Helper utilities for the Site Migrator.

This module contains various utility functions used throughout
the application for common operations.
"""

import json
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml


_KEY_UNSAFE = re.compile(r"[^a-z0-9_\-]")
_OPTION_KEY_UNSAFE = re.compile(r"[^a-z0-9_.\-]")


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_job_id() -> str:
    """Generate a unique migration job ID."""
    timestamp = utcnow().strftime("%Y%m%d_%H%M%S")
    unique_id = str(uuid.uuid4())[:8]
    return f"job_{timestamp}_{unique_id}"


def sanitize_key(value: Any) -> Optional[str]:
    """
    Coerce a value to a lowercase key of ``[a-z0-9_-]`` characters.

    Returns None when the value is not a string or number, or when
    nothing survives the coercion.
    """
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    key = _KEY_UNSAFE.sub("", str(value).strip().lower())
    return key or None


def sanitize_option_key(value: Any) -> Optional[str]:
    """Coerce a setting key to ``[a-z0-9_.-]``; None when nothing survives."""
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    key = _OPTION_KEY_UNSAFE.sub("", str(value).strip().lower())
    return key or None


def absint(value: Any) -> Optional[int]:
    """
    Coerce a value to a non-negative integer.

    Numeric strings and integers are accepted. Booleans, floats with a
    fractional part, negatives and non-numeric input yield None.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        if value.is_integer() and value >= 0:
            return int(value)
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.isascii() and text.isdecimal():
            return int(text)
    return None


def load_config_file(file_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Args:
        file_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    with open(file_path, 'r', encoding='utf-8') as f:
        if file_path.suffix.lower() in ['.yaml', '.yml']:
            return yaml.safe_load(f) or {}
        elif file_path.suffix.lower() == '.json':
            return json.load(f)
        else:
            raise ValueError(f"Unsupported configuration file format: {file_path.suffix}")


def is_safe_relative_path(path: str) -> bool:
    """Return True for a relative POSIX path that stays under its root."""
    if not path or path.startswith("/") or "\\" in path:
        return False
    if re.match(r"^[A-Za-z]:", path):
        return False
    parts = path.split("/")
    return all(part not in ("", ".", "..") for part in parts)
