"""Settings storage for mount-partition configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "MOUNT_PARTITION_SETTINGS_PATH",
        Path.home() / ".config" / "mount-partition" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_COMMAND_TIMEOUT_SECONDS = 60
DEFAULT_LOCK_TIMEOUT_SECONDS = 30
DEFAULT_LOCK_DIR = "/run/lock/mount-partition"

DEFAULT_SETTINGS: dict[str, Any] = {
    "command_timeout_seconds": DEFAULT_COMMAND_TIMEOUT_SECONDS,
    "lock_timeout_seconds": DEFAULT_LOCK_TIMEOUT_SECONDS,
    "lock_dir": DEFAULT_LOCK_DIR,
    "record_dir": None,
    "write_records": True,
    "read_only": False,
    "default_mount_options": None,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    """Return an integer setting, falling back to ``default`` on junk values."""
    value = get_setting(key, default)
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


load_settings()
