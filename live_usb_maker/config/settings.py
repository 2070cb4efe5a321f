"""Settings storage for provisioning defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "LIVE_USB_MAKER_SETTINGS_PATH",
        Path.home() / ".config" / "live-usb-maker" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_WORKSPACE_ROOT = "/run/live-usb-maker"
DEFAULT_MAPPED_NAME = "live-usb-persistence"
DEFAULT_BOOT_LABEL = "LIVE_ESP"
DEFAULT_METADATA_FILENAME = "auidata"
DEFAULT_PARTITION_SETTLE_SECONDS = 2.0
DEFAULT_GPTMBR_PATH = "/usr/lib/syslinux/bios/gptmbr.bin"

DEFAULT_SETTINGS: dict[str, Any] = {
    "workspace_root": DEFAULT_WORKSPACE_ROOT,
    "mapped_name": DEFAULT_MAPPED_NAME,
    "boot_label": DEFAULT_BOOT_LABEL,
    "metadata_filename": DEFAULT_METADATA_FILENAME,
    "partition_settle_seconds": DEFAULT_PARTITION_SETTLE_SECONDS,
    "gptmbr_path": DEFAULT_GPTMBR_PATH,
    "architecture": None,
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


def get_float(key: str, default: float = 0.0) -> float:
    try:
        return float(get_setting(key, default))
    except (TypeError, ValueError):
        return default


load_settings()
