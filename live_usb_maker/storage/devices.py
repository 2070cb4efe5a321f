"""Block device discovery using lsblk, /proc/mounts and sysfs.

Device Detection:
    Uses lsblk with JSON output (``-J -b``) to read a single target device and
    its partitions:
    - Device name and node path
    - Size in bytes
    - Transport (usb, sata, nvme, ...)
    - Removable flag
    - Mountpoints of the disk and of every child

Mount State:
    /proc/mounts is the source of truth for "is this path mounted right now";
    lsblk output can lag behind udev.

Operations:
    - read_target_device(): Build a TargetDevice for a /dev node
    - active_mountpoints(): Set of currently mounted paths
    - is_mountpoint_active(): Membership test against /proc/mounts
    - mapped_device_exists(): Whether /dev/mapper/<name> is present
    - backing_device(): Device holding the filesystem a path lives on
    - get_base_device(): Strip the partition suffix from a device name
"""

from __future__ import annotations

import json
import os
import re
import subprocess
from dataclasses import replace
from pathlib import Path
from typing import Optional

from live_usb_maker.domain.models import TargetDevice
from live_usb_maker.logging import LoggerFactory

from .command_runners import run_command
from .exceptions import DeviceValidationError


log = LoggerFactory.for_storage()

LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,VENDOR,TRAN,RM,MOUNTPOINT,FSTYPE,LABEL"
MAPPER_DIR = Path("/dev/mapper")


def get_block_device(device_path: str) -> Optional[dict]:
    """Return the lsblk entry for ``device_path`` or None when lsblk fails."""
    try:
        result = run_command(
            ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS, device_path],
            log_output=False,
        )
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, json.JSONDecodeError, OSError) as error:
        log.debug(f"lsblk failed for {device_path}: {error}")
        return None
    devices = data.get("blockdevices", [])
    return devices[0] if devices else None


def read_target_device(device_path: str) -> TargetDevice:
    """Read the current state of ``device_path``.

    Raises:
        DeviceValidationError: If the node is missing or is not a whole disk
    """
    if not os.path.exists(device_path):
        raise DeviceValidationError(device_path, "device node does not exist")
    info = get_block_device(device_path)
    if info is None:
        raise DeviceValidationError(device_path, "lsblk could not describe device")
    if info.get("type") != "disk":
        raise DeviceValidationError(
            device_path, f"expected a whole disk, got type {info.get('type')!r}"
        )
    device = TargetDevice.from_lsblk_dict(info)
    if device.size_bytes <= 0:
        size = get_device_size_bytes(device_path)
        if size:
            device = replace(device, size_bytes=size)
    return device


def _decode_mount_field(value: str) -> str:
    # /proc/mounts escapes whitespace and backslashes as octal
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), value)


def active_mountpoints() -> set[str]:
    mountpoints: set[str] = set()
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1:
                    mountpoints.add(_decode_mount_field(parts[1]))
    except FileNotFoundError:
        return set()
    return mountpoints


def is_mountpoint_active(mountpoint) -> bool:
    """Check if a mountpoint is currently active."""
    mountpoint = str(mountpoint)
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and _decode_mount_field(parts[1]) == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def mapped_device_path(name: str) -> str:
    return str(MAPPER_DIR / name)


def mapped_device_exists(name: str) -> bool:
    return os.path.exists(mapped_device_path(name))


def get_base_device(name: str) -> str:
    """Strip partition numbers: sdb1 -> sdb, nvme0n1p2 -> nvme0n1, mmcblk0p1 -> mmcblk0."""
    name = name.replace("/dev/", "")
    match = re.match(r"^((?:nvme\d+n\d+)|(?:mmcblk\d+)|(?:loop\d+))(?:p\d+)?$", name)
    if match:
        return match.group(1)
    base = name.rstrip("0123456789")
    return base if base else name


def backing_device(path) -> Optional[str]:
    """Source device of the filesystem containing ``path`` (via findmnt)."""
    try:
        result = run_command(
            ["findmnt", "-n", "-o", "SOURCE", "--target", str(path)],
            check=False,
            log_output=False,
        )
    except OSError as error:
        log.debug(f"findmnt unavailable: {error}")
        return None
    if result.returncode != 0:
        return None
    source = result.stdout.strip()
    # btrfs subvolumes are reported as /dev/sda2[/@home]
    source = source.split("[", 1)[0]
    return source or None


def get_device_size_bytes(device_path: str) -> Optional[int]:
    """Get device size using blockdev."""
    try:
        result = run_command(
            ["blockdev", "--getsize64", device_path], check=False, log_output=False
        )
    except OSError:
        return None
    if result.returncode != 0:
        return None
    try:
        return int(result.stdout.strip())
    except ValueError:
        return None
