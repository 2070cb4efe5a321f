"""Partition size calculation.

Turns device capacity, image size and the user's optional overrides into the
byte sizes of the three partitions, and rejects layouts that cannot fit
before anything touches the device.

Layout (non raw-copy):
    [1 MiB offset][live: image + boot*3/8][boot: 512 MiB][persistence: rest][GPT footer]

Raw-copy mode writes the image byte-for-byte, so no boot or persistence
space is reserved and the free-space margin does not apply.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional

from live_usb_maker.domain.models import PartitionSizes
from live_usb_maker.logging import LoggerFactory

from .exceptions import CapacityError, SizeParseError, ValidationError


log = LoggerFactory.for_storage()

MIB = 1024**2
GIB = 1024**3

SECTOR_SIZE = 512
ALIGNMENT_SECTORS = 2048
ALIGNMENT_BYTES = ALIGNMENT_SECTORS * SECTOR_SIZE
# Backup GPT header plus 32 sectors of partition entries, rounded up
GPT_FOOTER_SECTORS = 34
GPT_FOOTER_BYTES = GPT_FOOTER_SECTORS * SECTOR_SIZE

DEFAULT_BOOT_BYTES = 512 * MIB
MIN_FREE_BYTES = 1 * GIB
LIVE_MARGIN_RATIO = (3, 8)


class SizeUnit(Enum):
    """Binary size units accepted in overrides."""

    B = 1
    KIB = 1024
    MIB = 1024**2
    GIB = 1024**3
    TIB = 1024**4


_UNIT_ALIASES = {
    "": SizeUnit.MIB,
    "b": SizeUnit.B,
    "k": SizeUnit.KIB,
    "kb": SizeUnit.KIB,
    "kib": SizeUnit.KIB,
    "m": SizeUnit.MIB,
    "mb": SizeUnit.MIB,
    "mib": SizeUnit.MIB,
    "g": SizeUnit.GIB,
    "gb": SizeUnit.GIB,
    "gib": SizeUnit.GIB,
    "t": SizeUnit.TIB,
    "tb": SizeUnit.TIB,
    "tib": SizeUnit.TIB,
}

_SIZE_PATTERN = re.compile(r"^(\d+)\s*([A-Za-z]*)$")


def parse_size(text: Optional[str]) -> int:
    """Parse ``<integer>[unit]`` into bytes. A bare integer means MiB.

    Raises:
        SizeParseError: For empty, zero, negative, fractional or unknown-unit input
    """
    if text is None or not str(text).strip():
        raise SizeParseError(str(text), "empty value")
    value = str(text).strip()
    match = _SIZE_PATTERN.match(value)
    if not match:
        raise SizeParseError(
            value, "expected a positive integer with an optional unit (K, M, G, T)"
        )
    number = int(match.group(1))
    unit = _UNIT_ALIASES.get(match.group(2).lower())
    if unit is None:
        raise SizeParseError(value, f"unknown unit {match.group(2)!r}")
    if number == 0:
        raise SizeParseError(value, "size must be greater than zero")
    return number * unit.value


def align_up(value: int, alignment: int = ALIGNMENT_BYTES) -> int:
    return -(-value // alignment) * alignment


def align_down(value: int, alignment: int = ALIGNMENT_BYTES) -> int:
    return (value // alignment) * alignment


def calculate_partition_sizes(
    device_bytes: int,
    image_bytes: int,
    boot_size: Optional[str] = None,
    persistent_size: Optional[str] = None,
    raw_copy: bool = False,
    device: str = "device",
) -> PartitionSizes:
    """Compute the three partition sizes for a device.

    Args:
        device_bytes: Total capacity of the target device
        image_bytes: Size of the source image
        boot_size: Optional boot partition override (e.g. "1G")
        persistent_size: Optional persistence partition override; when
            omitted the partition takes all remaining space
        raw_copy: Image is written byte-for-byte, no extra partitions
        device: Device name used in error messages

    Raises:
        SizeParseError: If an override is malformed
        CapacityError: If the layout does not fit on the device
        ValidationError: If the image is empty
    """
    if image_bytes <= 0:
        raise ValidationError(f"Source image for {device} is empty (0 bytes)")

    if raw_copy:
        if boot_size is not None or persistent_size is not None:
            log.warning("Partition size overrides are ignored in raw-copy mode")
        if device_bytes <= image_bytes:
            raise CapacityError(device, image_bytes, device_bytes)
        return PartitionSizes(
            live_bytes=image_bytes,
            boot_bytes=0,
            persistent_bytes=0,
            persistent_is_remainder=False,
            raw_copy=True,
        )

    boot_bytes = align_up(
        parse_size(boot_size) if boot_size is not None else DEFAULT_BOOT_BYTES
    )
    persistent_override = (
        parse_size(persistent_size) if persistent_size is not None else None
    )

    numerator, denominator = LIVE_MARGIN_RATIO
    live_bytes = align_up(image_bytes + boot_bytes * numerator // denominator)

    fixed_bytes = ALIGNMENT_BYTES + live_bytes + boot_bytes + GPT_FOOTER_BYTES
    available = device_bytes - fixed_bytes

    if persistent_override is None:
        persistent_bytes = align_down(available)
        if persistent_bytes < MIN_FREE_BYTES:
            raise CapacityError(device, fixed_bytes + MIN_FREE_BYTES, device_bytes)
        remainder = True
    else:
        persistent_bytes = align_up(persistent_override)
        # Equal to the available space is accepted
        if persistent_bytes > available:
            raise CapacityError(device, fixed_bytes + persistent_bytes, device_bytes)
        remainder = False

    log.debug(
        f"Partition sizes for {device}: live={live_bytes} boot={boot_bytes} "
        f"persistence={persistent_bytes}{' (remainder)' if remainder else ''}"
    )
    return PartitionSizes(
        live_bytes=live_bytes,
        boot_bytes=boot_bytes,
        persistent_bytes=persistent_bytes,
        persistent_is_remainder=remainder,
    )
