"""Safety validation run before the device is touched.

This module provides validation functions to prevent dangerous operations:
- Refuses to run without root
- Only accepts removable USB disks with nothing mounted
- Refuses an image that lives on the target device
- Works out which positional argument is the image and which the device

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, making error handling more explicit.

Example:
    from live_usb_maker.storage.validation import validate_target_device

    try:
        validate_target_device(device)
    except DeviceValidationError:
        # Handle error
        pass
"""

import os
import stat
from pathlib import Path

from live_usb_maker.domain.models import ProvisionOptions, TargetDevice

from .devices import backing_device, get_base_device
from .exceptions import DeviceValidationError, ImageValidationError, ValidationError


ISO9660_SIGNATURE = b"CD001"
# Primary volume descriptor starts at sector 16 (2048-byte sectors); the
# identifier follows its one-byte type code.
ISO9660_SIGNATURE_OFFSET = 16 * 2048 + 1


def require_root() -> None:
    """Raise ValidationError unless running with effective uid 0."""
    if os.geteuid() != 0:
        raise ValidationError("live-usb-maker must be run as root")


def is_block_device(path) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def is_iso_image(path) -> bool:
    """Check for the ISO 9660 volume descriptor signature."""
    try:
        with open(path, "rb") as handle:
            handle.seek(ISO9660_SIGNATURE_OFFSET)
            return handle.read(len(ISO9660_SIGNATURE)) == ISO9660_SIGNATURE
    except OSError:
        return False


def identify_arguments(first: str, second: str) -> tuple[Path, str]:
    """Return ``(image, device)`` from two positionals given in either order.

    Raises:
        ValidationError: If neither order gives an image and a block device
    """
    for image, device in ((first, second), (second, first)):
        if is_block_device(device) and not is_block_device(image):
            return Path(image), device
    for image, device in ((first, second), (second, first)):
        if is_iso_image(image):
            return Path(image), device
    raise ValidationError(
        f"Cannot tell image from device in {first!r} and {second!r}: "
        "expected an ISO 9660 image and a block device"
    )


def validate_image_file(image_path: Path) -> None:
    """Validate that the image exists and is a regular file.

    Raises:
        ImageValidationError: If the image is missing or not a file
    """
    if not image_path.exists():
        raise ImageValidationError(str(image_path), "file does not exist")
    if not image_path.is_file():
        raise ImageValidationError(str(image_path), "not a regular file")


def validate_options(options: ProvisionOptions) -> None:
    """Reject option combinations that cannot be honoured.

    Raises:
        ValidationError: Raw copy combined with encryption
    """
    if options.raw_copy and options.encrypt:
        raise ValidationError(
            "--raw writes the image unchanged and cannot encrypt persistence"
        )


def validate_target_device(device: TargetDevice) -> None:
    """Validate that ``device`` is a removable USB disk with nothing mounted.

    Raises:
        DeviceValidationError: On the first failed check
    """
    if not device.removable:
        raise DeviceValidationError(device.path, "device is not removable")
    if (device.transport or "").lower() != "usb":
        raise DeviceValidationError(
            device.path, f"transport is {device.transport or 'unknown'}, not usb"
        )
    if device.mountpoints:
        raise DeviceValidationError(
            device.path, f"device is mounted at {', '.join(device.mountpoints)}"
        )
    if device.size_bytes <= 0:
        raise DeviceValidationError(device.path, "device reports zero capacity")


def validate_image_not_on_device(image_path: Path, device: TargetDevice) -> None:
    """Refuse an image stored on the device that is about to be overwritten.

    Raises:
        DeviceValidationError: If the image's filesystem is backed by the target
    """
    source = backing_device(image_path)
    if not source or not source.startswith("/dev/"):
        return
    if get_base_device(source) == get_base_device(device.name):
        raise DeviceValidationError(
            device.path, f"image {image_path} is stored on the target device"
        )
