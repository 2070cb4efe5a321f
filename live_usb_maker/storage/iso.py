"""Raw-copy mode: write the image to the device byte for byte."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from live_usb_maker.logging import LoggerFactory

from . import command_runners
from .device_lock import device_operation
from .exceptions import PartitionError


log = LoggerFactory.for_storage()


def write_raw_image(
    image_path: Path,
    device_path: str,
    *,
    progress_callback: Callable[[list[str], float | None], None] | None = None,
) -> None:
    """Write an ISO file directly to a device using dd.

    The device's partition table is replaced by whatever the image carries.

    Raises:
        PartitionError: If dd fails or cannot be started
    """
    image_path = Path(image_path)
    command = [
        "dd",
        f"if={image_path}",
        f"of={device_path}",
        "bs=4M",
        "conv=fsync",
        "status=progress",
    ]
    log.info(f"Writing {image_path.name} to {device_path}")
    try:
        with device_operation(device_path):
            command_runners.run_checked_with_streaming_progress(
                command,
                title=f"Writing {image_path.name}",
                total_bytes=image_path.stat().st_size,
                progress_callback=progress_callback,
            )
    except (RuntimeError, OSError) as error:
        raise PartitionError(
            f"Raw image write to {device_path} failed: {error}", device=device_path
        ) from error
