"""Legacy BIOS boot support via syslinux.

Runs after the workspace is released; the boot partition must be unmounted
for ``syslinux --install``. UEFI boots straight from the ESP contents and
needs nothing here.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from live_usb_maker.config.settings import DEFAULT_GPTMBR_PATH, get_setting
from live_usb_maker.logging import LoggerFactory

from .command_runners import run_command
from .device_lock import device_operation
from .exceptions import BootInstallError


log = LoggerFactory.for_storage()

# Boot code area of the protective MBR; the partition table starts at 446
# and the disk signature at 440.
MBR_BOOT_CODE_SIZE = 440


def _run(command: list[str], device_path: str) -> None:
    try:
        with device_operation(device_path):
            result = run_command(command, check=False)
    except OSError as error:
        raise BootInstallError(
            f"Could not run {command[0]}: {error}", device=device_path
        ) from error
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "").strip() or "no output"
        raise BootInstallError(
            f"{command[0]} failed (rc={result.returncode}): {message}",
            device=device_path,
        )


def write_mbr_boot_code(device_path: str, gptmbr_path: Optional[Path] = None) -> None:
    """Write the first 440 bytes of gptmbr.bin to the start of the device."""
    gptmbr_path = Path(gptmbr_path or get_setting("gptmbr_path", DEFAULT_GPTMBR_PATH))
    try:
        code = gptmbr_path.read_bytes()[:MBR_BOOT_CODE_SIZE]
    except OSError as error:
        raise BootInstallError(
            f"Cannot read {gptmbr_path}: {error}", device=device_path
        ) from error
    if len(code) != MBR_BOOT_CODE_SIZE:
        raise BootInstallError(
            f"{gptmbr_path} is {len(code)} bytes, expected at least {MBR_BOOT_CODE_SIZE}",
            device=device_path,
        )
    try:
        with device_operation(device_path):
            with open(device_path, "r+b", buffering=0) as device:
                device.seek(0)
                written = device.write(code)
                if written != MBR_BOOT_CODE_SIZE:
                    raise BootInstallError(
                        f"Short write to {device_path}: {written} of "
                        f"{MBR_BOOT_CODE_SIZE} bytes",
                        device=device_path,
                    )
                device.flush()
                os.fsync(device.fileno())
    except OSError as error:
        raise BootInstallError(
            f"Writing boot code to {device_path} failed: {error}", device=device_path
        ) from error
    log.debug(f"Wrote {MBR_BOOT_CODE_SIZE} bytes of {gptmbr_path} to {device_path}")


def install_bootloader(device_path: str, boot_partition: str, install_dir: str) -> None:
    """Install syslinux on the ESP and make the disk BIOS-bootable.

    Raises:
        BootInstallError: On any failing step; nothing is rolled back
    """
    log.info(f"Installing syslinux on {boot_partition}")
    _run(
        [
            "syslinux",
            "--directory",
            f"/{install_dir}/boot/syslinux",
            "--install",
            boot_partition,
        ],
        boot_partition,
    )
    write_mbr_boot_code(device_path)
    _run(["sgdisk", "--attributes=2:set:2", device_path], device_path)
    log.info(f"Partition 2 on {device_path} marked legacy BIOS bootable")
