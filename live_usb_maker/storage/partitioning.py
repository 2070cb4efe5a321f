"""GPT partition table creation with sgdisk.

Layout:
    1: live copy of the image      Linux filesystem
    2: EFI system / syslinux boot  Microsoft basic data
    3: persistence                 Linux filesystem (remainder by default)

Every sgdisk call is a separate table write. The kernel is asked to re-read
the table after each one and the pipeline waits a fixed settle delay before
the next write; a failed write is reported, never retried.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
import time
from typing import Optional

from live_usb_maker.config.settings import (
    DEFAULT_PARTITION_SETTLE_SECONDS,
    get_float,
)
from live_usb_maker.domain.models import (
    LINUX_FILESYSTEM_GUID,
    MICROSOFT_BASIC_DATA_GUID,
    PartitionPlan,
    PartitionSizes,
    PartitionSpec,
    partition_path,
)
from live_usb_maker.logging import EventLogger, LoggerFactory

from .command_runners import run_command
from .device_lock import device_operation
from .exceptions import PartitionError
from .sizing import ALIGNMENT_SECTORS, SECTOR_SIZE


log = LoggerFactory.for_storage()

PARTITION_NAMES = ("live", "boot", "persistence")


def build_plan(sizes: PartitionSizes) -> PartitionPlan:
    """Lay the three partitions out back to back after the 1 MiB offset."""
    entries = (
        (sizes.live_bytes, LINUX_FILESYSTEM_GUID),
        (sizes.boot_bytes, MICROSOFT_BASIC_DATA_GUID),
        (sizes.persistent_bytes, LINUX_FILESYSTEM_GUID),
    )
    partitions = []
    start = ALIGNMENT_SECTORS
    for index, (size_bytes, type_guid) in enumerate(entries):
        number = index + 1
        size_sectors: Optional[int] = size_bytes // SECTOR_SIZE
        if number == 3 and sizes.persistent_is_remainder:
            size_sectors = None
        partitions.append(
            PartitionSpec(
                number=number,
                start_sector=start,
                size_sectors=size_sectors,
                type_guid=type_guid,
                name=PARTITION_NAMES[index],
            )
        )
        start += size_bytes // SECTOR_SIZE
    return PartitionPlan(
        partitions=tuple(partitions), sizes=sizes, sector_size=SECTOR_SIZE
    )


def settle_device(device_path: str, delay: float) -> None:
    """Ask the kernel to re-read the table, then wait for udev to catch up."""
    for cmd in (
        ["partprobe", device_path],
        ["udevadm", "settle", "--timeout=10"],
    ):
        if shutil.which(cmd[0]):
            with contextlib.suppress(subprocess.CalledProcessError, OSError):
                run_command(cmd, check=False, log_command=False)
    if delay > 0:
        time.sleep(delay)


def _sgdisk(device_path: str, args: list[str]) -> None:
    command = ["sgdisk", *args, device_path]
    try:
        with device_operation(device_path):
            result = run_command(command, check=False)
    except OSError as error:
        raise PartitionError(
            f"Could not run {' '.join(command)}: {error}", device=device_path
        ) from error
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "").strip() or "no output"
        raise PartitionError(
            f"sgdisk failed on {device_path} (rc={result.returncode}): {message}",
            device=device_path,
        )


def new_partition_args(spec: PartitionSpec) -> list[str]:
    end = f"+{spec.size_sectors}" if spec.size_sectors is not None else "0"
    return [
        f"--new={spec.number}:{spec.start_sector}:{end}",
        f"--typecode={spec.number}:{spec.type_guid}",
        f"--change-name={spec.number}:{spec.name}",
    ]


def write_partition_table(
    device_path: str,
    plan: PartitionPlan,
    settle_delay: Optional[float] = None,
) -> None:
    """Replace the table on ``device_path`` with ``plan``.

    Raises:
        PartitionError: On the first rejected write
    """
    if settle_delay is None:
        settle_delay = get_float(
            "partition_settle_seconds", DEFAULT_PARTITION_SETTLE_SECONDS
        )

    log.info(f"Writing fresh GPT to {device_path}")
    _sgdisk(device_path, ["--clear"])
    settle_device(device_path, settle_delay)

    for spec in plan.partitions:
        _sgdisk(device_path, new_partition_args(spec))
        EventLogger.log_partition_created(
            log,
            device_path,
            spec.number,
            spec.start_sector,
            spec.size_sectors,
            spec.type_guid,
        )
        settle_device(device_path, settle_delay)


def wait_for_partitions(
    device_path: str, count: int = 3, timeout: float = 10.0
) -> None:
    """Block until the partition nodes exist.

    Raises:
        PartitionError: If a node is still missing after ``timeout`` seconds
    """
    nodes = [partition_path(device_path, n) for n in range(1, count + 1)]
    deadline = time.monotonic() + timeout
    while True:
        missing = [node for node in nodes if not os.path.exists(node)]
        if not missing:
            log.debug(f"Partition nodes present: {', '.join(nodes)}")
            return
        if time.monotonic() >= deadline:
            raise PartitionError(
                f"Partition nodes did not appear: {', '.join(missing)}",
                device=device_path,
            )
        time.sleep(0.5)
