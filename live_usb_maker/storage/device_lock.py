"""Advisory exclusive lock on a block device node.

udev and other well-behaved tools honour BSD locks on block devices, so holding
one while sgdisk/mkfs/dd write keeps them from probing the node mid-write.

Usage:
    from live_usb_maker.storage.device_lock import device_operation

    with device_operation("/dev/sdb"):
        run_command(["sgdisk", "--clear", "/dev/sdb"], check=False)
"""

from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from typing import Generator

from live_usb_maker.logging import LoggerFactory


log = LoggerFactory.for_storage()


@contextmanager
def device_operation(device_path: str) -> Generator[None, None, None]:
    """Hold ``LOCK_EX`` on ``device_path`` for the duration of the block.

    The lock is blocking: a second writer waits rather than racing.

    Args:
        device_path: Device node being written (e.g., "/dev/sdb", "/dev/sdb3")
    """
    fd = os.open(device_path, os.O_RDONLY | os.O_CLOEXEC)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        log.debug(f"Acquired exclusive lock on {device_path}")
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            log.debug(f"Released exclusive lock on {device_path}")
    finally:
        os.close(fd)
