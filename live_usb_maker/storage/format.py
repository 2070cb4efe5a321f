"""Filesystem creation for the three partitions.

Filesystems:
    1 (live):        ext4, no journal by default, ``encrypt`` feature enabled
    2 (boot):        FAT32 labelled from settings (``LIVE_ESP``)
    3 (persistence): ext4 or f2fs, created on the unlocked LUKS mapping when
                     encrypting

The live partition is written once and then only read, so it skips the
journal unless asked for one; ``--journal`` re-enables it with tune2fs after
mkfs. Each mkfs holds the advisory lock of the node it writes.
"""

from __future__ import annotations

from live_usb_maker.config.settings import (
    DEFAULT_BOOT_LABEL,
    DEFAULT_MAPPED_NAME,
    get_setting,
)
from live_usb_maker.domain.models import EncryptionContext, ProvisioningSession
from live_usb_maker.logging import EventLogger, LoggerFactory

from . import encryption
from .command_runners import run_command
from .device_lock import device_operation
from .exceptions import FormatError


log = LoggerFactory.for_storage()

F2FS_FEATURES = "encrypt,extra_attr,compression"


def _run_mkfs(device_path: str, command: list[str], lock_path: str | None = None) -> None:
    try:
        with device_operation(lock_path or device_path):
            result = run_command(command, check=False)
    except OSError as error:
        raise FormatError(
            f"Could not run {command[0]} on {device_path}: {error}", device=device_path
        ) from error
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "").strip() or "no output"
        raise FormatError(
            f"{command[0]} failed on {device_path} (rc={result.returncode}): {message}",
            device=device_path,
        )


def _format_ext4(
    device_path: str,
    label: str,
    enable_journal: bool,
    features: str,
    lock_path: str | None = None,
) -> None:
    _run_mkfs(
        device_path,
        ["mkfs.ext4", "-F", "-L", label, "-O", features, device_path],
        lock_path=lock_path,
    )
    if enable_journal:
        _run_mkfs(
            device_path,
            ["tune2fs", "-O", "has_journal", device_path],
            lock_path=lock_path,
        )
    EventLogger.log_volume_formatted(
        log, device_path, "ext4", label, journal=enable_journal
    )


def format_live_partition(device_path: str, label: str, enable_journal: bool = False) -> None:
    """Create the ext4 filesystem that receives the full image copy."""
    _format_ext4(device_path, label, enable_journal, "encrypt,^has_journal")


def format_boot_partition(device_path: str, label: str | None = None) -> None:
    """Create the FAT32 EFI system partition."""
    label = label or get_setting("boot_label", DEFAULT_BOOT_LABEL)
    _run_mkfs(device_path, ["mkfs.fat", "-F", "32", "-n", label, device_path])
    EventLogger.log_volume_formatted(log, device_path, "vfat", label)


def format_persistent_partition(
    device_path: str,
    label: str,
    use_f2fs: bool = False,
    enable_journal: bool = False,
    lock_path: str | None = None,
) -> None:
    """Create the persistence filesystem (ext4 or f2fs).

    ``lock_path`` is the underlying partition when ``device_path`` is a
    mapped device.
    """
    if use_f2fs:
        _run_mkfs(
            device_path,
            ["mkfs.f2fs", "-f", "-l", label, "-O", F2FS_FEATURES, device_path],
            lock_path=lock_path,
        )
        EventLogger.log_volume_formatted(log, device_path, "f2fs", label)
        return
    _format_ext4(device_path, label, enable_journal, "^has_journal", lock_path)


def format_partitions(session: ProvisioningSession) -> None:
    """Format all three partitions in order.

    When encrypting, partition 3 becomes a LUKS container that is opened
    before its filesystem is created; ``session.encryption`` records the
    open mapping so cleanup can close it.

    Raises:
        FormatError: If any mkfs/tune2fs call fails
        EncryptionSetupError, EncryptionUnlockError: From the container steps
    """
    image = session.image
    options = session.options
    if image is None:
        raise FormatError("No source image metadata; cannot label filesystems")

    format_live_partition(
        session.partition_node(1), image.live_label, options.enable_journal
    )
    format_boot_partition(session.partition_node(2))

    partition = session.partition_node(3)
    if options.encrypt:
        context = EncryptionContext(
            label=f"{image.persistence_label}-luks",
            mapped_name=get_setting("mapped_name", DEFAULT_MAPPED_NAME),
        )
        session.encryption = context
        encryption.format_volume(
            partition,
            context.label,
            passphrase_file=options.passphrase_file,
            volume_uuid=context.uuid,
        )
        context.mapped_path = encryption.open_volume(
            partition, context.mapped_name, passphrase_file=options.passphrase_file
        )

    format_persistent_partition(
        session.persistent_node,
        image.persistence_label,
        use_f2fs=options.use_f2fs,
        enable_journal=options.enable_journal,
        lock_path=partition,
    )
