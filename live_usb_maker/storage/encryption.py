"""LUKS2 container handling for the persistence partition.

Lifecycle:
    ensure_no_stale_mapping()      before anything is created
    format_volume()                cryptsetup luksFormat (passphrase #1)
    open_volume()                  cryptsetup open (passphrase #2)
    configure_boot_for_encryption()
                                   regenerate the guest initramfs with the
                                   ``encrypt`` hook and point every boot
                                   entry at the container
    close_volume()                 on every path once opened

Passphrases are read by cryptsetup itself from the terminal; this module never
sees them. A passphrase file can be given instead for unattended runs.
"""

from __future__ import annotations

import platform
import re
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from live_usb_maker.config.settings import get_setting
from live_usb_maker.logging import LoggerFactory

from .command_runners import run_command, run_interactive_command
from .device_lock import device_operation
from .devices import mapped_device_exists, mapped_device_path
from .exceptions import (
    EncryptionSetupError,
    EncryptionUnlockError,
    MountError,
    StaleMappingError,
)

if TYPE_CHECKING:
    from live_usb_maker.domain.models import ProvisioningSession

    from .mount import MountCoordinator


log = LoggerFactory.for_crypto()

SQUASHFS_NAME = "airootfs.sfs"
CHROOT_BINDS = ("dev", "proc", "sys", "run")

_HOOKS_LINE = re.compile(r"^(\s*HOOKS=)([(\"'])(.*?)([)\"'])(\s*)$")
_LOADER_OPTIONS = re.compile(r"^(\s*options)(\s+)(.*?)(\s*)$")
_SYSLINUX_APPEND = re.compile(r"^(\s*APPEND)(\s+)(.*?)(\s*)$", re.IGNORECASE)
# Only entries that boot the live system get the parameter
_LIVE_ENTRY_MARKERS = ("cow_label=", "archisobasedir=", "archisolabel=")


def ensure_no_stale_mapping(mapped_name: str) -> None:
    """Raise StaleMappingError if ``/dev/mapper/<mapped_name>`` is present."""
    if mapped_device_exists(mapped_name):
        raise StaleMappingError(mapped_name)


def _cryptsetup(command: list[str], passphrase_file: Optional[Path]) -> int:
    if passphrase_file is not None:
        result = run_command(
            [*command, "--key-file", str(passphrase_file)], check=False
        )
        return result.returncode
    return run_interactive_command(command)


def format_volume(
    device_path: str,
    label: str,
    passphrase_file: Optional[Path] = None,
    volume_uuid: Optional[str] = None,
) -> str:
    """Turn ``device_path`` into a LUKS2 container and return its UUID.

    Raises:
        EncryptionSetupError: If cryptsetup fails or cannot be started
    """
    volume_uuid = volume_uuid or str(uuid.uuid4())
    command = [
        "cryptsetup",
        "luksFormat",
        "--type",
        "luks2",
        "--label",
        label,
        "--uuid",
        volume_uuid,
    ]
    if passphrase_file is not None:
        command.append("--batch-mode")
    command.append(device_path)

    log.info(f"Creating LUKS2 container on {device_path}")
    if passphrase_file is None:
        log.info("cryptsetup will ask for the new passphrase")
    try:
        with device_operation(device_path):
            returncode = _cryptsetup(command, passphrase_file)
    except OSError as error:
        raise EncryptionSetupError(
            f"Could not run cryptsetup on {device_path}: {error}",
            device=device_path,
        ) from error
    if returncode != 0:
        raise EncryptionSetupError(
            f"luksFormat failed on {device_path} (rc={returncode})",
            device=device_path,
        )
    return volume_uuid


def open_volume(
    device_path: str, mapped_name: str, passphrase_file: Optional[Path] = None
) -> str:
    """Unlock the container and return the mapped device path.

    Raises:
        EncryptionUnlockError: Wrong passphrase or the mapping did not appear
    """
    command = ["cryptsetup", "open", "--type", "luks2", device_path, mapped_name]
    log.info(f"Unlocking {device_path} as {mapped_name}")
    try:
        returncode = _cryptsetup(command, passphrase_file)
    except OSError as error:
        raise EncryptionUnlockError(
            f"Could not run cryptsetup on {device_path}: {error}",
            device=device_path,
        ) from error
    if returncode != 0:
        raise EncryptionUnlockError(
            f"Could not unlock {device_path} (rc={returncode})", device=device_path
        )
    mapped_path = mapped_device_path(mapped_name)
    if not mapped_device_exists(mapped_name):
        raise EncryptionUnlockError(
            f"{mapped_path} missing after cryptsetup open", device=device_path
        )
    return mapped_path


def close_volume(mapped_name: str) -> bool:
    """Close the mapping. Failures are logged and reported, never raised."""
    try:
        result = run_command(["cryptsetup", "close", mapped_name], check=False)
    except OSError as error:
        log.error(f"Could not run cryptsetup close {mapped_name}: {error}")
        return False
    if result.returncode != 0:
        log.error(
            f"cryptsetup close {mapped_name} failed: "
            f"{(result.stderr or '').strip() or result.returncode}"
        )
        return False
    log.info(f"Closed mapping {mapped_name}")
    return True


def add_encrypt_hook(config_text: str) -> str:
    """Insert ``encrypt`` before ``filesystems`` in every HOOKS line.

    Raises:
        EncryptionSetupError: If the file has no HOOKS line
    """
    lines = config_text.splitlines(keepends=True)
    found = False
    for index, line in enumerate(lines):
        body = line.rstrip("\r\n")
        match = _HOOKS_LINE.match(body)
        if not match:
            continue
        found = True
        hooks = match.group(3).split()
        if "encrypt" in hooks:
            continue
        if "filesystems" in hooks:
            hooks.insert(hooks.index("filesystems"), "encrypt")
        else:
            hooks.append("encrypt")
        ending = line[len(body):]
        lines[index] = (
            f"{match.group(1)}{match.group(2)}{' '.join(hooks)}"
            f"{match.group(4)}{match.group(5)}{ending}"
        )
    if not found:
        raise EncryptionSetupError("mkinitcpio.conf has no HOOKS line")
    return "".join(lines)


def insert_cryptdevice(cmdline: str, volume_uuid: str, mapped_name: str) -> str:
    """Put ``cryptdevice=`` right before ``cow_label=``, or at the end."""
    parameter = f"cryptdevice=UUID={volume_uuid}:{mapped_name}"
    tokens = [t for t in cmdline.split() if not t.startswith("cryptdevice=")]
    for index, token in enumerate(tokens):
        if token.startswith("cow_label="):
            tokens.insert(index, parameter)
            break
    else:
        tokens.append(parameter)
    return " ".join(tokens)


def _rewrite_lines(path: Path, pattern, volume_uuid: str, mapped_name: str) -> bool:
    original = path.read_text(encoding="utf-8")
    lines = original.splitlines(keepends=True)
    for index, line in enumerate(lines):
        body = line.rstrip("\r\n")
        match = pattern.match(body)
        if not match or not any(m in match.group(3) for m in _LIVE_ENTRY_MARKERS):
            continue
        ending = line[len(body):]
        lines[index] = (
            f"{match.group(1)}{match.group(2)}"
            f"{insert_cryptdevice(match.group(3), volume_uuid, mapped_name)}"
            f"{match.group(4)}{ending}"
        )
    updated = "".join(lines)
    if updated == original:
        return False
    path.write_text(updated, encoding="utf-8")
    return True


def rewrite_boot_entries(
    boot_root: Path, install_dir: str, volume_uuid: str, mapped_name: str
) -> list[Path]:
    """Add the cryptdevice parameter to systemd-boot and syslinux entries.

    Returns the files that changed. Running it twice changes nothing.
    """
    changed = []
    targets = [
        (sorted((boot_root / "loader" / "entries").glob("*.conf")), _LOADER_OPTIONS),
        (
            sorted((boot_root / install_dir / "boot" / "syslinux").glob("*.cfg")),
            _SYSLINUX_APPEND,
        ),
    ]
    for paths, pattern in targets:
        for path in paths:
            if _rewrite_lines(path, pattern, volume_uuid, mapped_name):
                log.debug(f"Added cryptdevice to {path}")
                changed.append(path)
    return changed


def detect_architecture(install_root: Path) -> str:
    """Pick the ``<install_dir>/<arch>`` directory that holds the root squashfs.

    Raises:
        EncryptionSetupError: If no single candidate can be chosen
    """
    configured = get_setting("architecture")
    if configured:
        return str(configured)
    try:
        candidates = [
            entry.name
            for entry in sorted(install_root.iterdir())
            if (entry / SQUASHFS_NAME).is_file()
        ]
    except OSError as error:
        raise EncryptionSetupError(
            f"Cannot list {install_root}: {error}"
        ) from error
    if len(candidates) == 1:
        return candidates[0]
    machine = platform.machine()
    if machine in candidates:
        return machine
    raise EncryptionSetupError(
        f"Cannot determine architecture under {install_root} "
        f"(candidates: {', '.join(candidates) or 'none'})"
    )


def _regenerate_initramfs(overlay_root: Path) -> None:
    conf = overlay_root / "etc" / "mkinitcpio.conf"
    if not conf.is_file():
        raise EncryptionSetupError(f"{conf} not found in guest root")
    conf.write_text(
        add_encrypt_hook(conf.read_text(encoding="utf-8")), encoding="utf-8"
    )
    log.info("Regenerating guest initramfs with the encrypt hook")
    result = run_command(["chroot", str(overlay_root), "mkinitcpio", "-P"], check=False)
    if result.returncode != 0:
        raise EncryptionSetupError(
            f"mkinitcpio failed in guest root (rc={result.returncode}): "
            f"{(result.stderr or '').strip()}"
        )


def _copy_initramfs(overlay_root: Path, destination: Path) -> list[Path]:
    images = sorted((overlay_root / "boot").glob("initramfs-*.img"))
    if not images:
        raise EncryptionSetupError(f"No initramfs images in {overlay_root / 'boot'}")
    destination.mkdir(parents=True, exist_ok=True)
    copied = []
    for image in images:
        target = destination / image.name
        shutil.copy2(image, target)
        copied.append(target)
        log.debug(f"Copied {image.name} to {destination}")
    return copied


def configure_boot_for_encryption(
    session: ProvisioningSession, coordinator: MountCoordinator
) -> None:
    """Make the device's boot path unlock the persistence container.

    Needs the live, boot and (unlocked) persistence partitions mounted. The
    squashfs, overlay and chroot bind mounts made here are released before
    returning.

    Raises:
        EncryptionSetupError: On any mount, chroot or file failure
    """
    image = session.image
    layout = session.workspace
    encryption = session.encryption
    if image is None or encryption is None:
        raise EncryptionSetupError("Encrypted boot setup needs image and container")

    arch = detect_architecture(layout.live / image.install_dir)
    squashfs = layout.live / image.install_dir / arch / SQUASHFS_NAME
    if not squashfs.is_file():
        raise EncryptionSetupError(f"Root filesystem image {squashfs} not found")

    cow_root = layout.persistence / image.persistence_label
    upperdir = cow_root / "upperdir"
    workdir = cow_root / "workdir"
    transient: list[Path] = []
    try:
        upperdir.mkdir(parents=True, exist_ok=True)
        workdir.mkdir(parents=True, exist_ok=True)

        coordinator.mount(
            str(squashfs), layout.squashfs, fstype="squashfs", options=("loop", "ro")
        )
        transient.append(layout.squashfs)
        coordinator.mount(
            "overlay",
            layout.overlay,
            fstype="overlay",
            options=(
                f"lowerdir={layout.squashfs},upperdir={upperdir},workdir={workdir}",
            ),
        )
        transient.append(layout.overlay)
        for name in CHROOT_BINDS:
            target = layout.overlay / name
            target.mkdir(exist_ok=True)
            coordinator.bind(Path("/") / name, target)
            transient.append(target)

        _regenerate_initramfs(layout.overlay)
        _copy_initramfs(
            layout.overlay, layout.boot / image.install_dir / "boot" / arch
        )
        changed = rewrite_boot_entries(
            layout.boot, image.install_dir, encryption.uuid, encryption.mapped_name
        )
        if not changed:
            log.warning("No boot entries referenced the live system; none rewritten")
    except (MountError, OSError, subprocess.SubprocessError) as error:
        raise EncryptionSetupError(f"Encrypted boot setup failed: {error}") from error
    finally:
        unreleased = coordinator.release(list(reversed(transient)))
        if unreleased:
            log.warning(f"Transient mounts still held: {', '.join(unreleased)}")
