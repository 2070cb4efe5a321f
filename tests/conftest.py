"""
Pytest configuration and shared fixtures for live-usb-maker tests.

This module provides common fixtures and utilities used across all test modules.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict

import pytest

from live_usb_maker.domain.models import SourceImage, TargetDevice


GIB = 1024**3
MIB = 1024**2


# ==============================================================================
# Device Lock
# ==============================================================================


@pytest.fixture(autouse=True)
def no_device_lock(monkeypatch):
    """Replace the flock helper in every consumer; tests have no /dev nodes."""
    calls = []

    @contextmanager
    def fake_device_operation(device_path):
        calls.append(device_path)
        yield

    for module in (
        "live_usb_maker.storage.partitioning",
        "live_usb_maker.storage.format",
        "live_usb_maker.storage.encryption",
        "live_usb_maker.storage.bootloader",
        "live_usb_maker.storage.iso",
    ):
        monkeypatch.setattr(f"{module}.device_operation", fake_device_operation)
    return calls


# ==============================================================================
# Device Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_usb_disk() -> Dict[str, Any]:
    """
    Fixture providing a 16 GiB USB stick as returned by ``lsblk -J -b``.

    Returns:
        Dict for an unmounted removable disk with one old partition.
    """
    return {
        "name": "sdb",
        "path": "/dev/sdb",
        "type": "disk",
        "size": 16 * GIB,
        "model": "Cruzer Blade",
        "vendor": "SanDisk ",
        "tran": "usb",
        "rm": True,
        "mountpoint": None,
        "fstype": None,
        "label": None,
        "children": [
            {
                "name": "sdb1",
                "path": "/dev/sdb1",
                "type": "part",
                "size": 16 * GIB - MIB,
                "mountpoint": None,
                "fstype": "vfat",
                "label": "OLD",
            }
        ],
    }


@pytest.fixture
def usb_device(mock_usb_disk) -> TargetDevice:
    return TargetDevice.from_lsblk_dict(mock_usb_disk)


# ==============================================================================
# Image Fixtures
# ==============================================================================


AUIDATA = """\
# live image metadata
AUIDATA=v2
iso_label="ARCH_202610"
cow_label=ARCH_COW
install_dir=arch
"""

LOADER_ENTRY = """\
title    Arch Linux install medium (x86_64, UEFI)
linux    /arch/boot/x86_64/vmlinuz-linux
initrd   /arch/boot/x86_64/initramfs-linux.img
options  archisobasedir=arch archisolabel=ARCH_202610 cow_label=ARCH_COW
"""

SYSLINUX_CFG = """\
LABEL arch64
MENU LABEL Arch Linux install medium (x86_64, BIOS)
LINUX /arch/boot/x86_64/vmlinuz-linux
INITRD /arch/boot/x86_64/initramfs-linux.img
APPEND archisobasedir=arch archisolabel=ARCH_202610 cow_label=ARCH_COW

LABEL reboot
COM32 reboot.c32
APPEND -f
"""


@pytest.fixture
def image_root(tmp_path) -> Path:
    """A mounted-image tree with the files provisioning reads."""
    root = tmp_path / "image"
    (root / "EFI" / "BOOT").mkdir(parents=True)
    (root / "EFI" / "BOOT" / "BOOTx64.EFI").write_bytes(b"efi")
    (root / "loader" / "entries").mkdir(parents=True)
    (root / "loader" / "entries" / "01-archiso.conf").write_text(LOADER_ENTRY)
    (root / "arch" / "boot" / "syslinux").mkdir(parents=True)
    (root / "arch" / "boot" / "syslinux" / "archiso_sys.cfg").write_text(SYSLINUX_CFG)
    (root / "arch" / "boot" / "x86_64").mkdir(parents=True)
    (root / "arch" / "boot" / "x86_64" / "vmlinuz-linux").write_bytes(b"kernel")
    (root / "arch" / "x86_64").mkdir(parents=True)
    (root / "arch" / "x86_64" / "airootfs.sfs").write_bytes(b"squashfs")
    (root / "arch" / "persistence" / "etc").mkdir(parents=True)
    (root / "arch" / "persistence" / "etc" / "hostname").write_text("live\n")
    (root / "auidata").write_text(AUIDATA)
    return root


@pytest.fixture
def image_file(tmp_path) -> Path:
    path = tmp_path / "archlinux.iso"
    path.write_bytes(b"\0" * 4096)
    return path


@pytest.fixture
def source_image(image_file) -> SourceImage:
    return SourceImage(
        path=image_file,
        size_bytes=1 * GIB,
        live_label="ARCH_202610",
        persistence_label="ARCH_COW",
        install_dir="arch",
    )
