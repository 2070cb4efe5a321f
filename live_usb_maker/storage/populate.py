"""Copy image content onto the freshly formatted partitions.

    live partition         full copy of the image tree
    boot partition         EFI/, loader/ and <install_dir>/boot/
    persistence partition  <cow_label>/ seeded from <install_dir>/persistence/,
                           plus upperdir/, _original/ and the metadata file

Copying is additive: nothing on the source is touched and nothing on the
target is deleted.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from live_usb_maker.domain.models import SourceImage
from live_usb_maker.logging import LoggerFactory, ThrottledLogger

from .exceptions import ContentCopyError
from .image import metadata_path


log = LoggerFactory.for_storage()


def _copy_tree(source: Path, destination: Path, title: str) -> int:
    """copytree with throttled progress logging; returns the file count."""
    progress = ThrottledLogger(log, interval_seconds=5.0)
    copied = 0

    def copy_function(src, dst):
        nonlocal copied
        result = shutil.copy2(src, dst)
        copied += 1
        log.trace(f"{title}: {src}")
        progress.info(title, f"{title}: {copied} files copied")
        return result

    try:
        shutil.copytree(
            source,
            destination,
            symlinks=True,
            copy_function=copy_function,
            dirs_exist_ok=True,
        )
    except (shutil.Error, OSError) as error:
        raise ContentCopyError(
            f"{title}: copy {source} -> {destination} failed: {error}",
            path=str(source),
        ) from error
    log.info(f"{title}: {copied} files copied")
    return copied


def populate_live_partition(image_root: Path, live_root: Path) -> int:
    return _copy_tree(image_root, live_root, "Live partition")


def _copy_plain_tree(source: Path, destination: Path, title: str) -> int:
    """Copy file contents only; FAT rejects the ISO's read-only modes."""
    progress = ThrottledLogger(log, interval_seconds=5.0)
    copied = 0
    try:
        for directory, _, files in os.walk(source):
            target_dir = destination / Path(directory).relative_to(source)
            target_dir.mkdir(parents=True, exist_ok=True)
            for name in files:
                shutil.copyfile(Path(directory) / name, target_dir / name)
                copied += 1
                progress.info(title, f"{title}: {copied} files copied")
    except OSError as error:
        raise ContentCopyError(
            f"{title}: copy {source} -> {destination} failed: {error}",
            path=str(source),
        ) from error
    log.info(f"{title}: {copied} files copied")
    return copied


def populate_boot_partition(image_root: Path, boot_root: Path, install_dir: str) -> int:
    """Copy the pieces firmware and syslinux read from the ESP."""
    copied = 0
    for relative in (Path("EFI"), Path("loader"), Path(install_dir) / "boot"):
        source = image_root / relative
        if not source.is_dir():
            log.debug(f"Image has no {relative}/, skipping")
            continue
        copied += _copy_plain_tree(
            source, boot_root / relative, f"Boot partition {relative}"
        )
    return copied


def populate_persistence(
    image_root: Path, persistence_root: Path, image: SourceImage
) -> Path:
    """Lay out ``<cow_label>/`` on the persistence partition.

    Returns the persistence directory.
    """
    cow_root = persistence_root / image.persistence_label
    seed = image_root / image.install_dir / "persistence"
    try:
        if seed.is_dir():
            _copy_tree(seed, cow_root, "Persistence seed")
            _copy_tree(seed, cow_root / "_original", "Persistence original")
        else:
            log.debug(f"Image has no {seed.relative_to(image_root)}/, starting empty")
            (cow_root / "_original").mkdir(parents=True, exist_ok=True)
        (cow_root / "upperdir").mkdir(parents=True, exist_ok=True)
        source_metadata = metadata_path(image_root)
        shutil.copy2(source_metadata, cow_root / source_metadata.name)
    except OSError as error:
        raise ContentCopyError(
            f"Persistence layout in {cow_root} failed: {error}", path=str(cow_root)
        ) from error
    return cow_root
