"""Source image metadata.

A compatible image carries a small ``key=value`` file at its root (``/auidata``
by default). Only schema version 2 is understood::

    AUIDATA=v2
    iso_label=ARCH_202601
    cow_label=ARCH_COW
    install_dir=arch
"""

from __future__ import annotations

from pathlib import Path

from live_usb_maker.config.settings import DEFAULT_METADATA_FILENAME, get_setting
from live_usb_maker.domain.models import SourceImage
from live_usb_maker.logging import LoggerFactory

from .exceptions import ImageValidationError


log = LoggerFactory.for_storage()

METADATA_VERSION = "v2"
REQUIRED_KEYS = ("cow_label", "iso_label", "install_dir")


def parse_metadata(text: str) -> dict[str, str]:
    """Parse ``key=value`` lines; comments and blank lines are skipped."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key.strip()] = value
    return values


def metadata_path(image_root: Path) -> Path:
    return image_root / get_setting("metadata_filename", DEFAULT_METADATA_FILENAME)


def read_source_image(image_path: Path, image_root: Path) -> SourceImage:
    """Build a SourceImage from the mounted image at ``image_root``.

    Raises:
        ImageValidationError: Missing file, wrong schema or missing keys
    """
    path = metadata_path(image_root)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as error:
        raise ImageValidationError(
            str(image_path), f"no /{path.name} metadata file; incompatible image"
        ) from error
    except OSError as error:
        raise ImageValidationError(
            str(image_path), f"cannot read /{path.name}: {error}"
        ) from error

    metadata = parse_metadata(text)
    version = metadata.get("AUIDATA")
    if version != METADATA_VERSION:
        raise ImageValidationError(
            str(image_path),
            f"unsupported metadata version {version!r} (need AUIDATA={METADATA_VERSION})",
        )
    missing = [key for key in REQUIRED_KEYS if not metadata.get(key)]
    if missing:
        raise ImageValidationError(
            str(image_path), f"metadata is missing {', '.join(missing)}"
        )

    image = SourceImage(
        path=Path(image_path),
        size_bytes=Path(image_path).stat().st_size,
        live_label=metadata["iso_label"],
        persistence_label=metadata["cow_label"],
        install_dir=metadata["install_dir"],
        metadata=metadata,
    )
    log.info(
        f"Image {image.path.name}: iso_label={image.live_label} "
        f"cow_label={image.persistence_label} install_dir={image.install_dir}"
    )
    return image
