"""Domain model for live USB provisioning.

These objects replace the loose strings and dicts that would otherwise be
threaded through every stage. A ProvisioningSession carries them explicitly
from one component to the next.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# GPT partition type GUIDs
LINUX_FILESYSTEM_GUID = "0FC63DAF-8483-4772-8E79-3D69D8477DE4"
MICROSOFT_BASIC_DATA_GUID = "EBD0A0A2-B9E5-4433-87C0-68B6B72699C7"


def partition_path(device_path: str, number: int) -> str:
    """Partition node for a disk (``/dev/sdb`` -> ``/dev/sdb1``,
    ``/dev/nvme0n1`` -> ``/dev/nvme0n1p1``)."""
    suffix = "p" if device_path[-1].isdigit() else ""
    return f"{device_path}{suffix}{number}"


def _collect_mountpoints(node: dict[str, Any]) -> list[str]:
    """Mountpoints of ``node`` and every nested child (partitions, crypt, lvm)."""
    mountpoints = [
        mountpoint
        for mountpoint in node.get("mountpoints") or [node.get("mountpoint")]
        if mountpoint
    ]
    for child in node.get("children") or []:
        mountpoints.extend(_collect_mountpoints(child))
    return mountpoints


# ==============================================================================
# Source Image
# ==============================================================================


@dataclass(frozen=True)
class SourceImage:
    """A live ISO image and the labels read from its metadata file."""

    path: Path
    size_bytes: int
    live_label: str  # iso_label
    persistence_label: str  # cow_label
    install_dir: str
    metadata: dict[str, str] = field(default_factory=dict, compare=False)


# ==============================================================================
# Target Device
# ==============================================================================


@dataclass(frozen=True)
class TargetDevice:
    """The block device that will be overwritten."""

    path: str  # e.g., "/dev/sdb"
    size_bytes: int
    removable: bool
    transport: str | None
    model: str | None = None
    vendor: str | None = None
    mountpoints: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return Path(self.path).name

    @property
    def size_gb(self) -> float:
        return self.size_bytes / (1024**3)

    def format_label(self) -> str:
        """e.g. "sdb SanDisk Cruzer (14.9GB)"."""
        size_str = f"{self.size_gb:.1f}GB"
        parts = [p.strip() for p in (self.vendor, self.model) if p and p.strip()]
        if parts:
            return f"{self.name} {' '.join(parts)} ({size_str})"
        return f"{self.name} {size_str}"

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> TargetDevice:
        """Convert an lsblk JSON entry (``lsblk -J -b``) to a TargetDevice."""
        name = device["name"]
        path = device.get("path") or f"/dev/{name}"
        mountpoints = _collect_mountpoints(device)
        rm = device.get("rm")
        return cls(
            path=path,
            size_bytes=int(device.get("size") or 0),
            removable=rm in (1, True, "1", "true"),
            transport=device.get("tran"),
            model=(device.get("model") or "").strip() or None,
            vendor=(device.get("vendor") or "").strip() or None,
            mountpoints=tuple(mountpoints),
        )


# ==============================================================================
# Partition Layout
# ==============================================================================


@dataclass(frozen=True)
class PartitionSizes:
    """Byte sizes produced by the size calculator."""

    live_bytes: int
    boot_bytes: int
    persistent_bytes: int
    persistent_is_remainder: bool
    raw_copy: bool = False


@dataclass(frozen=True)
class PartitionSpec:
    number: int
    start_sector: int
    size_sectors: int | None  # None: take the remaining space
    type_guid: str
    name: str


@dataclass(frozen=True)
class PartitionPlan:
    """Three GPT partitions: live copy, ESP, persistence."""

    partitions: tuple[PartitionSpec, ...]
    sizes: PartitionSizes
    sector_size: int = 512

    @property
    def live(self) -> PartitionSpec:
        return self.partitions[0]

    @property
    def boot(self) -> PartitionSpec:
        return self.partitions[1]

    @property
    def persistent(self) -> PartitionSpec:
        return self.partitions[2]


# ==============================================================================
# Encryption
# ==============================================================================


@dataclass
class EncryptionContext:
    """LUKS container state for the persistence partition.

    ``mapped_path`` is set only between a successful unlock and close.
    """

    label: str
    mapped_name: str
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    mapped_path: str | None = None

    @property
    def is_open(self) -> bool:
        return self.mapped_path is not None


# ==============================================================================
# Workspace
# ==============================================================================


@dataclass(frozen=True)
class WorkspaceLayout:
    """Mount points owned by one provisioning run."""

    root: Path

    @property
    def image(self) -> Path:
        return self.root / "image"

    @property
    def live(self) -> Path:
        return self.root / "live"

    @property
    def boot(self) -> Path:
        return self.root / "boot"

    @property
    def persistence(self) -> Path:
        return self.root / "persistence"

    @property
    def squashfs(self) -> Path:
        return self.root / "squashfs"

    @property
    def overlay(self) -> Path:
        return self.root / "overlay"

    def paths(self, encrypt: bool = False) -> list[Path]:
        """Every directory this run creates, root first."""
        paths = [self.root, self.image, self.live, self.boot, self.persistence]
        if encrypt:
            paths.extend([self.squashfs, self.overlay])
        return paths


# ==============================================================================
# Provisioning Run
# ==============================================================================


@dataclass(frozen=True)
class ProvisionOptions:
    """User choices for one run."""

    encrypt: bool = False
    enable_journal: bool = False
    use_f2fs: bool = False
    raw_copy: bool = False
    boot_size: str | None = None
    persistent_size: str | None = None
    passphrase_file: Path | None = None


@dataclass
class ProvisioningSession:
    """Explicit state passed from stage to stage."""

    image_path: Path
    device: TargetDevice
    options: ProvisionOptions
    workspace: WorkspaceLayout
    job_id: str = field(default_factory=lambda: f"provision-{uuid.uuid4().hex[:8]}")
    image: SourceImage | None = None
    plan: PartitionPlan | None = None
    encryption: EncryptionContext | None = None

    def partition_node(self, number: int) -> str:
        return partition_path(self.device.path, number)

    @property
    def persistent_node(self) -> str:
        """Device the persistence filesystem lives on (mapped when encrypted)."""
        if self.encryption is not None and self.encryption.is_open:
            return self.encryption.mapped_path
        return self.partition_node(3)


@dataclass(frozen=True)
class ProvisioningResult:
    success: bool
    failed_stage: str | None = None
    error: Exception | None = None
    cleanup_ran: bool = False
