"""Custom exceptions for the provisioning pipeline.

Every stage raises one of these so the orchestrator can decide, from the
exception alone, whether the failure-path cleanup has to run.

Exception Hierarchy:
    ProvisioningError (base)
        ├── ValidationError                 (nothing mutated)
        │   ├── SizeParseError
        │   ├── CapacityError
        │   ├── ImageValidationError
        │   └── DeviceValidationError
        ├── WorkspaceConflictError          (nothing created)
        │   └── StaleMappingError
        ├── PartitionError
        ├── FormatError
        ├── EncryptionError
        │   ├── EncryptionSetupError
        │   └── EncryptionUnlockError
        ├── MountError
        ├── ContentCopyError
        └── BootInstallError                (workspace already released)

Usage:
    from live_usb_maker.storage.exceptions import CapacityError

    if required > capacity:
        raise CapacityError(device_path, required, capacity)
"""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base exception for all provisioning failures."""

    requires_cleanup = True


class ValidationError(ProvisioningError):
    """Bad arguments, incompatible image or unsuitable device."""

    requires_cleanup = False


class SizeParseError(ValidationError):
    """A size override is not an integer with an optional unit suffix."""

    def __init__(self, value: str, reason: str = ""):
        self.value = value
        self.reason = reason
        msg = f"Invalid size {value!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CapacityError(ValidationError):
    """The device cannot hold the requested layout."""

    def __init__(self, device: str, required_bytes: int, capacity_bytes: int):
        self.device = device
        self.required_bytes = required_bytes
        self.capacity_bytes = capacity_bytes
        super().__init__(
            f"Device {device} ({capacity_bytes} bytes) is too small: "
            f"layout needs more than {required_bytes} bytes"
        )


class ImageValidationError(ValidationError):
    """The source image is missing or carries incompatible metadata."""

    def __init__(self, image: str, reason: str):
        self.image = image
        self.reason = reason
        super().__init__(f"Image validation failed for {image}: {reason}")


class DeviceValidationError(ValidationError):
    """The target device failed a precondition check."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Device validation failed for {device_name}: {reason}")


class WorkspaceConflictError(ProvisioningError):
    """Leftover state from another run was found before anything was created."""

    requires_cleanup = False

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Workspace conflict at {path}: {reason}")


class StaleMappingError(WorkspaceConflictError):
    """An encrypted mapping with our name is already open."""

    def __init__(self, mapped_name: str):
        self.mapped_name = mapped_name
        super().__init__(
            f"/dev/mapper/{mapped_name}",
            "mapping already exists (left over from an earlier run?)",
        )


class PartitionError(ProvisioningError):
    """A partition-table write was rejected."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class FormatError(ProvisioningError):
    """Filesystem creation failed."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class EncryptionError(ProvisioningError):
    """Base exception for LUKS container handling."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class EncryptionSetupError(EncryptionError):
    """Container creation or boot reconfiguration failed."""


class EncryptionUnlockError(EncryptionError):
    """The container could not be opened (wrong passphrase or I/O error)."""


class MountError(ProvisioningError):
    """A workspace mount could not be established."""

    def __init__(self, source: str, target: str, reason: str):
        self.source = source
        self.target = target
        self.reason = reason
        super().__init__(f"Failed to mount {source} at {target}: {reason}")


class ContentCopyError(ProvisioningError):
    """Copying image content onto the new partitions failed."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class BootInstallError(ProvisioningError):
    """Bootloader installation failed after content was committed."""

    requires_cleanup = False

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)
