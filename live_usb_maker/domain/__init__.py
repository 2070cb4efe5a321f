"""Domain models for live USB provisioning.

This package contains the typed objects a provisioning run passes between
stages instead of ambient module state.
"""

from __future__ import annotations

from .models import (
    LINUX_FILESYSTEM_GUID,
    MICROSOFT_BASIC_DATA_GUID,
    EncryptionContext,
    PartitionPlan,
    PartitionSizes,
    PartitionSpec,
    ProvisioningResult,
    ProvisioningSession,
    ProvisionOptions,
    SourceImage,
    TargetDevice,
    WorkspaceLayout,
    partition_path,
)


__all__ = [
    "LINUX_FILESYSTEM_GUID",
    "MICROSOFT_BASIC_DATA_GUID",
    "EncryptionContext",
    "PartitionPlan",
    "PartitionSizes",
    "PartitionSpec",
    "ProvisioningResult",
    "ProvisioningSession",
    "ProvisionOptions",
    "SourceImage",
    "TargetDevice",
    "WorkspaceLayout",
    "partition_path",
]
