"""Tests for the provisioning exception hierarchy."""

import pytest

from live_usb_maker.storage.exceptions import (
    BootInstallError,
    CapacityError,
    ContentCopyError,
    DeviceValidationError,
    EncryptionSetupError,
    EncryptionUnlockError,
    FormatError,
    ImageValidationError,
    MountError,
    PartitionError,
    ProvisioningError,
    SizeParseError,
    StaleMappingError,
    ValidationError,
    WorkspaceConflictError,
)


class TestRequiresCleanup:
    """Which failures leave state behind for the orchestrator to undo."""

    @pytest.mark.parametrize(
        "error",
        [
            ValidationError("bad"),
            SizeParseError("12X"),
            CapacityError("/dev/sdb", 10, 5),
            ImageValidationError("live.iso", "no metadata"),
            DeviceValidationError("/dev/sdb", "not removable"),
            WorkspaceConflictError("/run/live-usb-maker", "exists"),
            StaleMappingError("live-usb-persistence"),
            BootInstallError("syslinux failed"),
        ],
    )
    def test_no_cleanup(self, error):
        assert error.requires_cleanup is False

    @pytest.mark.parametrize(
        "error",
        [
            PartitionError("sgdisk failed"),
            FormatError("mkfs failed"),
            EncryptionSetupError("luksFormat failed"),
            EncryptionUnlockError("wrong passphrase"),
            MountError("/dev/sdb1", "/run/live-usb-maker/live", "busy"),
            ContentCopyError("disk full"),
        ],
    )
    def test_cleanup(self, error):
        assert error.requires_cleanup is True


class TestHierarchy:
    def test_all_derive_from_base(self):
        for cls in (
            SizeParseError,
            StaleMappingError,
            EncryptionUnlockError,
            BootInstallError,
            ContentCopyError,
        ):
            assert issubclass(cls, ProvisioningError)

    def test_stale_mapping_is_workspace_conflict(self):
        error = StaleMappingError("live-usb-persistence")
        assert isinstance(error, WorkspaceConflictError)
        assert error.path == "/dev/mapper/live-usb-persistence"
        assert error.mapped_name == "live-usb-persistence"


class TestMessages:
    def test_size_parse_error(self):
        error = SizeParseError("12X", "unknown unit 'X'")
        assert str(error) == "Invalid size '12X': unknown unit 'X'"

    def test_capacity_error_attributes(self):
        error = CapacityError("/dev/sdb", 2048, 1024)
        assert error.required_bytes == 2048
        assert error.capacity_bytes == 1024
        assert "/dev/sdb" in str(error)

    def test_mount_error(self):
        error = MountError("/dev/sdb2", "/run/live-usb-maker/boot", "wrong fs type")
        assert error.reason == "wrong fs type"
        assert "/dev/sdb2" in str(error)
