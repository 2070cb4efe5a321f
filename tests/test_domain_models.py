"""Tests for domain/models.py."""

from pathlib import Path

from live_usb_maker.domain.models import (
    EncryptionContext,
    ProvisioningSession,
    ProvisionOptions,
    TargetDevice,
    WorkspaceLayout,
    partition_path,
)


class TestPartitionPath:
    def test_sd_disk(self):
        assert partition_path("/dev/sdb", 3) == "/dev/sdb3"

    def test_nvme_and_mmc(self):
        assert partition_path("/dev/nvme0n1", 1) == "/dev/nvme0n1p1"
        assert partition_path("/dev/mmcblk0", 2) == "/dev/mmcblk0p2"


class TestTargetDevice:
    """Tests for TargetDevice.from_lsblk_dict()."""

    def test_from_lsblk(self, mock_usb_disk):
        device = TargetDevice.from_lsblk_dict(mock_usb_disk)

        assert device.name == "sdb"
        assert device.vendor == "SanDisk"
        assert device.format_label() == "sdb SanDisk Cruzer Blade (16.0GB)"

    def test_child_mountpoints_collected(self, mock_usb_disk):
        mock_usb_disk["children"][0]["mountpoint"] = "/media/OLD"

        device = TargetDevice.from_lsblk_dict(mock_usb_disk)

        assert device.mountpoints == ("/media/OLD",)

    def test_nested_crypt_mountpoint_collected(self, mock_usb_disk):
        """Test that a mounted mapping under a partition marks the disk as mounted."""
        mock_usb_disk["children"][0]["children"] = [
            {
                "name": "luks-1234",
                "path": "/dev/mapper/luks-1234",
                "type": "crypt",
                "mountpoint": "/home/user/stick",
            }
        ]

        device = TargetDevice.from_lsblk_dict(mock_usb_disk)

        assert device.mountpoints == ("/home/user/stick",)

    def test_mountpoints_list_and_string_flags(self):
        device = TargetDevice.from_lsblk_dict(
            {"name": "sdc", "size": "1024", "rm": "0", "mountpoints": [None, "/mnt"]}
        )

        assert device.path == "/dev/sdc"
        assert device.size_bytes == 1024
        assert device.removable is False
        assert device.mountpoints == ("/mnt",)


class TestWorkspaceLayout:
    def test_paths(self):
        layout = WorkspaceLayout(Path("/run/live-usb-maker"))

        assert layout.paths() == [
            Path("/run/live-usb-maker"),
            Path("/run/live-usb-maker/image"),
            Path("/run/live-usb-maker/live"),
            Path("/run/live-usb-maker/boot"),
            Path("/run/live-usb-maker/persistence"),
        ]
        assert layout.paths(encrypt=True)[-2:] == [
            Path("/run/live-usb-maker/squashfs"),
            Path("/run/live-usb-maker/overlay"),
        ]


class TestProvisioningSession:
    def _session(self, usb_device, image_file):
        return ProvisioningSession(
            image_path=image_file,
            device=usb_device,
            options=ProvisionOptions(encrypt=True),
            workspace=WorkspaceLayout(Path("/run/live-usb-maker")),
        )

    def test_persistent_node_plain(self, usb_device, image_file):
        session = self._session(usb_device, image_file)
        assert session.persistent_node == "/dev/sdb3"

    def test_persistent_node_mapped(self, usb_device, image_file):
        session = self._session(usb_device, image_file)
        session.encryption = EncryptionContext(label="ARCH_COW-luks", mapped_name="cow")

        assert session.persistent_node == "/dev/sdb3"

        session.encryption.mapped_path = "/dev/mapper/cow"
        assert session.persistent_node == "/dev/mapper/cow"

    def test_job_id(self, usb_device, image_file):
        assert self._session(usb_device, image_file).job_id.startswith("provision-")
