"""Tests for storage/partitioning.py - GPT layout and sgdisk writes."""

from unittest.mock import Mock, call, patch

import pytest

from live_usb_maker.domain.models import (
    LINUX_FILESYSTEM_GUID,
    MICROSOFT_BASIC_DATA_GUID,
    PartitionSizes,
)
from live_usb_maker.storage import partitioning
from live_usb_maker.storage.exceptions import PartitionError


MIB = 1024**2
GIB = 1024**3


@pytest.fixture
def sizes():
    return PartitionSizes(
        live_bytes=1 * GIB + 192 * MIB,
        boot_bytes=512 * MIB,
        persistent_bytes=14654 * MIB,
        persistent_is_remainder=True,
    )


class TestBuildPlan:
    """Tests for build_plan()."""

    def test_start_sectors_are_cumulative(self, sizes):
        """Test start_n = 2048 + sum of the earlier partition sizes."""
        plan = partitioning.build_plan(sizes)

        assert plan.live.start_sector == 2048
        assert plan.boot.start_sector == 2048 + (1216 * MIB) // 512
        assert plan.persistent.start_sector == 2048 + (1728 * MIB) // 512

    def test_type_guids(self, sizes):
        plan = partitioning.build_plan(sizes)
        assert plan.live.type_guid == LINUX_FILESYSTEM_GUID
        assert plan.boot.type_guid == MICROSOFT_BASIC_DATA_GUID
        assert plan.persistent.type_guid == LINUX_FILESYSTEM_GUID

    def test_remainder_has_no_size(self, sizes):
        plan = partitioning.build_plan(sizes)
        assert plan.persistent.size_sectors is None
        assert plan.live.size_sectors == (1216 * MIB) // 512

    def test_explicit_persistent_size(self):
        fixed = PartitionSizes(
            live_bytes=1 * GIB,
            boot_bytes=512 * MIB,
            persistent_bytes=4 * GIB,
            persistent_is_remainder=False,
        )
        plan = partitioning.build_plan(fixed)
        assert plan.persistent.size_sectors == (4 * GIB) // 512


class TestNewPartitionArgs:
    def test_sized_partition(self, sizes):
        plan = partitioning.build_plan(sizes)
        assert partitioning.new_partition_args(plan.live) == [
            "--new=1:2048:+2490368",
            f"--typecode=1:{LINUX_FILESYSTEM_GUID}",
            "--change-name=1:live",
        ]

    def test_remainder_partition_ends_at_zero(self, sizes):
        plan = partitioning.build_plan(sizes)
        args = partitioning.new_partition_args(plan.persistent)
        assert args[0] == f"--new=3:{plan.persistent.start_sector}:0"


class TestWritePartitionTable:
    """Tests for write_partition_table()."""

    @patch("live_usb_maker.storage.partitioning.settle_device")
    @patch("live_usb_maker.storage.partitioning.run_command")
    def test_writes_clear_then_three_partitions(
        self, mock_run, mock_settle, sizes, no_device_lock
    ):
        """Test one sgdisk call per table write, each followed by a settle."""
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")
        plan = partitioning.build_plan(sizes)

        partitioning.write_partition_table("/dev/sdb", plan, settle_delay=0)

        commands = [c.args[0] for c in mock_run.call_args_list]
        assert commands[0] == ["sgdisk", "--clear", "/dev/sdb"]
        assert len(commands) == 4
        assert commands[1][1].startswith("--new=1:2048:")
        assert commands[3][1].startswith("--new=3:")
        assert mock_settle.call_count == 4
        assert mock_settle.call_args == call("/dev/sdb", 0)
        assert no_device_lock == ["/dev/sdb"] * 4

    @patch("live_usb_maker.storage.partitioning.settle_device")
    @patch("live_usb_maker.storage.partitioning.run_command")
    def test_failure_stops_without_retry(self, mock_run, mock_settle, sizes):
        """Test that a rejected write raises and nothing further is attempted."""
        mock_run.side_effect = [
            Mock(returncode=0, stdout="", stderr=""),
            Mock(returncode=4, stdout="", stderr="Could not create partition 1"),
        ]
        plan = partitioning.build_plan(sizes)

        with pytest.raises(PartitionError) as exc_info:
            partitioning.write_partition_table("/dev/sdb", plan, settle_delay=0)

        assert "Could not create partition 1" in str(exc_info.value)
        assert exc_info.value.device == "/dev/sdb"
        assert mock_run.call_count == 2

    @patch("live_usb_maker.storage.partitioning.settle_device")
    @patch("live_usb_maker.storage.partitioning.run_command")
    def test_missing_sgdisk(self, mock_run, mock_settle, sizes):
        mock_run.side_effect = FileNotFoundError("sgdisk")
        plan = partitioning.build_plan(sizes)

        with pytest.raises(PartitionError):
            partitioning.write_partition_table("/dev/sdb", plan, settle_delay=0)

    @patch("live_usb_maker.storage.partitioning.settle_device")
    @patch("live_usb_maker.storage.partitioning.get_float", return_value=2.0)
    @patch("live_usb_maker.storage.partitioning.run_command")
    def test_settle_delay_from_settings(self, mock_run, mock_float, mock_settle, sizes):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        partitioning.write_partition_table("/dev/sdb", partitioning.build_plan(sizes))

        mock_settle.assert_called_with("/dev/sdb", 2.0)


class TestSettleDevice:
    @patch("live_usb_maker.storage.partitioning.time.sleep")
    @patch("live_usb_maker.storage.partitioning.shutil.which", return_value="/usr/bin/x")
    @patch("live_usb_maker.storage.partitioning.run_command")
    def test_partprobe_udevadm_then_sleep(self, mock_run, mock_which, mock_sleep):
        partitioning.settle_device("/dev/sdb", 2)

        commands = [c.args[0] for c in mock_run.call_args_list]
        assert commands == [
            ["partprobe", "/dev/sdb"],
            ["udevadm", "settle", "--timeout=10"],
        ]
        mock_sleep.assert_called_once_with(2)

    @patch("live_usb_maker.storage.partitioning.time.sleep")
    @patch("live_usb_maker.storage.partitioning.shutil.which", return_value=None)
    @patch("live_usb_maker.storage.partitioning.run_command")
    def test_missing_tools_skipped(self, mock_run, mock_which, mock_sleep):
        partitioning.settle_device("/dev/sdb", 0)
        mock_run.assert_not_called()
        mock_sleep.assert_not_called()


class TestWaitForPartitions:
    @patch("live_usb_maker.storage.partitioning.os.path.exists", return_value=True)
    def test_nodes_present(self, mock_exists):
        partitioning.wait_for_partitions("/dev/nvme0n1", 3)
        checked = [c.args[0] for c in mock_exists.call_args_list]
        assert checked == ["/dev/nvme0n1p1", "/dev/nvme0n1p2", "/dev/nvme0n1p3"]

    @patch("live_usb_maker.storage.partitioning.time.sleep")
    @patch("live_usb_maker.storage.partitioning.os.path.exists", return_value=False)
    def test_timeout(self, mock_exists, mock_sleep):
        with pytest.raises(PartitionError) as exc_info:
            partitioning.wait_for_partitions("/dev/sdb", 3, timeout=0)
        assert "/dev/sdb3" in str(exc_info.value)
