"""Tests for storage/progress.py formatting helpers."""

from live_usb_maker.storage.progress import (
    format_eta,
    format_progress_display,
    human_size,
)


def test_human_size():
    assert human_size(None) == "0B"
    assert human_size(512) == "512.0B"
    assert human_size(4 * 1024**3) == "4.0GB"


def test_format_eta():
    assert format_eta(None) is None
    assert format_eta(-1) is None
    assert format_eta(75) == "01:15"
    assert format_eta(3725) == "1:02:05"


class TestFormatProgressDisplay:
    def test_without_bytes(self):
        assert format_progress_display("Writing", None, None, None, None, None) == [
            "Writing",
            "Working...",
        ]

    def test_with_rate_and_eta(self):
        lines = format_progress_display(
            "Writing", 1024**3, 2 * 1024**3, None, 100 * 1024**2, "00:10", subtitle="sdb"
        )
        assert lines == ["Writing", "sdb", "Wrote 1.0GB 50.0%", "100.0MB/s ETA 00:10"]

    def test_percent_without_total(self):
        lines = format_progress_display("Writing", 10, None, 12.5, None, None)
        assert lines[-1] == "Wrote 10.0B 12.5%"
