"""Tests for the stats collector and pressure classification."""

import pytest

from helpers import counters
from rambo.errors import StatsUnavailable
from rambo.models import PressureLevel
from rambo.stats import StatsCollector, classify_pressure, snapshot_from_counters


class TestClassifyPressure:
    """Pressure thresholds: 5%/30% critical, 15%/20% warning."""

    @pytest.mark.parametrize(
        ("free_mb", "compressed_mb", "expected"),
        [
            (5000, 1000, PressureLevel.NORMAL),
            (1500, 1000, PressureLevel.NORMAL),  # exactly 15% free is not warning
            (1499, 0, PressureLevel.WARNING),
            (5000, 2001, PressureLevel.WARNING),
            (5000, 2000, PressureLevel.NORMAL),  # exactly 20% compressed is not warning
            (499, 0, PressureLevel.CRITICAL),
            (500, 0, PressureLevel.WARNING),  # exactly 5% free is not critical
            (5000, 3001, PressureLevel.CRITICAL),
            (5000, 3000, PressureLevel.WARNING),
        ],
    )
    def test_thresholds(self, free_mb, compressed_mb, expected):
        """Test the free and compressed ratio thresholds."""
        assert classify_pressure(10000, free_mb, compressed_mb) is expected

    def test_zero_total_is_normal(self):
        """Test zero total memory classifies as NORMAL."""
        assert classify_pressure(0, 0, 0) is PressureLevel.NORMAL

    def test_critical_iff_condition(self):
        """Critical exactly when free < 5% or compressed > 30%."""
        total = 1000
        for free in range(0, total + 1, 7):
            for compressed in range(0, total - free + 1, 11):
                level = classify_pressure(total, free, compressed)
                condition = free / total < 0.05 or compressed / total > 0.30
                assert (level is PressureLevel.CRITICAL) == condition

    def test_warning_example_from_audit_log(self):
        """Test a reading from a real boost log classifies as WARNING."""
        # 1178 MB free of 18 GB is 6.4%: above critical, below warning
        assert classify_pressure(18432, 1178, 0) is PressureLevel.WARNING


class TestStatsCollector:
    """Tests for StatsCollector."""

    def test_snapshot_converts_bytes_to_mb(self, backend):
        """Test counters are converted from bytes to MB."""
        backend.script_reads(counters(free_mb=1178, compressed_mb=300))
        snapshot = StatsCollector(backend).snapshot()

        assert snapshot.total_mb == 18432
        assert snapshot.free_mb == 1178
        assert snapshot.compressed_mb == 300
        assert snapshot.wired_mb == 1024
        assert snapshot.pressure is PressureLevel.WARNING

    def test_snapshot_is_fresh_each_call(self, backend):
        """Test every snapshot reads the counters again."""
        backend.script_reads(counters(free_mb=8000), counters(free_mb=500))
        collector = StatsCollector(backend)

        first = collector.snapshot()
        second = collector.snapshot()

        assert first.free_mb == 8000
        assert second.free_mb == 500
        assert second.pressure is PressureLevel.CRITICAL

    def test_read_failure_raises_stats_unavailable(self, backend):
        """Test a failed read raises StatsUnavailable."""
        backend.script_reads(OSError("host_statistics64 failed"))

        with pytest.raises(StatsUnavailable) as exc_info:
            StatsCollector(backend).snapshot()

        assert "host_statistics64" in exc_info.value.message
        assert isinstance(exc_info.value.cause, OSError)

    def test_snapshot_from_counters_has_timestamp(self):
        """Test snapshots carry a timezone-aware timestamp."""
        snapshot = snapshot_from_counters(counters(free_mb=9000))
        assert snapshot.taken_at.tzinfo is not None


def test_real_backend_snapshot():
    """The psutil backend reads this host."""
    from rambo.system import PsutilBackend

    snapshot = StatsCollector(PsutilBackend()).snapshot()
    assert snapshot.total_mb > 0
    assert 0 <= snapshot.free_mb <= snapshot.total_mb
    assert isinstance(snapshot.pressure, PressureLevel)
