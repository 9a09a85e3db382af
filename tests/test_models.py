"""Tests for rambo data models."""

from dataclasses import FrozenInstanceError
from datetime import UTC, datetime

import pytest

from rambo.models import (
    ActionKind,
    EventRecord,
    MemorySnapshot,
    PolicyConfig,
    PressureLevel,
    ProcessRecord,
    Purge,
    SignalKind,
    Terminate,
    TriggerOrigin,
    action_from_dict,
)


def make_snapshot(free_mb: int = 1178, total_mb: int = 18432) -> MemorySnapshot:
    return MemorySnapshot(
        total_mb=total_mb,
        free_mb=free_mb,
        active_mb=6000,
        inactive_mb=4000,
        wired_mb=2500,
        compressed_mb=900,
        pressure=PressureLevel.WARNING,
        taken_at=datetime(2026, 10, 17, 9, 30, tzinfo=UTC),
    )


def test_process_record_creation():
    """Test ProcessRecord dataclass creation."""
    record = ProcessRecord(
        pid=123,
        name="test_process",
        rss_mb=640,
        cpu_time=42.0,
        cpu_percent=3.5,
        is_foreground=True,
    )

    assert record.pid == 123
    assert record.name == "test_process"
    assert record.rss_mb == 640
    assert record.cpu_time == 42.0
    assert record.cpu_percent == 3.5
    assert record.is_foreground is True
    assert record.cpu_sampled is True


def test_process_record_is_frozen():
    """Test that ProcessRecord is immutable (frozen)."""
    record = ProcessRecord(pid=1, name="init", rss_mb=10, cpu_time=0.0, cpu_percent=0.0)

    with pytest.raises(FrozenInstanceError):
        record.pid = 999


def test_process_record_uses_slots():
    """Test that ProcessRecord uses __slots__."""
    record = ProcessRecord(pid=1, name="init", rss_mb=10, cpu_time=0.0, cpu_percent=0.0)

    assert not hasattr(record, "__dict__")


class TestMemorySnapshot:
    """Tests for MemorySnapshot."""

    def test_ratios(self):
        """Test free and compressed ratios against total memory."""
        snapshot = make_snapshot(free_mb=1843, total_mb=18430)
        assert snapshot.free_ratio == pytest.approx(0.1)
        assert snapshot.compressed_ratio == pytest.approx(900 / 18430)

    def test_zero_total_ratios(self):
        """Test ratios stay defined when total memory is zero."""
        snapshot = make_snapshot(free_mb=0, total_mb=0)
        assert snapshot.free_ratio == 1.0
        assert snapshot.compressed_ratio == 0.0

    def test_snapshot_is_frozen(self):
        """Test that MemorySnapshot is immutable (frozen)."""
        snapshot = make_snapshot()
        with pytest.raises(FrozenInstanceError):
            snapshot.free_mb = 0

    def test_from_dict_restores_equal_snapshot(self):
        """Test from_dict(to_dict()) gives back an equal snapshot."""
        snapshot = make_snapshot()
        assert MemorySnapshot.from_dict(snapshot.to_dict()) == snapshot


class TestPressureLevel:
    """Tests for PressureLevel ordering."""

    def test_ordering(self):
        """Test NORMAL < WARNING < CRITICAL."""
        assert PressureLevel.NORMAL < PressureLevel.WARNING < PressureLevel.CRITICAL
        assert max(PressureLevel) is PressureLevel.CRITICAL

    def test_elevated(self):
        """Test only WARNING and CRITICAL count as elevated."""
        assert not PressureLevel.NORMAL.is_elevated
        assert PressureLevel.WARNING.is_elevated
        assert PressureLevel.CRITICAL.is_elevated


class TestReclaimAction:
    """Tests for the Purge/Terminate variant."""

    def test_terminate_serialization(self):
        """Test Terminate serializes with its pid and signal."""
        action = Terminate(pid=4242, signal_kind=SignalKind.FORCEFUL)
        assert action.to_dict() == {"kind": "terminate", "pid": 4242, "signal": "forceful"}
        assert action_from_dict(action.to_dict()) == action

    def test_purge_serialization(self):
        """Test Purge serializes to its kind alone."""
        assert action_from_dict(Purge().to_dict()) == Purge()


class TestEventRecord:
    """Tests for EventRecord serialization."""

    def test_after_may_be_missing(self):
        """Test an EventRecord without an after snapshot."""
        record = EventRecord(
            ts=datetime(2026, 10, 17, 9, 31, tzinfo=UTC),
            action=ActionKind.PURGE,
            before=make_snapshot(),
            after=None,
            delta_mb=0,
            pressure=PressureLevel.WARNING,
            origin=TriggerOrigin.AUTO,
            details={"after_error": "counters unavailable"},
        )
        data = record.to_dict()
        assert data["after"] is None
        assert EventRecord.from_dict(data) == record

    def test_dict_uses_plain_values(self):
        """Test to_dict emits only JSON-friendly values."""
        record = EventRecord(
            ts=datetime(2026, 10, 17, 9, 31, tzinfo=UTC),
            action=ActionKind.TERMINATE,
            before=make_snapshot(),
            after=make_snapshot(free_mb=1690),
            delta_mb=512,
            pressure=PressureLevel.WARNING,
            origin=TriggerOrigin.MANUAL,
        )
        data = record.to_dict()
        assert data["action"] == "terminate"
        assert data["origin"] == "manual"
        assert data["pressure"] == "warning"
        assert data["ts"] == "2026-10-17T09:31:00+00:00"


def test_default_policy():
    """Defaults match the shipped configuration."""
    policy = PolicyConfig()
    assert policy.rss_threshold_mb == 50
    assert policy.enable_terminate is False
    assert policy.require_confirmation is True
    assert policy.throttle_interval_seconds == 300
    assert {"kernel_task", "launchd", "WindowServer"} <= policy.allow_list
    assert policy.log_backend == "jsonl"
    assert policy.log_retention_days == 30
