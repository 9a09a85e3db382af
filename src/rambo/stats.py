"""Memory statistics collection and pressure classification."""

import logging

from rambo.errors import StatsUnavailable
from rambo.models import MemorySnapshot, PressureLevel
from rambo.system import BYTES_PER_MB, HostCounters, SystemBackend

logger = logging.getLogger(__name__)

CRITICAL_FREE_RATIO = 0.05
CRITICAL_COMPRESSED_RATIO = 0.30
WARNING_FREE_RATIO = 0.15
WARNING_COMPRESSED_RATIO = 0.20


def classify_pressure(total_mb: int, free_mb: int, compressed_mb: int) -> PressureLevel:
    """
    Classify memory pressure.

    - critical: free < 5% of total, or compressed > 30%
    - warning: free < 15% of total, or compressed > 20%
    - normal: otherwise (including an unknown, zero total)
    """
    if total_mb <= 0:
        return PressureLevel.NORMAL
    free_ratio = free_mb / total_mb
    compressed_ratio = compressed_mb / total_mb

    if free_ratio < CRITICAL_FREE_RATIO or compressed_ratio > CRITICAL_COMPRESSED_RATIO:
        return PressureLevel.CRITICAL
    if free_ratio < WARNING_FREE_RATIO or compressed_ratio > WARNING_COMPRESSED_RATIO:
        return PressureLevel.WARNING
    return PressureLevel.NORMAL


def snapshot_from_counters(counters: HostCounters) -> MemorySnapshot:
    """Convert raw byte counters into a classified snapshot."""
    total_mb = counters.total // BYTES_PER_MB
    free_mb = counters.free // BYTES_PER_MB
    compressed_mb = counters.compressed // BYTES_PER_MB
    return MemorySnapshot(
        total_mb=total_mb,
        free_mb=free_mb,
        active_mb=counters.active // BYTES_PER_MB,
        inactive_mb=counters.inactive // BYTES_PER_MB,
        wired_mb=counters.wired // BYTES_PER_MB,
        compressed_mb=compressed_mb,
        pressure=classify_pressure(total_mb, free_mb, compressed_mb),
    )


class StatsCollector:
    """Reads a fresh MemorySnapshot on every call; never caches."""

    def __init__(self, backend: SystemBackend) -> None:
        self._backend = backend

    def snapshot(self) -> MemorySnapshot:
        """
        Read host memory and classify it.

        Raises:
            StatsUnavailable: the counters could not be read.
        """
        try:
            counters = self._backend.read_host_memory_counters()
        except (OSError, RuntimeError) as e:
            logger.error("Failed to read memory counters: %s", e)
            raise StatsUnavailable(f"Failed to read memory counters: {e}", cause=e) from e
        return snapshot_from_counters(counters)
