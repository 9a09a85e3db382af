"""Test helpers: a scriptable SystemBackend, a manual clock, record builders."""

from collections import deque
from datetime import datetime

from rambo.errors import ProcessGone
from rambo.models import (
    ActionKind,
    EventRecord,
    MemorySnapshot,
    ProcessRecord,
    SignalKind,
    TriggerOrigin,
    utc_now,
)
from rambo.stats import classify_pressure
from rambo.system import BYTES_PER_MB, HostCounters, PurgeResult

TOTAL_MB = 18432


def counters(free_mb: int, total_mb: int = TOTAL_MB, compressed_mb: int = 0) -> HostCounters:
    """HostCounters from MB values."""
    return HostCounters(
        total=total_mb * BYTES_PER_MB,
        free=free_mb * BYTES_PER_MB,
        active=(total_mb - free_mb) // 2 * BYTES_PER_MB,
        inactive=(total_mb - free_mb) // 4 * BYTES_PER_MB,
        wired=1024 * BYTES_PER_MB,
        compressed=compressed_mb * BYTES_PER_MB,
    )


def proc(
    pid: int,
    name: str,
    rss_mb: int,
    cpu_percent: float = 0.0,
    is_foreground: bool = False,
    cpu_sampled: bool = True,
) -> ProcessRecord:
    return ProcessRecord(
        pid=pid,
        name=name,
        rss_mb=rss_mb,
        cpu_time=12.5,
        cpu_percent=cpu_percent,
        is_foreground=is_foreground,
        cpu_sampled=cpu_sampled,
    )


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """
    In-memory SystemBackend.

    Counter reads are served from a queue (the last value repeats); an
    Exception in the queue is raised instead of returned.
    """

    def __init__(self) -> None:
        self.reads: deque = deque([counters(free_mb=8000)])
        self.processes: list[ProcessRecord] = []
        self.purge_result = PurgeResult(success=True, elapsed_seconds=0.8)
        self.purge_calls = 0
        self.signals: list[tuple[int, SignalKind]] = []
        self.alive: set[int] = set()
        self.ignores_sigterm: set[int] = set()
        self.refuses_signals: set[int] = set()
        self.events: list[str] = []

    def script_reads(self, *items) -> None:
        self.reads = deque(items)

    def read_host_memory_counters(self) -> HostCounters:
        self.events.append("read")
        item = self.reads.popleft() if len(self.reads) > 1 else self.reads[0]
        if isinstance(item, Exception):
            raise item
        return item

    def enumerate_processes(self) -> list[ProcessRecord]:
        self.events.append("enumerate")
        return list(self.processes)

    def run_cache_purge(self) -> PurgeResult:
        self.events.append("purge")
        self.purge_calls += 1
        return self.purge_result

    def send_signal(self, pid: int, kind: SignalKind) -> bool:
        self.events.append(f"signal:{pid}:{kind.value}")
        if pid not in self.alive:
            raise ProcessGone(f"Process {pid} no longer exists")
        if pid in self.refuses_signals:
            return False
        self.signals.append((pid, kind))
        if kind is SignalKind.FORCEFUL or pid not in self.ignores_sigterm:
            self.alive.discard(pid)
        return True

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def add_process(self, record: ProcessRecord) -> None:
        self.processes.append(record)
        self.alive.add(record.pid)


def snapshot(free_mb: int, total_mb: int = TOTAL_MB, taken_at: datetime | None = None) -> MemorySnapshot:
    return MemorySnapshot(
        total_mb=total_mb,
        free_mb=free_mb,
        active_mb=4096,
        inactive_mb=2048,
        wired_mb=1024,
        compressed_mb=0,
        pressure=classify_pressure(total_mb, free_mb, 0),
        taken_at=taken_at or utc_now(),
    )


def event(
    ts: datetime,
    before_mb: int = 1178,
    after_mb: int | None = 1690,
    origin: TriggerOrigin = TriggerOrigin.MANUAL,
) -> EventRecord:
    """A purge EventRecord stamped at ts."""
    before = snapshot(before_mb, taken_at=ts)
    after = snapshot(after_mb, taken_at=ts) if after_mb is not None else None
    return EventRecord(
        ts=ts,
        action=ActionKind.PURGE,
        before=before,
        after=after,
        delta_mb=(after_mb - before_mb) if after_mb is not None else 0,
        pressure=before.pressure,
        origin=origin,
        details={"purge": {"success": True, "elapsed_seconds": 0.8}, "actions": [{"kind": "purge"}]},
    )
