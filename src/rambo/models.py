"""Data models for rambo."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class PressureLevel(Enum):
    """Discrete classification of system memory scarcity."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRESSURE_RANK[self]

    @property
    def is_elevated(self) -> bool:
        return self is not PressureLevel.NORMAL

    def __lt__(self, other: "PressureLevel") -> bool:
        if not isinstance(other, PressureLevel):
            return NotImplemented
        return self.rank < other.rank


_PRESSURE_RANK = {
    PressureLevel.NORMAL: 0,
    PressureLevel.WARNING: 1,
    PressureLevel.CRITICAL: 2,
}


class SafetyTier(Enum):
    """Safety classification gating whether a candidate may be terminated."""

    SAFE = "safe"
    RISKY = "risky"
    DANGEROUS = "dangerous"
    FORBIDDEN = "forbidden"


class SignalKind(Enum):
    """Termination signal strength."""

    GRACEFUL = "graceful"  # SIGTERM
    FORCEFUL = "forceful"  # SIGKILL


class ActionKind(Enum):
    """Most severe step a boost actually performed."""

    PURGE = "purge"
    TERMINATE = "terminate"


class TriggerOrigin(Enum):
    """Who asked for a boost."""

    MANUAL = "manual"
    AUTO = "auto"


class TerminationOutcome(Enum):
    """Per-candidate result of the termination step."""

    TERMINATED = "terminated"
    KILLED = "killed"
    SURVIVED = "survived"
    REFUSED = "refused"
    UNCONFIRMED = "unconfirmed"
    GONE = "gone"
    FAILED = "failed"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(slots=True, frozen=True)
class MemorySnapshot:
    """Immutable snapshot of host memory, in MB."""

    total_mb: int
    free_mb: int
    active_mb: int
    inactive_mb: int
    wired_mb: int
    compressed_mb: int
    pressure: PressureLevel
    taken_at: datetime = field(default_factory=utc_now)

    @property
    def free_ratio(self) -> float:
        if self.total_mb <= 0:
            return 1.0
        return self.free_mb / self.total_mb

    @property
    def compressed_ratio(self) -> float:
        if self.total_mb <= 0:
            return 0.0
        return self.compressed_mb / self.total_mb

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_mb": self.total_mb,
            "free_mb": self.free_mb,
            "active_mb": self.active_mb,
            "inactive_mb": self.inactive_mb,
            "wired_mb": self.wired_mb,
            "compressed_mb": self.compressed_mb,
            "pressure": self.pressure.value,
            "taken_at": self.taken_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemorySnapshot":
        return cls(
            total_mb=int(data["total_mb"]),
            free_mb=int(data["free_mb"]),
            active_mb=int(data["active_mb"]),
            inactive_mb=int(data["inactive_mb"]),
            wired_mb=int(data["wired_mb"]),
            compressed_mb=int(data["compressed_mb"]),
            pressure=PressureLevel(data["pressure"]),
            taken_at=datetime.fromisoformat(data["taken_at"]),
        )


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Immutable snapshot of a process, valid only for the instant it was sampled."""

    pid: int
    name: str
    rss_mb: int
    cpu_time: float  # user + system seconds
    cpu_percent: float  # over the sampling interval
    is_foreground: bool = False
    cpu_sampled: bool = True  # False when cpu_percent was never actually measured


@dataclass(slots=True, frozen=True)
class Candidate:
    """A process considered for termination, with its safety tier."""

    record: ProcessRecord
    tier: SafetyTier
    reason: str

    @property
    def pid(self) -> int:
        return self.record.pid

    @property
    def name(self) -> str:
        return self.record.name


@dataclass(slots=True, frozen=True)
class PolicyConfig:
    """Resolved policy for one invocation."""

    rss_threshold_mb: int = 50
    enable_terminate: bool = False
    require_confirmation: bool = True
    throttle_interval_seconds: float = 300.0
    allow_list: frozenset[str] = frozenset({"kernel_task", "launchd", "WindowServer"})
    deny_list: frozenset[str] = frozenset()
    poll_interval_seconds: float = 5.0
    active_cpu_percent: float = 5.0
    safe_rss_multiplier: float = 4.0
    log_backend: str = "jsonl"
    log_retention_days: int = 30
    log_dir: str = ""


@dataclass(slots=True, frozen=True)
class Purge:
    """Cache reclaim only."""

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "purge"}


@dataclass(slots=True, frozen=True)
class Terminate:
    """Signal one process."""

    pid: int
    signal_kind: SignalKind

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "terminate", "pid": self.pid, "signal": self.signal_kind.value}


ReclaimAction = Purge | Terminate


def action_from_dict(data: dict[str, Any]) -> ReclaimAction:
    if data["kind"] == "purge":
        return Purge()
    return Terminate(pid=int(data["pid"]), signal_kind=SignalKind(data["signal"]))


@dataclass(slots=True, frozen=True)
class EventRecord:
    """One orchestrated action and its measured effect."""

    ts: datetime
    action: ActionKind
    before: MemorySnapshot
    after: MemorySnapshot | None
    delta_mb: int
    pressure: PressureLevel
    origin: TriggerOrigin
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": self.ts.isoformat(),
            "action": self.action.value,
            "before": self.before.to_dict(),
            "after": self.after.to_dict() if self.after is not None else None,
            "delta_mb": self.delta_mb,
            "pressure": self.pressure.value,
            "origin": self.origin.value,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventRecord":
        after = data.get("after")
        return cls(
            ts=datetime.fromisoformat(data["ts"]),
            action=ActionKind(data["action"]),
            before=MemorySnapshot.from_dict(data["before"]),
            after=MemorySnapshot.from_dict(after) if after is not None else None,
            delta_mb=int(data["delta_mb"]),
            pressure=PressureLevel(data["pressure"]),
            origin=TriggerOrigin(data["origin"]),
            details=data.get("details") or {},
        )
