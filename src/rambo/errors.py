"""Exception hierarchy for rambo.

Exception Hierarchy:
    RamboError (base)
    ├── StatsUnavailable - memory counters could not be read (fatal for that call)
    ├── PurgeUnavailable - cache purge tool missing or failed (boost degrades)
    ├── ProcessGone - process exited mid-scan (absorbed, never surfaced)
    ├── TerminationRefused - candidate is Forbidden or unconfirmed
    ├── LogWriteFailed - event could not be persisted
    ├── ThrottleActive - auto boost refused while cooling down
    ├── BoostInProgress - another boost holds the lock
    └── ConfigurationError - invalid configuration value

Usage:
    from rambo.errors import StatsUnavailable

    try:
        snapshot = collector.snapshot()
    except StatsUnavailable as e:
        logger.error("Cannot read memory: %s (code: %s)", e.message, e.code)
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    STATS_UNAVAILABLE = "STATS_UNAVAILABLE"
    PURGE_UNAVAILABLE = "PURGE_UNAVAILABLE"
    PROCESS_GONE = "PROCESS_GONE"
    TERMINATION_REFUSED = "TERMINATION_REFUSED"
    LOG_WRITE_FAILED = "LOG_WRITE_FAILED"
    LOG_READ_FAILED = "LOG_READ_FAILED"
    THROTTLE_ACTIVE = "THROTTLE_ACTIVE"
    BOOST_IN_PROGRESS = "BOOST_IN_PROGRESS"
    CFG_INVALID = "CFG_INVALID"
    UNKNOWN = "UNKNOWN"


class RamboError(Exception):
    """Base exception for all rambo errors.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code.
        details: Additional context about the error.
        cause: Original exception, if any.
    """

    default_message: str = "An error occurred"
    default_code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for event details and CLI output."""
        result: dict[str, Any] = {"error": self.code.value, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, code={self.code.value})"


class StatsUnavailable(RamboError):
    default_message = "Memory statistics are unavailable"
    default_code = ErrorCode.STATS_UNAVAILABLE


class PurgeUnavailable(RamboError):
    default_message = "Cache purge is unavailable"
    default_code = ErrorCode.PURGE_UNAVAILABLE


class ProcessGone(RamboError):
    default_message = "Process no longer exists"
    default_code = ErrorCode.PROCESS_GONE


class TerminationRefused(RamboError):
    default_message = "Termination refused"
    default_code = ErrorCode.TERMINATION_REFUSED


class LogWriteFailed(RamboError):
    default_message = "Failed to write event log"
    default_code = ErrorCode.LOG_WRITE_FAILED


class LogReadFailed(RamboError):
    default_message = "Failed to read event log"
    default_code = ErrorCode.LOG_READ_FAILED


class ThrottleActive(RamboError):
    """Raised when an automatic boost is requested during cooldown."""

    default_message = "Boost throttled"
    default_code = ErrorCode.THROTTLE_ACTIVE

    def __init__(self, remaining_seconds: float, **kwargs: Any) -> None:
        self.remaining_seconds = remaining_seconds
        kwargs.setdefault("details", {"remaining_seconds": round(remaining_seconds, 1)})
        super().__init__(
            f"Boost throttled, {remaining_seconds:.1f}s of cooldown remaining", **kwargs
        )


class BoostInProgress(RamboError):
    default_message = "Another boost is already running"
    default_code = ErrorCode.BOOST_IN_PROGRESS


class ConfigurationError(RamboError):
    default_message = "Invalid configuration"
    default_code = ErrorCode.CFG_INVALID
