"""Graduated memory reclamation: purge first, then optional terminations."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from rambo.errors import (
    BoostInProgress,
    LogWriteFailed,
    ProcessGone,
    PurgeUnavailable,
    StatsUnavailable,
    TerminationRefused,
)
from rambo.eventlog import EventLog
from rambo.inventory import ProcessInventory
from rambo.models import (
    ActionKind,
    Candidate,
    EventRecord,
    MemorySnapshot,
    PolicyConfig,
    Purge,
    ReclaimAction,
    SignalKind,
    TerminationOutcome,
    Terminate,
    TriggerOrigin,
    utc_now,
)
from rambo.selector import Gate, assess, termination_gate
from rambo.stats import StatsCollector
from rambo.system import SystemBackend

logger = logging.getLogger(__name__)

GRACE_PERIOD_SECONDS = 2.0
GRACE_POLL_SECONDS = 0.1
DEFAULT_LOCK_TIMEOUT = 60.0

# Asked once per candidate that needs a human decision.
ConfirmCallback = Callable[[Candidate], bool]


@dataclass(slots=True, frozen=True)
class BoostResult:
    """The event a boost produced, plus any failure to persist it."""

    record: EventRecord
    log_error: LogWriteFailed | None = None

    @property
    def logged(self) -> bool:
        return self.log_error is None


@dataclass(slots=True)
class _TerminationReport:
    actions: list[ReclaimAction]
    outcomes: list[dict[str, Any]]


class ReclaimOrchestrator:
    """
    Runs boosts, one at a time.

    A boost is bracketed by two snapshots; the lock guarantees the bracket
    covers exactly one action. Once the purge has started the boost always runs
    to completion and always emits exactly one EventRecord.
    """

    def __init__(
        self,
        stats: StatsCollector,
        inventory: ProcessInventory,
        backend: SystemBackend,
        event_log: EventLog,
        policy: PolicyConfig,
        grace_period: float = GRACE_PERIOD_SECONDS,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stats = stats
        self._inventory = inventory
        self._backend = backend
        self._event_log = event_log
        self._policy = policy
        self._grace_period = grace_period
        self._lock_timeout = lock_timeout
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def policy(self) -> PolicyConfig:
        return self._policy

    @property
    def busy(self) -> bool:
        """True while a boost holds the lock."""
        return self._lock.locked()

    def boost(
        self,
        policy: PolicyConfig | None = None,
        allow_terminate: bool = False,
        origin: TriggerOrigin = TriggerOrigin.MANUAL,
        confirm: ConfirmCallback | None = None,
        escalate: ConfirmCallback | None = None,
    ) -> BoostResult:
        """
        Run one boost.

        Args:
            policy: Overrides the orchestrator's policy for this call.
            allow_terminate: Caller permits terminations; the policy must also
                enable them.
            origin: MANUAL for direct calls, AUTO for pressure-triggered ones.
            confirm: Asked before terminating a candidate whose tier needs
                confirmation. Without it such candidates are skipped.
            escalate: Asked before sending SIGKILL to a candidate that survived
                the grace period. Without it nothing is force-killed.

        Returns:
            BoostResult with the emitted record.

        Raises:
            BoostInProgress: another boost held the lock past the timeout.
            StatsUnavailable: the before snapshot could not be read; nothing ran.
        """
        policy = policy or self._policy
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise BoostInProgress(
                f"Another boost is still running after {self._lock_timeout:.0f}s"
            )
        try:
            return self._run(policy, allow_terminate, origin, confirm, escalate)
        finally:
            self._lock.release()

    def _run(
        self,
        policy: PolicyConfig,
        allow_terminate: bool,
        origin: TriggerOrigin,
        confirm: ConfirmCallback | None,
        escalate: ConfirmCallback | None,
    ) -> BoostResult:
        started = self._clock()
        before = self._stats.snapshot()
        logger.info(
            "Boost (%s) starting: %d MB free of %d MB, pressure %s",
            origin.value,
            before.free_mb,
            before.total_mb,
            before.pressure.value,
        )

        details: dict[str, Any] = {"purge": self._purge()}
        actions: list[ReclaimAction] = [Purge()]

        if allow_terminate and policy.enable_terminate:
            report = _TerminationReport(actions=[], outcomes=[])
            try:
                self._terminate_candidates(report, policy, origin, confirm, escalate)
            except Exception as e:
                # The purge already ran; the record must still be written.
                logger.exception("Termination step failed")
                details["terminations_error"] = f"{type(e).__name__}: {e}"
            actions.extend(report.actions)
            details["terminations"] = report.outcomes
        elif allow_terminate:
            details["terminations_skipped"] = "process termination is disabled by policy"

        after, delta_mb = self._measure_after(before, details)
        details["actions"] = [a.to_dict() for a in actions]
        details["elapsed_seconds"] = round(self._clock() - started, 3)

        record = EventRecord(
            ts=utc_now(),
            action=ActionKind.TERMINATE
            if any(isinstance(a, Terminate) for a in actions)
            else ActionKind.PURGE,
            before=before,
            after=after,
            delta_mb=delta_mb,
            pressure=before.pressure,
            origin=origin,
            details=details,
        )
        logger.info("Boost (%s) finished: %+d MB", origin.value, delta_mb)

        try:
            self._event_log.append(record)
        except LogWriteFailed as e:
            logger.error("Boost result could not be logged: %s", e.message)
            return BoostResult(record=record, log_error=e)
        return BoostResult(record=record)

    def _purge(self) -> dict[str, Any]:
        result = self._backend.run_cache_purge()
        if result.success:
            return {"success": True, "elapsed_seconds": round(result.elapsed_seconds, 3)}
        error = PurgeUnavailable(result.error or "cache purge failed")
        logger.warning("Cache purge failed, continuing without it: %s", error.message)
        return {
            "success": False,
            "elapsed_seconds": round(result.elapsed_seconds, 3),
            **error.to_dict(),
        }

    def _measure_after(
        self, before: MemorySnapshot, details: dict[str, Any]
    ) -> tuple[MemorySnapshot | None, int]:
        try:
            after = self._stats.snapshot()
        except StatsUnavailable as e:
            # Work has already been done; record the gap rather than abort.
            details["after_error"] = e.message
            return None, 0
        return after, after.free_mb - before.free_mb

    def _terminate_candidates(
        self,
        report: _TerminationReport,
        policy: PolicyConfig,
        origin: TriggerOrigin,
        confirm: ConfirmCallback | None,
        escalate: ConfirmCallback | None,
    ) -> None:
        candidates = assess(self._inventory.list(), policy)
        logger.info("%d termination candidate(s)", len(candidates))

        for candidate in candidates:
            entry: dict[str, Any] = {
                "pid": candidate.pid,
                "name": candidate.name,
                "rss_mb": candidate.record.rss_mb,
                "tier": candidate.tier.value,
            }
            try:
                self._authorize(candidate, origin, policy, confirm)
            except TerminationRefused as e:
                entry["outcome"] = e.details["outcome"]
                entry["reason"] = e.message
                report.outcomes.append(entry)
                continue

            entry["outcome"] = self._terminate(candidate, escalate, report.actions).value
            report.outcomes.append(entry)

    @staticmethod
    def _authorize(
        candidate: Candidate,
        origin: TriggerOrigin,
        policy: PolicyConfig,
        confirm: ConfirmCallback | None,
    ) -> None:
        gate = termination_gate(candidate.tier, origin, policy)
        if gate is Gate.ALLOW:
            return
        if gate is Gate.REFUSE:
            raise TerminationRefused(
                f"{candidate.tier.value} tier is not terminable on {origin.value} boost: "
                f"{candidate.reason}",
                details={"outcome": TerminationOutcome.REFUSED.value},
            )
        if not _ask(confirm, candidate):
            raise TerminationRefused(
                "confirmation required and not given",
                details={"outcome": TerminationOutcome.UNCONFIRMED.value},
            )

    def _terminate(
        self,
        candidate: Candidate,
        escalate: ConfirmCallback | None,
        actions: list[ReclaimAction],
    ) -> TerminationOutcome:
        pid = candidate.pid
        try:
            sent = self._backend.send_signal(pid, SignalKind.GRACEFUL)
        except ProcessGone:
            return TerminationOutcome.GONE
        actions.append(Terminate(pid=pid, signal_kind=SignalKind.GRACEFUL))
        if not sent:
            return TerminationOutcome.FAILED

        if self._wait_for_exit(pid):
            logger.info("Terminated %s (pid %d)", candidate.name, pid)
            return TerminationOutcome.TERMINATED

        if not _ask(escalate, candidate):
            logger.info("%s (pid %d) survived SIGTERM, not escalating", candidate.name, pid)
            return TerminationOutcome.SURVIVED

        try:
            sent = self._backend.send_signal(pid, SignalKind.FORCEFUL)
        except ProcessGone:
            return TerminationOutcome.TERMINATED
        actions.append(Terminate(pid=pid, signal_kind=SignalKind.FORCEFUL))
        if not sent:
            return TerminationOutcome.FAILED
        logger.warning("Force-killed %s (pid %d)", candidate.name, pid)
        return TerminationOutcome.KILLED

    def _wait_for_exit(self, pid: int) -> bool:
        """Poll until pid exits or the fixed grace period runs out."""
        deadline = self._clock() + self._grace_period
        while True:
            if not self._backend.is_alive(pid):
                return True
            if self._clock() >= deadline:
                return False
            self._sleep(GRACE_POLL_SECONDS)


def _ask(callback: ConfirmCallback | None, candidate: Candidate) -> bool:
    """Put a yes/no question to the caller; no callback or a failing one means no."""
    if callback is None:
        return False
    try:
        return bool(callback(candidate))
    except Exception:
        logger.exception("Asking about %s (pid %d) failed", candidate.name, candidate.pid)
        return False
