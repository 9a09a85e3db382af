"""Consumer-facing facade wiring the collector, inventory, selector,
orchestrator, pressure monitor and event log together.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime

from rambo.eventlog import EventLog, open_event_log
from rambo.inventory import ProcessInventory
from rambo.models import (
    Candidate,
    EventRecord,
    MemorySnapshot,
    PolicyConfig,
    ProcessRecord,
    TriggerOrigin,
)
from rambo.orchestrator import BoostResult, ConfirmCallback, ReclaimOrchestrator
from rambo.pressure import PressureMonitor
from rambo.selector import assess, select
from rambo.stats import StatsCollector
from rambo.system import PsutilBackend, SystemBackend

logger = logging.getLogger(__name__)


class Engine:
    """
    Everything the CLI, daemon and dashboard call.

    Owns one orchestrator, so every boost from every caller goes through the
    same lock.
    """

    def __init__(
        self,
        policy: PolicyConfig,
        backend: SystemBackend | None = None,
        event_log: EventLog | None = None,
        on_auto_boost: Callable[[BoostResult], None] | None = None,
    ) -> None:
        self.policy = policy
        self.backend = backend or PsutilBackend()
        self.event_log = event_log or open_event_log(policy)
        self.stats = StatsCollector(self.backend)
        self.inventory = ProcessInventory(self.backend)
        self.orchestrator = ReclaimOrchestrator(
            self.stats, self.inventory, self.backend, self.event_log, policy
        )
        self.monitor = PressureMonitor(
            self.orchestrator, self.stats, policy, on_boost=on_auto_boost
        )

    def snapshot(self) -> MemorySnapshot:
        return self.stats.snapshot()

    def list(self) -> list[ProcessRecord]:
        return self.inventory.list()

    def top_n(self, n: int) -> list[ProcessRecord]:
        return self.inventory.top_n(n)

    def select(self, records: list[ProcessRecord] | None = None) -> list[ProcessRecord]:
        return select(records if records is not None else self.inventory.list(), self.policy)

    def candidates(self) -> list[Candidate]:
        """Fresh candidates with safety tiers."""
        return assess(self.inventory.list(), self.policy)

    def boost(
        self,
        allow_terminate: bool = False,
        origin: TriggerOrigin = TriggerOrigin.MANUAL,
        confirm: ConfirmCallback | None = None,
        escalate: ConfirmCallback | None = None,
    ) -> BoostResult:
        """
        Run a boost now.

        Manual boosts ignore the throttle. Automatic ones requested from outside
        the monitor respect it.

        Raises:
            ThrottleActive: origin is AUTO and the throttle is cooling down.
                An AUTO boost that gets through starts a new cooldown, unless it
                fails before doing anything.
            BoostInProgress: another boost is running.
            StatsUnavailable: memory could not be read; nothing was done.
        """
        if origin is TriggerOrigin.AUTO:
            self.monitor.throttler.claim()
        try:
            return self.orchestrator.boost(
                self.policy,
                allow_terminate=allow_terminate,
                origin=origin,
                confirm=confirm,
                escalate=escalate,
            )
        except Exception:
            if origin is TriggerOrigin.AUTO:
                self.monitor.throttler.reset()
            raise

    def start_monitor(self) -> None:
        self.monitor.start()

    def stop_monitor(self) -> None:
        self.monitor.stop()

    def query_log(self, start: date | datetime, end: date | datetime) -> list[EventRecord]:
        return self.event_log.query(start, end)

    def cleanup_log(self, retain_days: int | None = None) -> int:
        days = self.policy.log_retention_days if retain_days is None else retain_days
        return self.event_log.cleanup(days)

    def close(self) -> None:
        self.stop_monitor()
        self.event_log.close()
