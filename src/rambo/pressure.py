"""Pressure-triggered boosting with a cooldown throttle."""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from queue import Empty, Queue

from rambo.errors import RamboError, StatsUnavailable, ThrottleActive
from rambo.models import MemorySnapshot, PolicyConfig, PressureLevel, TriggerOrigin
from rambo.orchestrator import BoostResult, ReclaimOrchestrator
from rambo.stats import StatsCollector

logger = logging.getLogger(__name__)

OBSERVED_HISTORY = 256
MIN_POLL_INTERVAL = 0.1


class ThrottleState(Enum):
    IDLE = "idle"
    COOLDOWN = "cooldown"


class Throttler:
    """
    Two-state machine that admits at most one automatic boost per interval.

    IDLE -> COOLDOWN when an elevated pressure event is admitted; back to IDLE
    once the interval has elapsed. NORMAL never triggers anything.
    """

    def __init__(self, interval_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = interval_seconds
        self._clock = clock
        self._cooldown_until: float | None = None
        self._lock = threading.Lock()

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def state(self) -> ThrottleState:
        with self._lock:
            return self._state_locked()

    def _state_locked(self) -> ThrottleState:
        if self._cooldown_until is not None and self._clock() >= self._cooldown_until:
            self._cooldown_until = None
        return ThrottleState.IDLE if self._cooldown_until is None else ThrottleState.COOLDOWN

    def remaining(self) -> float:
        """Seconds of cooldown left, 0.0 when idle."""
        with self._lock:
            if self._state_locked() is ThrottleState.IDLE:
                return 0.0
            return max(0.0, self._cooldown_until - self._clock())

    def check(self) -> None:
        """
        Raises:
            ThrottleActive: while cooling down.
        """
        remaining = self.remaining()
        if remaining > 0.0:
            raise ThrottleActive(remaining)

    def claim(self) -> None:
        """
        Enter cooldown now, whatever the pressure.

        Raises:
            ThrottleActive: already cooling down.
        """
        with self._lock:
            if self._state_locked() is ThrottleState.COOLDOWN:
                raise ThrottleActive(max(0.0, self._cooldown_until - self._clock()))
            self._cooldown_until = self._clock() + self._interval

    def offer(self, level: PressureLevel) -> bool:
        """Admit an event; True means the caller should boost now."""
        if not level.is_elevated:
            return False
        with self._lock:
            if self._state_locked() is ThrottleState.COOLDOWN:
                return False
            self._cooldown_until = self._clock() + self._interval
            return True

    def reset(self) -> None:
        with self._lock:
            self._cooldown_until = None


@dataclass(slots=True, frozen=True)
class PressureEvent:
    """One pressure level observation and what the monitor did about it."""

    level: PressureLevel
    at: float
    triggered: bool


class PressureMonitor:
    """
    Background listener that turns pressure events into automatic boosts.

    Events are messages on a queue consumed by a daemon thread; the thread is
    the only caller of the orchestrator from this side, so manual and automatic
    boosts meet only at the orchestrator's lock. A sampler reads the stats
    collector every poll interval and posts the level; other sources (OS
    notifications, tests) can post() directly.
    """

    def __init__(
        self,
        orchestrator: ReclaimOrchestrator,
        stats: StatsCollector | None,
        policy: PolicyConfig,
        throttler: Throttler | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_boost: Callable[[BoostResult], None] | None = None,
    ) -> None:
        """
        Initialize the PressureMonitor.

        Args:
            orchestrator: Serialized boost entry point.
            stats: Polled every poll interval; None disables the sampler.
            policy: Supplies the throttle and poll intervals.
            throttler: Defaults to one built from the policy.
            clock: Time source for the observation history.
            on_boost: Called with each automatic boost's result.
        """
        self._orchestrator = orchestrator
        self._stats = stats
        self._policy = policy
        self._clock = clock
        self._throttler = throttler or Throttler(policy.throttle_interval_seconds, clock)
        self._on_boost = on_boost
        self._events: Queue[PressureLevel] = Queue()
        self._observed: deque[PressureEvent] = deque(maxlen=OBSERVED_HISTORY)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._sampler: threading.Thread | None = None
        self._last_level: PressureLevel | None = None
        self._boosts = 0

    @property
    def throttler(self) -> Throttler:
        return self._throttler

    @property
    def is_running(self) -> bool:
        """Check if the listener thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def boosts_triggered(self) -> int:
        return self._boosts

    def observed(self) -> list[PressureEvent]:
        """Recent pressure events, oldest first."""
        return list(self._observed)

    def start(self) -> None:
        """Start the listener and, if there is a stats collector, the sampler."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._listen_loop,
            daemon=True,
            name="PressureMonitor",
        )
        self._thread.start()
        if self._stats is not None:
            self._sampler = threading.Thread(
                target=self._sample_loop,
                daemon=True,
                name="PressureSampler",
            )
            self._sampler.start()
        logger.info(
            "Pressure monitor started (throttle %.0fs, poll %.1fs)",
            self._throttler.interval,
            self._policy.poll_interval_seconds,
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitor threads.

        Args:
            timeout: How long to wait for each thread to stop (seconds).
        """
        self._stop_event.set()
        for thread in (self._thread, self._sampler):
            if thread is not None:
                thread.join(timeout=timeout)
        self._thread = None
        self._sampler = None
        logger.info("Pressure monitor stopped")

    def post(self, level: PressureLevel) -> None:
        """Deliver a pressure event to the listener."""
        self._events.put(level)

    def handle(self, level: PressureLevel) -> BoostResult | None:
        """Process one event synchronously. Returns the boost result if one ran."""
        if level != self._last_level:
            if self._last_level is not None:
                logger.info("Memory pressure changed: %s -> %s", self._last_level.value, level.value)
            self._last_level = level

        triggered = self._throttler.offer(level)
        self._observed.append(PressureEvent(level=level, at=self._clock(), triggered=triggered))
        if not triggered:
            if level.is_elevated:
                logger.debug(
                    "Pressure %s observed during cooldown (%.1fs left)",
                    level.value,
                    self._throttler.remaining(),
                )
            return None

        logger.warning("Memory pressure %s, starting automatic boost", level.value)
        self._boosts += 1
        try:
            result = self._orchestrator.boost(
                self._policy,
                allow_terminate=self._policy.enable_terminate,
                origin=TriggerOrigin.AUTO,
            )
        except Exception:
            # Nothing ran, so the next elevated event may try again.
            self._throttler.reset()
            raise
        if self._on_boost is not None:
            self._on_boost(result)
        return result

    def _listen_loop(self) -> None:
        """Main loop running in the listener thread."""
        while not self._stop_event.is_set():
            try:
                level = self._events.get(timeout=MIN_POLL_INTERVAL)
            except Empty:
                continue
            try:
                self.handle(level)
            except RamboError as e:
                logger.error("Automatic boost failed: %s", e.message)
            except Exception:
                logger.exception("Unexpected error while handling pressure %s", level.value)

    def _sample_loop(self) -> None:
        """Post the current pressure level every poll interval."""
        interval = max(MIN_POLL_INTERVAL, self._policy.poll_interval_seconds)
        while not self._stop_event.is_set():
            snapshot: MemorySnapshot | None = None
            try:
                snapshot = self._stats.snapshot()
            except StatsUnavailable as e:
                logger.warning("Skipping pressure sample: %s", e.message)
            if snapshot is not None:
                self.post(snapshot.pressure)
            self._stop_event.wait(timeout=interval)
