"""Operating-system primitives behind a narrow interface.

The engine never talks to the kernel directly; it goes through a
``SystemBackend``. ``PsutilBackend`` is the real implementation, tests use a fake.
"""

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import Protocol

import psutil

from rambo.errors import ProcessGone
from rambo.models import ProcessRecord, SignalKind

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024

PURGE_TIMEOUT_SECONDS = 30.0
FRONTMOST_TIMEOUT_SECONDS = 1.0
CPU_SAMPLE_SECONDS = 0.5

MACOS_PURGE = "/usr/sbin/purge"
LINUX_DROP_CACHES = "/proc/sys/vm/drop_caches"

_SIGNALS = {
    SignalKind.GRACEFUL: signal.SIGTERM,
    SignalKind.FORCEFUL: signal.SIGKILL,
}


@dataclass(slots=True, frozen=True)
class HostCounters:
    """Raw host memory counters in bytes."""

    total: int
    free: int
    active: int = 0
    inactive: int = 0
    wired: int = 0
    compressed: int = 0


@dataclass(slots=True, frozen=True)
class PurgeResult:
    """Outcome of one cache purge attempt."""

    success: bool
    elapsed_seconds: float
    error: str | None = None


class SystemBackend(Protocol):
    """What the engine needs from the operating system."""

    def read_host_memory_counters(self) -> HostCounters: ...

    def enumerate_processes(self) -> list[ProcessRecord]: ...

    def run_cache_purge(self) -> PurgeResult: ...

    def send_signal(self, pid: int, kind: SignalKind) -> bool: ...

    def is_alive(self, pid: int) -> bool: ...


class PsutilBackend:
    """
    SystemBackend implemented with psutil.

    Handles NoSuchProcess, AccessDenied and ZombieProcess per record so one
    vanishing process never breaks an enumeration.
    """

    def __init__(
        self,
        purge_timeout: float = PURGE_TIMEOUT_SECONDS,
        cpu_sample_interval: float = CPU_SAMPLE_SECONDS,
    ) -> None:
        self._purge_timeout = purge_timeout
        self._cpu_sample_interval = cpu_sample_interval
        self._sampled: set[tuple[int, float]] = set()
        self._scan_lock = threading.Lock()

    def read_host_memory_counters(self) -> HostCounters:
        """Read host memory counters. Raises OSError or RuntimeError on failure."""
        mem = psutil.virtual_memory()
        return HostCounters(
            total=mem.total,
            free=mem.free,
            active=getattr(mem, "active", 0),
            inactive=getattr(mem, "inactive", 0),
            wired=getattr(mem, "wired", 0),
            # psutil does not expose the macOS compressor; zero elsewhere too
            compressed=getattr(mem, "compressed", 0),
        )

    def enumerate_processes(self) -> list[ProcessRecord]:
        """
        Enumerate running processes.

        Uses psutil.process_iter() with oneshot(). psutil caches Process objects
        between calls, so cpu_percent covers the interval since the previous
        scan. Processes this backend has not scanned before are primed first and
        measured after a short sleep; a process that still has no measurement is
        reported with cpu_sampled=False.
        """
        with self._scan_lock:
            primed = self._prime_cpu()
            records: list[ProcessRecord] = []
            seen: set[tuple[int, float]] = set()
            foreground = frontmost_pid()
            attrs = ["pid", "name", "create_time", "memory_info", "cpu_times", "cpu_percent"]

            for proc in psutil.process_iter(attrs=attrs):
                try:
                    with proc.oneshot():
                        info = proc.info

                        mem_info = info.get("memory_info")
                        rss = mem_info.rss if mem_info else 0

                        cpu_times = info.get("cpu_times")
                        cpu_time = (cpu_times.user + cpu_times.system) if cpu_times else 0.0

                        pid = info.get("pid", 0)
                        key = (pid, info.get("create_time") or 0.0)
                        cpu_percent = info.get("cpu_percent")
                        seen.add(key)
                        records.append(
                            ProcessRecord(
                                pid=pid,
                                name=info.get("name") or "",
                                rss_mb=rss // BYTES_PER_MB,
                                cpu_time=float(cpu_time),
                                cpu_percent=float(cpu_percent or 0.0),
                                is_foreground=foreground is not None and pid == foreground,
                                cpu_sampled=cpu_percent is not None
                                and (key in self._sampled or key in primed),
                            )
                        )
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    continue

            self._sampled = seen
            return records

    def _prime_cpu(self) -> set[tuple[int, float]]:
        """Start a cpu_percent measurement for every process not scanned before."""
        primed: set[tuple[int, float]] = set()
        for proc in psutil.process_iter(attrs=["create_time"]):
            key = (proc.pid, proc.info.get("create_time") or 0.0)
            if key in self._sampled:
                continue
            try:
                proc.cpu_percent(interval=None)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            primed.add(key)
        if primed and self._cpu_sample_interval > 0:
            time.sleep(self._cpu_sample_interval)
        return primed

    def run_cache_purge(self) -> PurgeResult:
        """Ask the OS to drop reclaimable caches."""
        start = time.monotonic()
        try:
            if sys.platform == "darwin":
                self._purge_macos()
            elif sys.platform.startswith("linux"):
                self._purge_linux()
            else:
                raise FileNotFoundError(f"no cache purge facility on {sys.platform}")
        except FileNotFoundError as e:
            return PurgeResult(False, time.monotonic() - start, f"purge tool not found: {e}")
        except subprocess.TimeoutExpired:
            return PurgeResult(
                False, time.monotonic() - start, f"purge timed out after {self._purge_timeout}s"
            )
        except (subprocess.CalledProcessError, OSError) as e:
            return PurgeResult(False, time.monotonic() - start, str(e))
        return PurgeResult(True, time.monotonic() - start)

    def _purge_macos(self) -> None:
        result = subprocess.run(
            [MACOS_PURGE], capture_output=True, timeout=self._purge_timeout, check=False
        )
        if result.returncode == 0:
            return
        # -n: never prompt, fail instead when a password is required
        logger.debug("purge exited %d, retrying through sudo -n", result.returncode)
        subprocess.run(
            ["sudo", "-n", MACOS_PURGE],
            capture_output=True,
            timeout=self._purge_timeout,
            check=True,
        )

    def _purge_linux(self) -> None:
        subprocess.run(["sync"], capture_output=True, timeout=self._purge_timeout, check=True)
        try:
            with open(LINUX_DROP_CACHES, "w") as f:
                f.write("3\n")
            return
        except PermissionError:
            logger.debug("cannot write %s directly, retrying through sudo -n", LINUX_DROP_CACHES)
        subprocess.run(
            ["sudo", "-n", "tee", LINUX_DROP_CACHES],
            input=b"3\n",
            capture_output=True,
            timeout=self._purge_timeout,
            check=True,
        )

    def send_signal(self, pid: int, kind: SignalKind) -> bool:
        """Send a termination signal. Raises ProcessGone if pid has exited."""
        try:
            psutil.Process(pid).send_signal(_SIGNALS[kind])
        except psutil.NoSuchProcess as e:
            raise ProcessGone(f"Process {pid} no longer exists", cause=e) from e
        except (psutil.AccessDenied, OSError) as e:
            logger.warning("Failed to send %s to pid %d: %s", kind.value, pid, e)
            return False
        return True

    def is_alive(self, pid: int) -> bool:
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True


def frontmost_pid() -> int | None:
    """Pid of the frontmost application, where the platform can tell."""
    if sys.platform != "darwin":
        return None
    try:
        asn = subprocess.run(
            ["lsappinfo", "front"],
            capture_output=True,
            text=True,
            timeout=FRONTMOST_TIMEOUT_SECONDS,
            check=True,
        ).stdout.strip()
        out = subprocess.run(
            ["lsappinfo", "info", "-only", "pid", asn],
            capture_output=True,
            text=True,
            timeout=FRONTMOST_TIMEOUT_SECONDS,
            check=True,
        ).stdout
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Cannot determine frontmost application: %s", e)
        return None
    # Output looks like: "pid"=1234
    _, _, value = out.strip().partition("=")
    try:
        return int(value)
    except ValueError:
        return None


def own_pids() -> frozenset[int]:
    """This process and its parent; never termination targets."""
    return frozenset({os.getpid(), os.getppid()})
