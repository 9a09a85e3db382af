"""Process inventory."""

from __future__ import annotations

from collections.abc import Sequence

from rambo.models import ProcessRecord
from rambo.system import SystemBackend


def sort_by_memory(records: Sequence[ProcessRecord]) -> list[ProcessRecord]:
    """Descending RSS, ties broken by ascending pid."""
    return sorted(records, key=lambda r: (-r.rss_mb, r.pid))


class ProcessInventory:
    """
    Snapshot list of running processes.

    Every call enumerates afresh; records carry no identity across calls since
    pids are reused after a process exits.
    """

    def __init__(self, backend: SystemBackend) -> None:
        self._backend = backend

    def list(self) -> list[ProcessRecord]:
        """All processes, largest resident memory first."""
        return sort_by_memory(self._backend.enumerate_processes())

    def top_n(self, n: int, records: Sequence[ProcessRecord] | None = None) -> list[ProcessRecord]:
        """
        The n largest processes.

        Args:
            n: How many to return.
            records: An already sorted listing to view; enumerates afresh if omitted.
        """
        if records is None:
            records = self.list()
        return list(records[: max(0, n)])
