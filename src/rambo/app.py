"""rambo dashboard - Textual application."""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import DataTable, Footer, Static

from rambo.engine import Engine
from rambo.errors import RamboError
from rambo.models import Candidate, MemorySnapshot, PressureLevel
from rambo.selector import classify_tier

logger = logging.getLogger(__name__)

TOP_PROCESSES = 40

PRESSURE_COLORS = {
    PressureLevel.NORMAL: "green",
    PressureLevel.WARNING: "yellow",
    PressureLevel.CRITICAL: "red",
}


class SortKey(Enum):
    """Sort keys for the process table."""

    MEM = "mem"
    CPU = "cpu"
    PID = "pid"
    NAME = "name"


def format_mb(size_mb: int) -> str:
    """Format megabytes as human-readable string."""
    if size_mb >= 1024:
        return f"{size_mb / 1024:5.1f}G"
    return f"{size_mb:5d}M"


@dataclass(slots=True)
class DashboardState:
    """One refresh worth of data for the dashboard."""

    snapshot: MemorySnapshot
    rows: list[Candidate]


class DashboardFeed:
    """
    Samples the engine in a daemon thread and pushes DashboardState to a Queue.

    Failed samples are logged and skipped so the UI never stalls on them.
    """

    def __init__(self, engine: Engine, update_queue: Queue, poll_rate: float = 2.0) -> None:
        self._engine = engine
        self._queue = update_queue
        self._poll_rate = poll_rate
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._poll_loop, daemon=True, name="DashboardFeed")
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def collect(self) -> DashboardState:
        policy = self._engine.policy
        snapshot = self._engine.snapshot()
        rows = []
        for record in self._engine.top_n(TOP_PROCESSES):
            tier, reason = classify_tier(record, policy)
            rows.append(Candidate(record=record, tier=tier, reason=reason))
        return DashboardState(snapshot=snapshot, rows=rows)

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._queue.put(self.collect())
            except RamboError as e:
                logger.warning("Dashboard sample failed: %s", e.message)
            self._stop_event.wait(timeout=self._poll_rate)


class HeaderStats(Static):
    """Header widget showing memory counters and pressure."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._snapshot: MemorySnapshot | None = None
        self._monitor_on = False
        self._last_boost = ""

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Static(self._get_mem_info(), id="mem-info"),
            Static(self._get_status_info(), id="status-info"),
        )

    def update_stats(self, snapshot: MemorySnapshot) -> None:
        self._snapshot = snapshot
        self._refresh_display()

    def set_monitor(self, running: bool) -> None:
        self._monitor_on = running
        self._refresh_display()

    def set_last_boost(self, text: str) -> None:
        self._last_boost = text
        self._refresh_display()

    def _refresh_display(self) -> None:
        if not self.is_mounted:
            return
        self.query_one("#mem-info", Static).update(self._get_mem_info())
        self.query_one("#status-info", Static).update(self._get_status_info())

    @staticmethod
    def _bar(value: int, total: int, color: str) -> str:
        filled = min(20, int(20 * value / total)) if total > 0 else 0
        return f"[{color}]█[/{color}]" * filled + "[dim]░[/dim]" * (20 - filled)

    def _get_mem_info(self) -> str:
        snap = self._snapshot
        if snap is None:
            return "Loading memory info..."
        used = snap.total_mb - snap.free_mb
        return (
            f"Mem\\[{self._bar(used, snap.total_mb, 'cyan')}] "
            f"{format_mb(used).strip()}/{format_mb(snap.total_mb).strip()}\n"
            f"Cmp\\[{self._bar(snap.compressed_mb, snap.total_mb, 'yellow')}] "
            f"{format_mb(snap.compressed_mb).strip()}\n"
            f"Free: {snap.free_mb} MB ({snap.free_ratio:.1%})"
        )

    def _get_status_info(self) -> str:
        if self._snapshot is None:
            pressure = "[dim]unknown[/dim]"
        else:
            level = self._snapshot.pressure
            color = PRESSURE_COLORS[level]
            pressure = f"[{color}]{level.value.upper()}[/{color}]"
        monitor = "[green]on[/green]" if self._monitor_on else "[dim]off[/dim]"
        lines = [f"Pressure: {pressure}", f"Auto boost: {monitor}"]
        if self._last_boost:
            lines.append(f"Last boost: {self._last_boost}")
        return "\n".join(lines)


class ProcessTable(Container):
    """Container for the process data table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._sort_key: SortKey = SortKey.MEM
        self._sort_reverse: bool = True

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._sort_reverse = self._sort_key in (SortKey.MEM, SortKey.CPU)
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PID", key="pid", width=8)
        table.add_column("RES", key="rss", width=8)
        table.add_column("CPU%", key="cpu", width=7)
        table.add_column("FG", key="fg", width=3)
        table.add_column("TIER", key="tier", width=10)
        table.add_column("Name", key="name")

    def update_rows(self, rows: list[Candidate]) -> None:
        """Replace the table contents, keeping the cursor on the same process."""
        table = self.query_one("#process-table", DataTable)
        cursor_key = None
        if table.row_count:
            cursor_key = table.coordinate_to_cell_key(table.cursor_coordinate).row_key
        table.clear()
        for row in self._sort_rows(rows):
            record = row.record
            table.add_row(
                str(record.pid),
                format_mb(record.rss_mb),
                f"{record.cpu_percent:5.1f}",
                "*" if record.is_foreground else "",
                row.tier.value,
                record.name[:40],
                key=str(record.pid),
            )
        if cursor_key is not None and cursor_key in table.rows:
            table.move_cursor(row=table.get_row_index(cursor_key))

    def _sort_rows(self, rows: list[Candidate]) -> list[Candidate]:
        key_func = {
            SortKey.MEM: lambda c: (c.record.rss_mb, -c.pid),
            SortKey.CPU: lambda c: c.record.cpu_percent,
            SortKey.PID: lambda c: c.pid,
            SortKey.NAME: lambda c: c.name.lower(),
        }
        return sorted(rows, key=key_func[self._sort_key], reverse=self._sort_reverse)


class RamboApp(App):
    """Memory pressure dashboard."""

    TITLE = "rambo"
    SUB_TITLE = "Memory Pressure Dashboard"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }

    Horizontal {
        height: auto;
    }

    #mem-info {
        width: 1fr;
        padding-right: 2;
    }

    #status-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("b", "boost", "Boost"),
        ("m", "toggle_monitor", "Auto boost"),
        ("f6", "sort", "Sort"),
    ]

    def __init__(self, engine: Engine, poll_rate: float = 2.0) -> None:
        super().__init__()
        self._engine = engine
        self._update_queue: Queue[DashboardState] = Queue()
        self._feed = DashboardFeed(engine, self._update_queue, poll_rate=poll_rate)

    def compose(self) -> ComposeResult:
        yield HeaderStats(id="header-stats")
        yield ProcessTable()
        yield Footer()

    def on_mount(self) -> None:
        self._feed.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the queue and render only the most recent state."""
        state = None
        while True:
            try:
                state = self._update_queue.get_nowait()
            except Empty:
                break
        if state is not None:
            self.query_one("#header-stats", HeaderStats).update_stats(state.snapshot)
            self.query_one(ProcessTable).update_rows(state.rows)

    def action_sort(self) -> None:
        new_sort_key = self.query_one(ProcessTable).cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_boost(self) -> None:
        """Manual purge-only boost, run off the UI thread."""
        if self._engine.orchestrator.busy:
            self.notify("A boost is already running", severity="warning")
            return
        self.notify("Boosting...")
        self.run_worker(self._boost, thread=True, exclusive=True, group="boost")

    def _boost(self) -> None:
        try:
            result = self._engine.boost()
        except RamboError as e:
            self.call_from_thread(self.notify, e.message, severity="error")
            return
        record = result.record
        summary = f"{record.delta_mb:+d} MB ({record.pressure.value})"
        self.call_from_thread(self._on_boost_done, summary, result.logged)

    def _on_boost_done(self, summary: str, logged: bool) -> None:
        self.query_one("#header-stats", HeaderStats).set_last_boost(summary)
        if logged:
            self.notify(f"Boost finished: {summary}")
        else:
            self.notify(f"Boost finished: {summary} (not logged)", severity="warning")

    def action_toggle_monitor(self) -> None:
        header = self.query_one("#header-stats", HeaderStats)
        if self._engine.monitor.is_running:
            self._engine.stop_monitor()
            header.set_monitor(False)
            self.notify("Automatic boosting off")
        else:
            self._engine.start_monitor()
            header.set_monitor(True)
            self.notify("Automatic boosting on")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._feed.stop()
        self._engine.stop_monitor()
        self.exit()
