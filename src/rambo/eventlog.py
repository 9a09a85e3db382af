"""Durable, append-only event log.

Two stores share one interface: ``JsonlEventStore`` keeps one
``YYYY-MM-DD.jsonl`` file per UTC day, ``SqliteEventStore`` keeps an ``events``
table. ``EventLog`` wraps a store with an I/O timeout and error translation.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path
from typing import Protocol

from rambo.errors import LogReadFailed, LogWriteFailed
from rambo.models import EventRecord, PolicyConfig, utc_now

logger = logging.getLogger(__name__)

DEFAULT_IO_TIMEOUT = 5.0
DAY_FORMAT = "%Y-%m-%d"


def default_data_dir() -> Path:
    """$XDG_DATA_HOME/rambo, falling back to ~/.local/share/rambo."""
    base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / "rambo"


def _as_utc_bound(value: date | datetime, end: bool) -> datetime:
    """Turn a date or datetime into an aware UTC bound; dates cover the whole day."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if end:
        return datetime.combine(value, time.max, tzinfo=UTC)
    return datetime.combine(value, time.min, tzinfo=UTC)


def _encode(record: EventRecord) -> str:
    return json.dumps(record.to_dict(), sort_keys=True, separators=(",", ":"))


def _sql_ts(value: datetime) -> str:
    """Fixed-width UTC text so SQLite compares timestamps lexically."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


class EventStore(Protocol):
    """Durable structured storage, one logical event per record."""

    def persist(self, record: EventRecord) -> None: ...

    def read(self, start: datetime, end: datetime) -> list[EventRecord]: ...

    def cleanup(self, cutoff: datetime) -> int: ...

    def clear(self) -> int: ...

    def size_bytes(self) -> int: ...

    def list_days(self) -> list[tuple[str, int]]: ...

    @property
    def location(self) -> Path: ...


class JsonlEventStore:
    """One JSON object per line, one file per UTC day."""

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()

    @property
    def location(self) -> Path:
        return self.directory

    def _path_for(self, day: date) -> Path:
        return self.directory / f"{day.strftime(DAY_FORMAT)}.jsonl"

    def _day_files(self) -> list[tuple[date, Path]]:
        if not self.directory.exists():
            return []
        files = []
        for path in self.directory.glob("*.jsonl"):
            try:
                day = datetime.strptime(path.stem, DAY_FORMAT).date()
            except ValueError:
                continue
            files.append((day, path))
        return sorted(files)

    def persist(self, record: EventRecord) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path_for(record.ts.astimezone(UTC).date())
        line = _encode(record) + "\n"
        with self._lock:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())

    @staticmethod
    def _count_lines(path: Path) -> int:
        with open(path, encoding="utf-8") as f:
            return sum(1 for line in f if line.strip())

    @staticmethod
    def _read_file(path: Path) -> list[EventRecord]:
        records = []
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(EventRecord.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    raise LogReadFailed(
                        f"Could not parse {path.name} line {lineno}: {e}", cause=e
                    ) from e
        return records

    def read(self, start: datetime, end: datetime) -> list[EventRecord]:
        start_day = start.astimezone(UTC).date()
        end_day = end.astimezone(UTC).date()
        records: list[EventRecord] = []
        for day, path in self._day_files():
            if day < start_day or day > end_day:
                continue
            records.extend(r for r in self._read_file(path) if start <= r.ts <= end)
        records.sort(key=lambda r: r.ts)
        return records

    def cleanup(self, cutoff: datetime) -> int:
        cutoff_day = cutoff.astimezone(UTC).date()
        removed = 0
        with self._lock:
            for day, path in self._day_files():
                if day < cutoff_day:
                    removed += self._count_lines(path)
                    path.unlink()
                elif day == cutoff_day:
                    removed += self._rewrite_keeping(path, cutoff)
        return removed

    def _rewrite_keeping(self, path: Path, cutoff: datetime) -> int:
        records = self._read_file(path)
        kept = [r for r in records if r.ts >= cutoff]
        if len(kept) == len(records):
            return 0
        tmp = path.with_suffix(".jsonl.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            for record in kept:
                f.write(_encode(record) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        return len(records) - len(kept)

    def clear(self) -> int:
        removed = 0
        with self._lock:
            for _, path in self._day_files():
                removed += self._count_lines(path)
                path.unlink()
        return removed

    def size_bytes(self) -> int:
        return sum(path.stat().st_size for _, path in self._day_files())

    def list_days(self) -> list[tuple[str, int]]:
        return [(day.strftime(DAY_FORMAT), path.stat().st_size) for day, path in self._day_files()]


class SqliteEventStore:
    """Events in a single SQLite table, one row per record."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._initialized = False

    @property
    def location(self) -> Path:
        return self.path

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=DEFAULT_IO_TIMEOUT)
        conn.execute("PRAGMA synchronous=FULL")
        if not self._initialized:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    action TEXT NOT NULL,
                    pressure TEXT NOT NULL,
                    delta_mb INTEGER NOT NULL,
                    body TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts)")
            conn.commit()
            self._initialized = True
        return conn

    def persist(self, record: EventRecord) -> None:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO events (ts, action, pressure, delta_mb, body) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (
                            _sql_ts(record.ts),
                            record.action.value,
                            record.pressure.value,
                            record.delta_mb,
                            _encode(record),
                        ),
                    )
            finally:
                conn.close()

    def read(self, start: datetime, end: datetime) -> list[EventRecord]:
        if not self.path.exists():
            return []
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT body FROM events WHERE ts >= ? AND ts <= ? ORDER BY ts, id",
                    (_sql_ts(start), _sql_ts(end)),
                ).fetchall()
            finally:
                conn.close()
        return [EventRecord.from_dict(json.loads(body)) for (body,) in rows]

    def cleanup(self, cutoff: datetime) -> int:
        if not self.path.exists():
            return 0
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM events WHERE ts < ?", (_sql_ts(cutoff),)
                    )
                return cursor.rowcount
            finally:
                conn.close()

    def clear(self) -> int:
        if not self.path.exists():
            return 0
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    cursor = conn.execute("DELETE FROM events")
                return cursor.rowcount
            finally:
                conn.close()

    def size_bytes(self) -> int:
        return self.path.stat().st_size if self.path.exists() else 0

    def list_days(self) -> list[tuple[str, int]]:
        if not self.path.exists():
            return []
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT substr(ts, 1, 10) AS day, sum(length(body)) FROM events "
                    "GROUP BY day ORDER BY day"
                ).fetchall()
            finally:
                conn.close()
        return [(day, int(size)) for day, size in rows]


class EventLog:
    """
    Append-only audit log of boosts.

    append() is durable before it returns and never waits longer than the I/O
    timeout. Failures surface as LogWriteFailed.
    """

    def __init__(self, store: EventStore, io_timeout: float = DEFAULT_IO_TIMEOUT) -> None:
        self.store = store
        self._io_timeout = io_timeout
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="EventLog")

    def append(self, record: EventRecord) -> None:
        """
        Persist one record.

        Raises:
            LogWriteFailed: the store failed or did not finish within the timeout.
        """
        future = self._executor.submit(self.store.persist, record)
        try:
            future.result(timeout=self._io_timeout)
        except FutureTimeout as e:
            raise LogWriteFailed(
                f"Event log write did not finish within {self._io_timeout}s", cause=e
            ) from e
        except (OSError, sqlite3.Error, TypeError, ValueError) as e:
            raise LogWriteFailed(f"Could not write event: {e}", cause=e) from e
        logger.debug("Logged %s event at %s", record.action.value, record.ts.isoformat())

    def query(self, start: date | datetime, end: date | datetime) -> list[EventRecord]:
        """Records with start <= ts <= end, oldest first. Dates cover whole days."""
        lower = _as_utc_bound(start, end=False)
        upper = _as_utc_bound(end, end=True)
        try:
            return self.store.read(lower, upper)
        except (OSError, sqlite3.Error) as e:
            raise LogReadFailed(f"Could not read event log: {e}", cause=e) from e

    def cleanup(self, retain_days: int, now: datetime | None = None) -> int:
        """Remove whole records older than retain_days. Returns how many were removed."""
        cutoff = (now or utc_now()) - timedelta(days=retain_days)
        removed = self.store.cleanup(cutoff)
        if removed:
            logger.info("Removed %d event(s) older than %d day(s)", removed, retain_days)
        return removed

    def clear(self) -> int:
        return self.store.clear()

    @property
    def location(self) -> Path:
        return self.store.location

    def size_bytes(self) -> int:
        """Bytes on disk. Raises LogReadFailed."""
        try:
            return self.store.size_bytes()
        except (OSError, sqlite3.Error) as e:
            raise LogReadFailed(f"Could not read event log: {e}", cause=e) from e

    def list_days(self) -> list[tuple[str, int]]:
        """(YYYY-MM-DD, bytes) per logged UTC day, oldest first. Raises LogReadFailed."""
        try:
            return self.store.list_days()
        except (OSError, sqlite3.Error) as e:
            raise LogReadFailed(f"Could not read event log: {e}", cause=e) from e

    def close(self) -> None:
        self._executor.shutdown(wait=True)


def open_event_log(policy: PolicyConfig, io_timeout: float = DEFAULT_IO_TIMEOUT) -> EventLog:
    """Build the event log the policy asks for."""
    base = Path(policy.log_dir) if policy.log_dir else default_data_dir()
    if policy.log_backend == "sqlite":
        store: EventStore = SqliteEventStore(base / "rambo.db")
    else:
        store = JsonlEventStore(base / "logs")
    return EventLog(store, io_timeout=io_timeout)
