"""rambo CLI - memory pressure response from the command line.

Usage:
    rambo status                 Show memory counters and pressure
    rambo top -n 10              Largest processes by resident memory
    rambo candidates             Termination candidates with safety tiers
    rambo boost [--terminate]    Purge caches, optionally terminate candidates
    rambo logs --since DATE      Show logged boosts
    rambo logs --info | --list   Event log size, or the days it holds
    rambo cleanup --days 30      Drop logged boosts older than N days
    rambo daemon                 Watch pressure and boost automatically
    rambo dashboard              Interactive dashboard
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from datetime import UTC, date, datetime, timedelta
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm, Prompt
from rich.table import Table

from rambo.config import load_settings
from rambo.engine import Engine
from rambo.errors import RamboError
from rambo.logs import setup_logging
from rambo.models import Candidate, EventRecord, MemorySnapshot, PressureLevel, SafetyTier
from rambo.orchestrator import BoostResult

logger = logging.getLogger(__name__)

console = Console()

PRESSURE_STYLES = {
    PressureLevel.NORMAL: "green",
    PressureLevel.WARNING: "yellow",
    PressureLevel.CRITICAL: "bold red",
}


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from e


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected a whole number, got {value!r}") from e
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {number}")
    return number


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rambo",
        description="Watch memory pressure, reclaim memory, audit every action.",
    )
    parser.add_argument("--config", help="TOML configuration file")
    parser.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--rss-threshold-mb", dest="rss_threshold_mb", type=int)
    parser.add_argument("--throttle-interval", dest="throttle_interval_seconds", type=float)
    parser.add_argument("--log-backend", dest="log_backend", choices=["jsonl", "sqlite"])

    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show memory counters and pressure")
    status.add_argument("--json", action="store_true", help="Print the snapshot as JSON")

    top = sub.add_parser("top", help="Largest processes by resident memory")
    top.add_argument("-n", type=int, default=10, help="How many processes (default 10)")

    candidates = sub.add_parser("candidates", help="Termination candidates with safety tiers")
    candidates.add_argument("--json", action="store_true", help="Print candidates as JSON")

    boost = sub.add_parser("boost", help="Purge caches, optionally terminate candidates")
    boost.add_argument(
        "--terminate",
        action="store_true",
        help="Also terminate candidates (requires enable_terminate in the policy)",
    )
    boost.add_argument(
        "--yes",
        action="store_true",
        help="Approve Safe and Risky candidates without asking (Dangerous still asks)",
    )
    boost.add_argument(
        "--force",
        action="store_true",
        help="Offer SIGKILL for candidates that survive SIGTERM",
    )

    logs = sub.add_parser("logs", help="Show logged boosts")
    logs.add_argument("--since", type=_parse_day, help="First day, YYYY-MM-DD (default today)")
    logs.add_argument("--until", type=_parse_day, help="Last day, YYYY-MM-DD (default today)")
    view = logs.add_mutually_exclusive_group()
    view.add_argument("--info", action="store_true", help="Show where the log lives and its size")
    view.add_argument("--list", action="store_true", help="List logged days with their sizes")
    logs.add_argument("--json", action="store_true", help="Print as JSON")

    cleanup = sub.add_parser("cleanup", help="Drop logged boosts older than N days")
    cleanup.add_argument(
        "--days", type=_non_negative_int, help="Days to keep (default from policy)"
    )
    cleanup.add_argument("--all", action="store_true", help="Remove every logged boost")

    sub.add_parser("daemon", help="Watch pressure and boost automatically")
    sub.add_parser("dashboard", help="Interactive dashboard")

    return parser


def _pressure_text(level: PressureLevel) -> str:
    style = PRESSURE_STYLES[level]
    return f"[{style}]{level.value.upper()}[/{style}]"


def print_snapshot(snapshot: MemorySnapshot) -> None:
    table = Table(title="Memory", show_header=False)
    table.add_column("Counter")
    table.add_column("MB", justify="right")
    for label, value in (
        ("Total", snapshot.total_mb),
        ("Free", snapshot.free_mb),
        ("Active", snapshot.active_mb),
        ("Inactive", snapshot.inactive_mb),
        ("Wired", snapshot.wired_mb),
        ("Compressed", snapshot.compressed_mb),
    ):
        table.add_row(label, str(value))
    console.print(table)
    console.print(
        f"Pressure: {_pressure_text(snapshot.pressure)} "
        f"(free {snapshot.free_ratio:.1%}, compressed {snapshot.compressed_ratio:.1%})"
    )


def print_boost(result: BoostResult) -> None:
    record = result.record
    after = record.after.free_mb if record.after is not None else "?"
    console.print(
        f"Freed [bold]{record.delta_mb:+d} MB[/bold] "
        f"(free {record.before.free_mb} MB -> {after} MB, "
        f"pressure was {_pressure_text(record.pressure)})"
    )
    purge = record.details.get("purge", {})
    if not purge.get("success", False):
        console.print(f"[yellow]Cache purge unavailable:[/yellow] {purge.get('message', '')}")
    for entry in record.details.get("terminations", []):
        console.print(
            f"  pid {entry['pid']} {escape(entry['name'])} \\[{entry['tier']}]: {entry['outcome']}"
        )
    if "terminations_error" in record.details:
        console.print(
            f"[yellow]Termination step stopped early:[/yellow] "
            f"{escape(record.details['terminations_error'])}"
        )
    if result.log_error is not None:
        console.print(f"[red]Event was not logged:[/red] {result.log_error.message}")


def _confirm_candidate(candidate: Candidate, assume_yes: bool) -> bool:
    record = candidate.record
    console.print(
        f"\n[bold]{escape(record.name)}[/bold] (pid {record.pid}) {record.rss_mb} MB, "
        f"tier [bold]{candidate.tier.value}[/bold]: {candidate.reason}"
    )
    if candidate.tier is SafetyTier.DANGEROUS:
        console.print("[red]Terminating this process may destabilize the system.[/red]")
        return Prompt.ask("Type YES to terminate", default="") == "YES"
    if assume_yes:
        return True
    return Confirm.ask("Terminate?", default=False)


def _confirm_kill(candidate: Candidate) -> bool:
    return Confirm.ask(
        f"{candidate.name} (pid {candidate.pid}) ignored SIGTERM. Send SIGKILL?", default=False
    )


def cmd_status(engine: Engine, args: argparse.Namespace) -> int:
    snapshot = engine.snapshot()
    if args.json:
        console.print_json(data=snapshot.to_dict())
    else:
        print_snapshot(snapshot)
    return 0


def cmd_top(engine: Engine, args: argparse.Namespace) -> int:
    table = Table(title=f"Top {args.n} processes by memory")
    table.add_column("PID", justify="right")
    table.add_column("Name")
    table.add_column("RSS MB", justify="right")
    table.add_column("CPU %", justify="right")
    table.add_column("FG")
    for record in engine.top_n(args.n):
        table.add_row(
            str(record.pid),
            record.name,
            str(record.rss_mb),
            f"{record.cpu_percent:.1f}",
            "*" if record.is_foreground else "",
        )
    console.print(table)
    return 0


def cmd_candidates(engine: Engine, args: argparse.Namespace) -> int:
    candidates = engine.candidates()
    if args.json:
        console.print_json(data=[_candidate_dict(c) for c in candidates])
        return 0
    if not candidates:
        console.print("No candidates above the RSS threshold.")
        return 0
    table = Table(title=f"Candidates (RSS >= {engine.policy.rss_threshold_mb} MB)")
    table.add_column("PID", justify="right")
    table.add_column("Name")
    table.add_column("RSS MB", justify="right")
    table.add_column("Tier")
    table.add_column("Reason")
    for candidate in candidates:
        table.add_row(
            str(candidate.pid),
            candidate.name,
            str(candidate.record.rss_mb),
            candidate.tier.value,
            candidate.reason,
        )
    console.print(table)
    return 0


def _candidate_dict(candidate: Candidate) -> dict[str, Any]:
    record = candidate.record
    return {
        "pid": record.pid,
        "name": record.name,
        "rss_mb": record.rss_mb,
        "cpu_percent": record.cpu_percent,
        "cpu_sampled": record.cpu_sampled,
        "is_foreground": record.is_foreground,
        "tier": candidate.tier.value,
        "reason": candidate.reason,
    }


def cmd_boost(engine: Engine, args: argparse.Namespace) -> int:
    if args.terminate and not engine.policy.enable_terminate:
        console.print(
            "[yellow]Process termination is disabled; set enable_terminate to allow it.[/yellow]"
        )
    result = engine.boost(
        allow_terminate=args.terminate,
        confirm=lambda c: _confirm_candidate(c, args.yes),
        escalate=_confirm_kill if args.force else None,
    )
    print_boost(result)
    return 0 if result.logged else 1


def _print_events(events: list[EventRecord]) -> None:
    table = Table(title=f"{len(events)} logged boost(s)")
    table.add_column("Time (UTC)")
    table.add_column("Origin")
    table.add_column("Action")
    table.add_column("Pressure")
    table.add_column("Delta MB", justify="right")
    table.add_column("Purge")
    for event in events:
        purge_ok = event.details.get("purge", {}).get("success", False)
        table.add_row(
            event.ts.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S"),
            event.origin.value,
            event.action.value,
            _pressure_text(event.pressure),
            f"{event.delta_mb:+d}",
            "ok" if purge_ok else "failed",
        )
    console.print(table)


def _print_log_info(engine: Engine, as_json: bool) -> None:
    days = engine.event_log.list_days()
    info = {
        "backend": engine.policy.log_backend,
        "location": str(engine.event_log.location),
        "size_bytes": engine.event_log.size_bytes(),
        "days": len(days),
        "retention_days": engine.policy.log_retention_days,
    }
    if as_json:
        console.print_json(data=info)
        return
    table = Table(title="Event log", show_header=False)
    table.add_column("Field")
    table.add_column("Value")
    for key, value in info.items():
        table.add_row(key.replace("_", " ").capitalize(), str(value))
    console.print(table)


def _print_log_days(engine: Engine, as_json: bool) -> None:
    days = engine.event_log.list_days()
    if as_json:
        console.print_json(data=[{"day": day, "size_bytes": size} for day, size in days])
        return
    table = Table(title=f"{len(days)} logged day(s)")
    table.add_column("Day (UTC)")
    table.add_column("Bytes", justify="right")
    for day, size in days:
        table.add_row(day, str(size))
    console.print(table)


def cmd_logs(engine: Engine, args: argparse.Namespace) -> int:
    if args.info:
        _print_log_info(engine, args.json)
        return 0
    if args.list:
        _print_log_days(engine, args.json)
        return 0
    today = datetime.now(UTC).date()
    until = args.until or today
    since = args.since or until
    if since > until:
        console.print("[red]--since is after --until[/red]")
        return 2
    events = engine.query_log(since, until)
    if args.json:
        console.print_json(data=[event.to_dict() for event in events])
    else:
        _print_events(events)
    return 0


def cmd_cleanup(engine: Engine, args: argparse.Namespace) -> int:
    if args.all:
        removed = engine.event_log.clear()
        console.print(f"Removed {removed} event(s).")
        return 0
    removed = engine.cleanup_log(args.days)
    days = engine.policy.log_retention_days if args.days is None else args.days
    cutoff = datetime.now(UTC) - timedelta(days=days)
    console.print(f"Removed {removed} event(s) logged before {cutoff:%Y-%m-%d %H:%M} UTC.")
    return 0


def cmd_daemon(engine: Engine, args: argparse.Namespace) -> int:
    stop = threading.Event()

    def _handle_signal(signum: int, frame: Any) -> None:
        logger.info("Received signal %d, stopping", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    engine.start_monitor()
    console.print(
        f"Watching memory pressure (throttle {engine.policy.throttle_interval_seconds:.0f}s). "
        "Ctrl+C to stop."
    )
    try:
        while not stop.wait(timeout=1.0):
            pass
    finally:
        engine.stop_monitor()
    return 0


def cmd_dashboard(engine: Engine, args: argparse.Namespace) -> int:
    from rambo.app import RamboApp

    RamboApp(engine).run()
    return 0


COMMANDS = {
    "status": cmd_status,
    "top": cmd_top,
    "candidates": cmd_candidates,
    "boost": cmd_boost,
    "logs": cmd_logs,
    "cleanup": cmd_cleanup,
    "daemon": cmd_daemon,
    "dashboard": cmd_dashboard,
}


def _print_auto_boost(result: BoostResult) -> None:
    console.print("[bold]Automatic boost[/bold]")
    print_boost(result)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the rambo command."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(
            args.config,
            log_level=args.log_level,
            rss_threshold_mb=args.rss_threshold_mb,
            throttle_interval_seconds=args.throttle_interval_seconds,
            log_backend=args.log_backend,
        )
    except RamboError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        return 1

    setup_logging(settings.log_level)
    engine = Engine(settings.to_policy(), on_auto_boost=_print_auto_boost)
    try:
        return COMMANDS[args.command](engine, args)
    except RamboError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        return 1
    finally:
        engine.close()


if __name__ == "__main__":
    sys.exit(main())
