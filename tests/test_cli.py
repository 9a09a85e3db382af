"""Tests for the rambo command line."""

import io
import json
import os
from datetime import UTC, datetime

import pytest

from helpers import FakeBackend, counters, proc
from rambo import cli
from rambo.engine import Engine
from rambo.eventlog import open_event_log
from rambo.models import PolicyConfig


@pytest.fixture
def backend():
    backend = FakeBackend()
    backend.script_reads(counters(free_mb=1178), counters(free_mb=1690))
    backend.add_process(proc(70001, "browser", 2600))
    backend.add_process(proc(70002, "tiny", 20))
    return backend


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch, backend):
    """Point config and data at tmp_path and swap the psutil backend for a fake one."""
    for key in [k for k in os.environ if k.startswith("RAMBO_")]:
        monkeypatch.delenv(key)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("RAMBO_LOG_DIR", str(tmp_path / "data"))

    def make_engine(policy, on_auto_boost=None):
        return Engine(policy, backend=backend, on_auto_boost=on_auto_boost)

    monkeypatch.setattr(cli, "Engine", make_engine)


def logged_events(tmp_path):
    log = open_event_log(PolicyConfig(log_dir=str(tmp_path / "data")))
    try:
        today = datetime.now(UTC).date()
        return log.query(today, today)
    finally:
        log.close()


class TestParser:
    """Tests for argument parsing."""

    def test_command_required(self):
        """Test a subcommand is required."""
        with pytest.raises(SystemExit):
            cli.create_parser().parse_args([])

    def test_global_overrides(self):
        """Test global flags and boost options parse."""
        args = cli.create_parser().parse_args(
            ["--rss-threshold-mb", "200", "--log-backend", "sqlite", "boost", "--terminate"]
        )
        assert args.rss_threshold_mb == 200
        assert args.log_backend == "sqlite"
        assert args.command == "boost"
        assert args.terminate is True
        assert args.yes is False

    def test_bad_day(self):
        """Test a malformed date is rejected."""
        with pytest.raises(SystemExit):
            cli.create_parser().parse_args(["logs", "--since", "yesterday"])

    def test_every_command_has_a_handler(self):
        """Test every subcommand maps to a handler."""
        parser = cli.create_parser()
        commands = parser._subparsers._group_actions[0].choices
        assert set(commands) == set(cli.COMMANDS)


def test_status(capsys):
    """Test status prints free memory and pressure."""
    assert cli.main(["status"]) == 0
    out = capsys.readouterr().out
    assert "1178" in out
    assert "WARNING" in out


def test_top(capsys):
    """Test top honours -n."""
    assert cli.main(["top", "-n", "1"]) == 0
    out = capsys.readouterr().out
    assert "browser" in out
    assert "tiny" not in out


def test_candidates(capsys):
    """Test candidates lists tiers for processes above the threshold."""
    assert cli.main(["--rss-threshold-mb", "500", "candidates"]) == 0
    out = capsys.readouterr().out
    assert "browser" in out
    assert "safe" in out


def test_boost_logs_an_event(capsys, tmp_path, backend):
    """Test boost prints the delta and logs one event."""
    assert cli.main(["boost"]) == 0

    assert "+512 MB" in capsys.readouterr().out
    assert backend.purge_calls == 1
    [event] = logged_events(tmp_path)
    assert event.delta_mb == 512


def test_boost_terminate_disabled_by_policy(capsys, backend):
    """Test --terminate is a no-op while the policy disables it."""
    assert cli.main(["boost", "--terminate", "--yes"]) == 0

    assert "disabled" in capsys.readouterr().out
    assert backend.signals == []


def test_boost_terminate_with_yes(capsys, monkeypatch, backend):
    """Test --yes approves Safe candidates without prompting."""
    monkeypatch.setenv("RAMBO_ENABLE_TERMINATE", "true")

    assert cli.main(["--rss-threshold-mb", "500", "boost", "--terminate", "--yes"]) == 0

    assert "terminated" in capsys.readouterr().out
    assert [pid for pid, _ in backend.signals] == [70001]


def test_logs_shows_todays_boosts(capsys):
    """Test logs defaults to today."""
    cli.main(["boost"])
    capsys.readouterr()

    assert cli.main(["logs"]) == 0
    assert "1 logged boost(s)" in capsys.readouterr().out


def test_logs_rejects_inverted_range(capsys):
    """Test --since after --until exits with status 2."""
    assert cli.main(["logs", "--since", "2025-03-02", "--until", "2025-03-01"]) == 2


def test_cleanup_all(capsys, tmp_path):
    """Test cleanup --all empties the log."""
    cli.main(["boost"])
    capsys.readouterr()

    assert cli.main(["cleanup", "--all"]) == 0
    assert "Removed 1 event(s)" in capsys.readouterr().out
    assert logged_events(tmp_path) == []


def test_cleanup_keeps_recent(capsys, tmp_path):
    """Test cleanup keeps events inside the retention window."""
    cli.main(["boost"])

    assert cli.main(["cleanup", "--days", "30"]) == 0
    assert len(logged_events(tmp_path)) == 1


def test_stats_failure_is_reported(capsys, backend):
    """Test an unreadable memory state exits with status 1."""
    backend.script_reads(OSError("host_statistics64 failed"))

    assert cli.main(["status"]) == 1
    assert "host_statistics64" in capsys.readouterr().out


def test_invalid_configuration_is_reported(capsys, monkeypatch):
    """Test invalid configuration exits with status 1."""
    monkeypatch.setenv("RAMBO_RSS_THRESHOLD_MB", "lots")

    assert cli.main(["status"]) == 1
    assert "rss_threshold_mb" in capsys.readouterr().out


def test_boost_terminate_without_a_terminal(capsys, monkeypatch, tmp_path, backend):
    """Prompts that hit end of input count as no and the boost is still logged."""
    monkeypatch.setenv("RAMBO_ENABLE_TERMINATE", "true")
    monkeypatch.setattr("sys.stdin", io.StringIO(""))

    assert cli.main(["--rss-threshold-mb", "500", "boost", "--terminate"]) == 0

    assert "unconfirmed" in capsys.readouterr().out
    assert backend.signals == []
    assert len(logged_events(tmp_path)) == 1


class TestJsonOutput:
    """--json prints machine-readable output."""

    def test_status_json(self, capsys):
        """Test status --json prints the snapshot."""
        assert cli.main(["status", "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["free_mb"] == 1178
        assert data["pressure"] == "warning"

    def test_candidates_json(self, capsys):
        """Test candidates --json lists tiers and reasons."""
        assert cli.main(["--rss-threshold-mb", "500", "candidates", "--json"]) == 0

        [candidate] = json.loads(capsys.readouterr().out)
        assert candidate["pid"] == 70001
        assert candidate["tier"] == "safe"
        assert candidate["cpu_sampled"] is True

    def test_logs_json(self, capsys):
        """Test logs --json prints the full event records."""
        cli.main(["boost"])
        capsys.readouterr()

        assert cli.main(["logs", "--json"]) == 0

        [event] = json.loads(capsys.readouterr().out)
        assert event["delta_mb"] == 512
        assert event["origin"] == "manual"


class TestLogViews:
    """logs --info and logs --list."""

    def test_info_on_empty_log(self, capsys):
        """Test --info works before anything was logged."""
        assert cli.main(["logs", "--info", "--json"]) == 0

        info = json.loads(capsys.readouterr().out)
        assert info["backend"] == "jsonl"
        assert info["size_bytes"] == 0
        assert info["days"] == 0

    def test_info_after_a_boost(self, capsys, tmp_path):
        """Test --info reports the log location and its size."""
        cli.main(["boost"])
        capsys.readouterr()

        assert cli.main(["logs", "--info", "--json"]) == 0

        info = json.loads(capsys.readouterr().out)
        assert info["location"].startswith(str(tmp_path / "data"))
        assert info["size_bytes"] > 0
        assert info["days"] == 1
        assert info["retention_days"] == 30

    def test_list_days(self, capsys):
        """Test --list shows today's file."""
        cli.main(["boost"])
        capsys.readouterr()

        assert cli.main(["logs", "--list", "--json"]) == 0

        [day] = json.loads(capsys.readouterr().out)
        assert day["day"] == datetime.now(UTC).strftime("%Y-%m-%d")
        assert day["size_bytes"] > 0

    def test_list_table(self, capsys):
        """Test --list without --json renders a table."""
        cli.main(["boost"])
        capsys.readouterr()

        assert cli.main(["logs", "--list"]) == 0
        assert "1 logged day(s)" in capsys.readouterr().out

    def test_info_and_list_are_exclusive(self):
        """Test --info and --list cannot be combined."""
        with pytest.raises(SystemExit):
            cli.create_parser().parse_args(["logs", "--info", "--list"])


def test_cleanup_rejects_negative_days(capsys, tmp_path):
    """A negative retention would put the cutoff in the future and delete everything."""
    cli.main(["boost"])

    with pytest.raises(SystemExit):
        cli.main(["cleanup", "--days", "-1"])

    assert "must not be negative" in capsys.readouterr().err
    assert len(logged_events(tmp_path)) == 1
