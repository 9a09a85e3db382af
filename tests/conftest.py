"""Shared fixtures."""

import pytest

from helpers import FakeBackend, FakeClock
from rambo.eventlog import EventLog, JsonlEventStore
from rambo.inventory import ProcessInventory
from rambo.models import PolicyConfig
from rambo.orchestrator import ReclaimOrchestrator
from rambo.stats import StatsCollector


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> PolicyConfig:
    return PolicyConfig(rss_threshold_mb=500)


@pytest.fixture
def event_log(tmp_path):
    log = EventLog(JsonlEventStore(tmp_path / "logs"))
    yield log
    log.close()


@pytest.fixture
def orchestrator(backend, event_log, policy, clock) -> ReclaimOrchestrator:
    return ReclaimOrchestrator(
        StatsCollector(backend),
        ProcessInventory(backend),
        backend,
        event_log,
        policy,
        sleep=clock.advance,
        clock=clock,
    )
