from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from agentmeter.store import EventStore


class FakeClock:
    """
    manually advanced epoch-milliseconds clock.
    """

    def __init__(self, now: "int" = 1_700_000_000_000) -> "None":
        self.now = now

    def __call__(self) -> "int":
        return self.now

    def advance(self, ms: "int") -> "None":
        self.now += ms


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def clock() -> "FakeClock":
    return FakeClock()


@pytest.fixture()
def store(tmp_path: "Path") -> "EventStore":
    event_store = EventStore(tmp_path / "stats.db")
    yield event_store
    event_store.close()
