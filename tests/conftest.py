from datetime import datetime, timedelta, timezone

import pytest

from codepage_sandbox.config import Settings
from codepage_sandbox.infrastructure.metrics.store import MetricsStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingDispatcher:
    """Dispatcher double that remembers every dispatched alert."""

    def __init__(self):
        self.sent = []

    def dispatch(self, alert, channel_names):
        self.sent.append((alert.id, list(channel_names)))
        return {name: True for name in channel_names}


@pytest.fixture
def settings():
    return Settings(
        mock_latency_scale=0.0,
        monitor_interval=0.05,
        install_default_rules=False,
        timeout_ms=10000,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MetricsStore(buffer_size=1000, clock=clock)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()
