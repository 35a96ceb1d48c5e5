"""
Shared fixtures for the job monitor test suite.

Every test gets isolated settings (SQLite under tmp_path, no chunk delay), an
in-memory Redis substitute behind the counter store, a fresh metrics database
and a private event bus. Process-wide singletons are reset afterwards.
"""

import pytest

from job_monitor.app.core.config import JobMonitorSettings, reset_settings, set_settings
from job_monitor.app.core.Correlation.store import RedisCounterStore, set_counter_store
from job_monitor.app.core.DB_Management.Metrics_DB import MetricsDatabase, set_metrics_db
from job_monitor.app.core.Events.event_bus import EventBus, reset_event_bus
from job_monitor.app.core.Infrastructure.redis_factory import InMemorySyncRedis
from job_monitor.app.core.Monitoring.notification_service import reset_notification_service


class FakeClock:
    """Manually advanced clock usable as `clock=` for recorder and sync engine."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_settings(tmp_path, **overrides) -> JobMonitorSettings:
    values = {
        "DATABASE_PATH": str(tmp_path / "job_monitor.db"),
        "NOTIFY_FILE": str(tmp_path / "anomalies.jsonl"),
        "SYNC_CHUNK_DELAY_MS": 0,
        "REDIS_URL": "redis://localhost:6379/15",
    }
    values.update(overrides)
    return JobMonitorSettings(_env_file=None, **values)


@pytest.fixture(autouse=True)
def _reset_singletons():
    yield
    reset_notification_service()
    reset_event_bus()
    set_counter_store(None)
    set_metrics_db(None)
    reset_settings()


@pytest.fixture
def settings_factory(tmp_path):
    """Build and install settings with overrides: `settings_factory(SYNC_BATCH_SIZE=2)`."""
    def _factory(**overrides):
        s = make_settings(tmp_path, **overrides)
        set_settings(s)
        return s
    return _factory


@pytest.fixture
def settings(settings_factory):
    return settings_factory()


@pytest.fixture
def redis_client():
    return InMemorySyncRedis()


@pytest.fixture
def store(redis_client):
    s = RedisCounterStore(redis_client)
    set_counter_store(s)
    return s


@pytest.fixture
def db(settings):
    database = MetricsDatabase(settings.DATABASE_PATH)
    set_metrics_db(database)
    return database


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def clock():
    return FakeClock()
