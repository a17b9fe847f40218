"""Shared fixtures: a file-backed SQLite database per test and controllable clocks."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from tickrunner.container import build_container
from tickrunner.core.config import Settings
from tickrunner.core.db import make_engine, make_session_factory
from tickrunner.models import Base
from tickrunner.queues import QueueFactory
from tickrunner.registry import TaskRegistry
from tickrunner.repositories.common import CommonRepository
from tickrunner.repositories.tasks import TaskRepository
from tickrunner.runner import Runner

START = datetime(2024, 1, 1, 0, 0, 30)


class FakeClock:
    """Naive-UTC wall clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Stand-in for time.monotonic used by Timer."""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'tickrunner.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer_clock():
    return FakeMonotonic()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        {
            "DATABASE_URL": f"sqlite:///{tmp_path / 'tickrunner.db'}",
            "TIMEZONE": "UTC",
            "MAX_EXECUTION": "60",
            "EXECUTION_BIAS": "75",
            "CRON_STUCK_THRESHOLD": "3",
            "WEBCRON_KEY": "cron-secret",
            "API_TOKEN": "api-secret",
            "DBBACKUP_PATH": str(tmp_path / "backups"),
            "DBBACKUP_COMPRESS": "true",
            "DBBACKUP_MAXFILES": "15",
            "LOG_PATH": str(tmp_path / "log"),
        }
    )


@pytest.fixture
def repository(session_factory, clock):
    return TaskRepository(session_factory, tz="UTC", clock=clock)


@pytest.fixture
def common(session_factory):
    return CommonRepository(session_factory)


@pytest.fixture
def queues(session_factory, clock):
    return QueueFactory(session_factory, clock=clock)


@pytest.fixture
def registry():
    return TaskRegistry()


@pytest.fixture
def runner(repository, registry, settings, common, clock, timer_clock):
    return Runner(repository, registry, settings=settings, common=common, clock=clock, timer_clock=timer_clock)


@pytest.fixture
def container(settings, engine, registry, clock, timer_clock):
    return build_container(settings, engine=engine, registry=registry, clock=clock, timer_clock=timer_clock)
