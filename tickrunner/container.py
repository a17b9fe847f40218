from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from tickrunner.core.config import Settings, get_settings
from tickrunner.core.db import get_engine, make_session_factory
from tickrunner.models.base import utcnow
from tickrunner.queues import QueueFactory
from tickrunner.registry import TaskRegistry
from tickrunner.repositories.common import CommonRepository
from tickrunner.repositories.tasks import TaskRepository
from tickrunner.runner import Runner
from tickrunner.scheduler import Scheduler
from tickrunner.tasks import register_default_tasks


@dataclass
class Container:
    """Everything one process needs, wired once at bootstrap."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    tasks: TaskRepository
    common: CommonRepository
    queues: QueueFactory
    registry: TaskRegistry
    scheduler: Scheduler
    runner: Runner


def build_container(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[Engine] = None,
    registry: Optional[TaskRegistry] = None,
    clock: Callable[[], datetime] = utcnow,
    timer_clock: Optional[Callable[[], float]] = None,
) -> Container:
    settings = settings or get_settings()
    engine = engine or get_engine()
    session_factory = make_session_factory(engine)

    tasks = TaskRepository(session_factory, tz=settings.TIMEZONE, clock=clock)
    common = CommonRepository(session_factory)
    queues = QueueFactory(session_factory, clock=clock)
    if registry is None:
        registry = register_default_tasks(TaskRegistry(), engine=engine, settings=settings, queue_factory=queues)
    scheduler = Scheduler(tasks, clock=clock)
    runner = Runner(
        tasks,
        registry,
        settings=settings,
        scheduler=scheduler,
        common=common,
        clock=clock,
        timer_clock=timer_clock,
    )
    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        tasks=tasks,
        common=common,
        queues=queues,
        registry=registry,
        scheduler=scheduler,
        runner=runner,
    )
