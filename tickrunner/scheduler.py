from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from tickrunner.core import cron
from tickrunner.models.base import utcnow
from tickrunner.models.task import Task
from tickrunner.repositories.tasks import TaskRepository


logger = logging.getLogger("task-scheduler")


class Scheduler:
    """
    Decides what runs next.

    Cron expressions are evaluated in the configured timezone while every
    stored timestamp stays naive UTC. Expressions were validated when the
    task was written, so they are trusted here.
    """

    def __init__(
        self,
        repository: TaskRepository,
        *,
        tz: cron.TzLike = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.tz = cron.resolve_timezone(tz) if tz is not None else repository.tz
        self.clock = clock or repository.clock or utcnow

    def next_execution(self, cron_expression: str, reference: datetime) -> datetime:
        return cron.next_run(cron_expression, after_utc=reference, tz=self.tz)

    def clear_stuck(self, threshold_minutes: int, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        cleaned = self.repository.clean_up_stuck(threshold_minutes, now)
        if cleaned:
            logger.warning("cleared %s stuck task(s)", cleaned)
        return cleaned

    def due_tasks(
        self,
        now: Optional[datetime] = None,
        *,
        limit: Optional[int] = None,
        exclude: Optional[Iterable[int]] = None,
    ) -> List[Task]:
        """Enabled, unlocked tasks with next_execution <= now; by priority, then most overdue."""
        return self.repository.due(now or self.clock(), limit=limit, exclude=list(exclude or ()))

    def next_due(self, now: Optional[datetime] = None, *, exclude: Optional[Iterable[int]] = None) -> Optional[Task]:
        tasks = self.due_tasks(now, limit=1, exclude=exclude)
        return tasks[0] if tasks else None

    def select(self, threshold_minutes: int, now: Optional[datetime] = None) -> List[Task]:
        """One full pass: the stuck sweep always completes before due tasks are picked."""
        now = now or self.clock()
        self.clear_stuck(threshold_minutes, now)
        return self.due_tasks(now)
