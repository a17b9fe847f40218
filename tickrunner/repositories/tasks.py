from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import asc, delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from tickrunner.core import cron
from tickrunner.core.exceptions import TaskNotFound
from tickrunner.core.kvbag import KVBag
from tickrunner.core.status import Status
from tickrunner.models.base import utcnow
from tickrunner.models.task import Task


logger = logging.getLogger("task-repository")

BagLike = Union[None, str, Dict[str, Any], KVBag]

_UPDATABLE = {"type", "cron_expression", "enabled", "priority", "params", "site_id", "next_execution", "storage"}

STUCK_MESSAGE = "Task stuck/timed out; the lock was held past the stuck threshold"


def _bag_json(value: BagLike) -> str:
    return KVBag(value).to_json()


class TaskRepository:
    """
    All reads and writes of the `tasks` table.

    Every method opens (and closes) its own session; returned Task objects
    are detached snapshots. Mutual exclusion relies on `try_lock`, a single
    conditional UPDATE, never on a read followed by a write.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        tz: cron.TzLike = "UTC",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.tz = cron.resolve_timezone(tz)
        self.clock = clock

    # --- scheduling helpers ---------------------------------------------

    def seed_schedule(self, task: Task, now: datetime) -> None:
        """
        Brand-new tasks pretend they last ran at the previous cron tick so
        their first real run happens at the next tick, not right away.
        """
        task.last_execution = cron.previous_run(task.cron_expression, before_utc=now, tz=self.tz)
        task.last_run_end = None
        task.last_exit_code = int(Status.INITIAL_SCHEDULE)
        if task.next_execution is None:
            task.next_execution = cron.next_run(task.cron_expression, after_utc=task.last_execution, tz=self.tz)

    # --- CRUD -----------------------------------------------------------

    def create(
        self,
        type: str,
        cron_expression: str,
        *,
        site_id: int = 0,
        enabled: bool = True,
        priority: int = 0,
        params: BagLike = None,
        storage: BagLike = None,
        next_execution: Optional[datetime] = None,
    ) -> Task:
        expr = cron.validate(cron_expression)
        task_type = (type or "").strip().lower()
        if not task_type:
            raise ValueError("task type must not be empty")

        now = self.clock()
        task = Task(
            site_id=int(site_id or 0),
            type=task_type,
            cron_expression=expr,
            enabled=bool(enabled),
            priority=int(priority or 0),
            params=_bag_json(params),
            storage=_bag_json(storage),
            next_execution=next_execution,
            times_executed=0,
            times_failed=0,
            locked_at=None,
            created_at=now,
            updated_at=now,
        )
        self.seed_schedule(task, now)

        with self.session_factory() as db:
            db.add(task)
            db.commit()
            db.refresh(task)
        logger.debug("created task #%s (%s) next_execution=%s", task.id, task.type, task.next_execution)
        return task

    def get(self, task_id: int) -> Task:
        with self.session_factory() as db:
            task = db.get(Task, task_id)
            if task is None:
                raise TaskNotFound(task_id)
            return task

    def find(self, *, site_id: int, type: str) -> Optional[Task]:
        with self.session_factory() as db:
            return db.execute(
                select(Task)
                .where(Task.site_id == int(site_id or 0), Task.type == type.strip().lower())
                .order_by(asc(Task.id))
                .limit(1)
            ).scalar_one_or_none()

    def list(
        self,
        *,
        site_id: Optional[int] = None,
        enabled: Optional[bool] = None,
        type: Optional[str] = None,
    ) -> List[Task]:
        q = select(Task)
        if site_id is not None:
            q = q.where(Task.site_id == site_id)
        if enabled is not None:
            q = q.where(Task.enabled.is_(bool(enabled)))
        if type:
            q = q.where(Task.type == type.strip().lower())
        with self.session_factory() as db:
            return list(db.execute(q.order_by(asc(Task.priority), asc(Task.id))).scalars().all())

    def update(self, task_id: int, **fields: Any) -> Task:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise TypeError(f"cannot update task field(s): {', '.join(sorted(unknown))}")

        now = self.clock()
        with self.session_factory() as db:
            task = db.get(Task, task_id)
            if task is None:
                raise TaskNotFound(task_id)

            if "cron_expression" in fields:
                expr = cron.validate(fields.pop("cron_expression"))
                if expr != task.cron_expression:
                    task.cron_expression = expr
                    if "next_execution" not in fields:
                        task.next_execution = cron.next_run(expr, after_utc=now, tz=self.tz)
            if "type" in fields:
                task.type = str(fields.pop("type") or task.type).strip().lower()
            for key in ("params", "storage"):
                if key in fields:
                    setattr(task, key, _bag_json(fields.pop(key)))
            for key, value in fields.items():
                setattr(task, key, value)

            # locked_at is left to the runner and the stuck sweep
            task.updated_at = now
            db.commit()
            db.refresh(task)
            return task

    def delete(self, task_id: int) -> bool:
        with self.session_factory() as db:
            res = db.execute(delete(Task).where(Task.id == task_id))
            db.commit()
            return (res.rowcount or 0) > 0

    def run_now(self, task_id: int) -> Task:
        """Make the task due immediately, bypassing its cron schedule once."""
        return self.update(task_id, next_execution=self.clock())

    def schedule_site_task(
        self,
        *,
        site_id: int,
        type: str,
        cron_expression: str = "* * * * *",
        params: BagLike = None,
        next_execution: Optional[datetime] = None,
        run_once: Optional[str] = None,
    ) -> Task:
        """Create or reset the (site_id, type) task so it runs at `next_execution` (default: now)."""
        bag = KVBag(params)
        if run_once:
            bag.set("run_once", run_once)
        when = next_execution or self.clock()
        existing = self.find(site_id=site_id, type=type)
        if existing is None:
            return self.create(
                type,
                cron_expression,
                site_id=site_id,
                params=bag,
                next_execution=when,
            )

        with self.session_factory() as db:
            task = db.get(Task, existing.id)
            task.cron_expression = cron.validate(cron_expression)
            task.params = bag.to_json()
            task.storage = "{}"
            task.enabled = True
            task.last_exit_code = int(Status.INITIAL_SCHEDULE)
            task.next_execution = when
            db.commit()
            db.refresh(task)
            return task

    # --- runner primitives ----------------------------------------------

    def due(self, now: datetime, *, limit: Optional[int] = None, exclude: Optional[List[int]] = None) -> List[Task]:
        q = (
            select(Task)
            .where(
                Task.enabled.is_(True),
                Task.locked_at.is_(None),
                Task.next_execution.is_not(None),
                Task.next_execution <= now,
            )
            .order_by(asc(Task.priority), asc(Task.next_execution), asc(Task.id))
        )
        if exclude:
            q = q.where(Task.id.not_in(exclude))
        if limit:
            q = q.limit(limit)
        with self.session_factory() as db:
            return list(db.execute(q).scalars().all())

    def try_lock(self, task_id: int, now: datetime) -> bool:
        """Claim a due, enabled, unlocked task. False means another runner got it first."""
        with self.session_factory() as db:
            res = db.execute(
                update(Task)
                .where(
                    Task.id == task_id,
                    Task.enabled.is_(True),
                    Task.locked_at.is_(None),
                    Task.next_execution <= now,
                )
                .values(locked_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return res.rowcount == 1

    def refresh_lock(self, task_id: int, held_since: datetime, now: datetime) -> bool:
        """Move our lock timestamp forward; False if we no longer own the lock."""
        with self.session_factory() as db:
            res = db.execute(
                update(Task)
                .where(Task.id == task_id, Task.locked_at == held_since)
                .values(locked_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return res.rowcount == 1

    def mark_running(self, task_id: int, held_since: datetime, *, now: datetime, resumed: bool) -> bool:
        values: Dict[str, Any] = {"last_exit_code": int(Status.RUNNING), "last_run_end": None}
        if not resumed:
            values["last_execution"] = now
        with self.session_factory() as db:
            res = db.execute(
                update(Task)
                .where(Task.id == task_id, Task.locked_at == held_since)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return res.rowcount == 1

    def save_result(self, task_id: int, held_since: datetime, changes: Dict[str, Any]) -> bool:
        """
        Persist an execution outcome, but only while we still own the lock.

        Returns False when the task vanished or the lock was taken away
        (e.g. swept as stuck by another runner); nothing is written then.
        """
        with self.session_factory() as db:
            task = db.get(Task, task_id)
            if task is None or task.locked_at != held_since:
                return False
            for key, value in changes.items():
                setattr(task, key, value)
            db.commit()
            return True

    def release(self, task_id: int) -> None:
        with self.session_factory() as db:
            db.execute(
                update(Task).where(Task.id == task_id).values(locked_at=None).execution_options(synchronize_session=False)
            )
            db.commit()

    def clean_up_stuck(self, threshold_minutes: int, now: datetime) -> int:
        """Unlock tasks whose lock is older than the threshold and record them as failed."""
        cutoff = now - timedelta(minutes=max(3, int(threshold_minutes)))
        cleaned = 0
        with self.session_factory() as db:
            stuck = db.execute(
                select(Task.id, Task.locked_at, Task.cron_expression, Task.times_failed, Task.times_executed).where(
                    Task.locked_at.is_not(None), Task.locked_at <= cutoff
                )
            ).all()
            for task_id, locked_at, expr, times_failed, times_executed in stuck:
                diagnostic = json.dumps(
                    {
                        "error": STUCK_MESSAGE,
                        "type": "Timeout",
                        "locked_at": locked_at.isoformat(),
                        "trace": "",
                    }
                )
                res = db.execute(
                    update(Task)
                    .where(Task.id == task_id, Task.locked_at == locked_at)
                    .values(
                        locked_at=None,
                        last_exit_code=int(Status.EXCEPTION),
                        last_run_end=now,
                        storage=diagnostic,
                        times_failed=int(times_failed or 0) + 1,
                        times_executed=int(times_executed or 0) + 1,
                        next_execution=cron.next_run(expr, after_utc=now, tz=self.tz),
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    cleaned += 1
                    logger.warning("task #%s was stuck since %s; unlocked", task_id, locked_at)
            db.commit()
        return cleaned

    def are_tasks_running(self) -> bool:
        with self.session_factory() as db:
            count = db.execute(select(func.count()).select_from(Task).where(Task.locked_at.is_not(None))).scalar_one()
            return int(count or 0) > 0
