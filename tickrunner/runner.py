from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tickrunner.core.config import Settings
from tickrunner.core.exceptions import UnknownTaskType
from tickrunner.core.kvbag import KVBag
from tickrunner.core.status import Status
from tickrunner.core.timer import Timer
from tickrunner.fsm import run_until_settled
from tickrunner.models.base import utcnow
from tickrunner.models.task import Task
from tickrunner.registry import TaskRegistry
from tickrunner.repositories.common import LAST_EXECUTION_KEY, CommonRepository
from tickrunner.repositories.tasks import TaskRepository
from tickrunner.scheduler import Scheduler


logger = logging.getLogger("task-runner")

RESUMED_KEY = "task.resumed"


@dataclass
class TaskOutcome:
    task_id: int
    type: str
    status: Status
    invocations: int = 0
    persisted: bool = True


@dataclass
class TickResult:
    stuck_cleared: int = 0
    executed: int = 0
    ok: int = 0
    resumed: int = 0
    failed: int = 0
    skipped: int = 0
    paused: bool = False
    outcomes: List[TaskOutcome] = field(default_factory=list)

    @property
    def any_failed(self) -> bool:
        return self.failed > 0


def _diagnostic(exc: BaseException) -> Dict[str, Any]:
    return {
        "error": str(exc) or type(exc).__name__,
        "type": type(exc).__name__,
        "trace": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


class Runner:
    """
    Time-boxed execution loop for one tick.

    Per tick: record the tick, sweep stuck locks, then keep claiming the
    next due task (conditional lock), invoking its callback and persisting
    the outcome until no due task is left or the budget is spent. A task
    answering WILL_RESUME is re-invoked in place, holding its lock, for at
    most `execution_bias` percent of the time left in the tick.
    """

    def __init__(
        self,
        repository: TaskRepository,
        registry: TaskRegistry,
        *,
        settings: Optional[Settings] = None,
        scheduler: Optional[Scheduler] = None,
        common: Optional[CommonRepository] = None,
        max_execution: Optional[float] = None,
        execution_bias: Optional[float] = None,
        stuck_threshold: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        timer_clock: Optional[Callable[[], float]] = None,
    ):
        self.repository = repository
        self.registry = registry
        self.clock = clock or repository.clock or utcnow
        self.scheduler = scheduler or Scheduler(repository, clock=self.clock)
        self.common = common or CommonRepository(repository.session_factory)
        self.max_execution = max_execution if max_execution is not None else (settings.MAX_EXECUTION if settings else 60)
        self.execution_bias = (
            execution_bias if execution_bias is not None else (settings.EXECUTION_BIAS if settings else 75)
        )
        self.stuck_threshold = (
            stuck_threshold if stuck_threshold is not None else (settings.CRON_STUCK_THRESHOLD if settings else 3)
        )
        self.timer_clock = timer_clock

    def make_timer(self) -> Timer:
        return Timer(self.max_execution, self.execution_bias, clock=self.timer_clock)

    # --- tick -----------------------------------------------------------

    def tick(self, timer: Optional[Timer] = None) -> TickResult:
        timer = timer or self.make_timer()
        res = TickResult()

        self.common.set(LAST_EXECUTION_KEY, self.clock().isoformat())
        if self.common.tasks_paused():
            logger.info("Tasks are paused; not running anything this tick.")
            res.paused = True
            return res

        logger.info("Cleaning up stuck tasks")
        res.stuck_cleared = self.scheduler.clear_stuck(self.stuck_threshold)

        attempted: List[int] = []
        while timer.get_time_left() > 0.01:
            task = self.scheduler.next_due(self.clock(), exclude=attempted)
            if task is None:
                logger.info("There are no pending tasks.")
                break
            attempted.append(task.id)

            outcome = self.run_task(task, timer)
            if outcome is None:
                res.skipped += 1
                continue

            res.executed += 1
            res.outcomes.append(outcome)
            if outcome.status == Status.OK:
                res.ok += 1
            elif outcome.status == Status.WILL_RESUME:
                res.resumed += 1
            else:
                res.failed += 1
        return res

    # --- single task ----------------------------------------------------

    def run_task(self, task: Task, timer: Timer) -> Optional[TaskOutcome]:
        """Lock and execute one task. None when another runner holds it."""
        held_since = self.clock()
        if not self.repository.try_lock(task.id, held_since):
            logger.info("Task #%s is already claimed by another runner; skipping", task.id)
            return None

        resumed = task.last_exit_code == int(Status.WILL_RESUME)
        self._log_start(task, resumed)
        self.repository.mark_running(task.id, held_since, now=held_since, resumed=resumed)

        try:
            callback = self.registry.resolve(task.type)
        except UnknownTaskType as exc:
            logger.error("Unknown task type '%s'", task.type)
            return self._finish(task, held_since, Status.NO_ROUTINE, KVBag(_diagnostic(exc)), 0)

        storage = task.storage_bag()
        params = self._callback_params(task)
        failure: Dict[str, Any] = {}
        state = {"held": held_since, "resumed": resumed}

        def step() -> Status:
            storage.set(RESUMED_KEY, state["resumed"])
            logger.debug("Resuming task" if state["resumed"] else "Executing task")
            try:
                ret = callback(storage, params)
            except Exception as exc:
                logger.exception("Task #%s failed with exception %s", task.id, type(exc).__name__)
                failure.update(_diagnostic(exc))
                return Status.EXCEPTION
            finally:
                storage.remove(RESUMED_KEY)
            state["resumed"] = True
            return Status.from_return(ret)

        def keep_going() -> bool:
            # the hard ceiling for the whole tick wins over the task's own budget
            if timer.expired():
                return False
            now = self.clock()
            if not self.repository.refresh_lock(task.id, state["held"], now):
                logger.warning("Task #%s: lock lost while resuming", task.id)
                return False
            state["held"] = now
            return True

        budget = timer.sub_budget(self.execution_bias)
        status, invocations = run_until_settled(step, timer=budget, keep_going=keep_going)

        if failure:
            storage = KVBag(failure)
        return self._finish(task, state["held"], status, storage, invocations)

    def _callback_params(self, task: Task) -> KVBag:
        params = KVBag(task.params)
        params.set("task.id", task.id)
        params.set("task.site_id", task.site_id)
        params.set("task.type", task.type)
        return params.frozen()

    def _log_start(self, task: Task, resumed: bool) -> None:
        description = self.registry.describe(task.type)
        if task.is_system:
            logger.info("System Task #%s (%s)%s", task.id, description, " [resuming]" if resumed else "")
        else:
            logger.info(
                "Site Task #%s (%s) for site #%s%s",
                task.id,
                description,
                task.site_id,
                " [resuming]" if resumed else "",
            )

    def _finish(self, task: Task, held_since: datetime, status: Status, storage: KVBag, invocations: int) -> TaskOutcome:
        if status in (Status.RUNNING, Status.INITIAL_SCHEDULE):
            # not something a callback may report as its outcome
            status = Status.INVALID_EXIT

        finished_at = self.clock()
        changes: Dict[str, Any] = {
            "last_exit_code": int(status),
            "last_run_end": finished_at,
            "locked_at": None,
        }
        run_once = str(task.params_bag().get("run_once") or "").strip().lower()
        delete_after = False

        if status == Status.WILL_RESUME:
            changes["storage"] = storage.to_json()
            logger.info("Task #%s will resume", task.id)
        else:
            changes["times_executed"] = int(task.times_executed or 0) + 1
            changes["next_execution"] = self.scheduler.next_execution(task.cron_expression, finished_at)
            if status == Status.OK:
                changes["storage"] = "{}"
                logger.info("Task #%s finished with status '%s'", task.id, status.for_humans())
                if run_once == "disable":
                    logger.debug("Run Once task: action set to disable; disabling task")
                    changes["enabled"] = False
                elif run_once == "delete":
                    delete_after = True
            else:
                if not storage.has("error"):
                    storage.set("error", f"Task finished with status '{status.for_humans()}'")
                changes["storage"] = storage.to_json()
                changes["times_failed"] = int(task.times_failed or 0) + 1
                logger.warning(
                    "Task #%s finished with status '%s': %s", task.id, status.for_humans(), storage.get("error")
                )
                if run_once:
                    logger.debug("Run Once task: finished with error; disabling task")
                    changes["enabled"] = False

        persisted = self.repository.save_result(task.id, held_since, changes)
        if not persisted:
            logger.error("Task #%s: could not record the outcome; the lock was lost or the task is gone", task.id)
        elif delete_after:
            logger.debug("Run Once task: action set to delete; deleting task")
            self.repository.delete(task.id)

        return TaskOutcome(
            task_id=task.id,
            type=task.type,
            status=status,
            invocations=invocations,
            persisted=persisted,
        )
