from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from tickrunner.core.exceptions import InvalidCronExpression, TaskNotFound
from tickrunner.core.status import Status
from tickrunner.repositories.tasks import STUCK_MESSAGE
from tickrunner.scheduler import Scheduler


class TestCreate:
    def test_initial_schedule_is_seeded_from_previous_tick(self, repository):
        """Created at 00:00:30: last execution 00:00, first run 00:01."""
        task = repository.create("noop", "* * * * *")
        assert task.last_execution == datetime(2024, 1, 1, 0, 0, 0)
        assert task.next_execution == datetime(2024, 1, 1, 0, 1, 0)
        assert task.last_exit_code == int(Status.INITIAL_SCHEDULE)
        assert task.times_executed == 0
        assert task.locked_at is None

    def test_invalid_cron_rejected(self, repository):
        """Nothing is written for an invalid expression."""
        with pytest.raises(InvalidCronExpression):
            repository.create("noop", "* * *")
        assert repository.list() == []

    def test_type_is_normalised(self, repository):
        """Types are stored lower case."""
        assert repository.create(" DBBackup ", "0 0 * * *").type == "dbbackup"

    def test_explicit_next_execution_is_kept(self, repository, clock):
        """A caller-provided first run overrides the seeded one."""
        task = repository.create("noop", "0 0 * * *", next_execution=clock())
        assert task.next_execution == clock()


class TestLookupAndUpdate:
    def test_get_missing_raises(self, repository):
        """Unknown ids raise TaskNotFound."""
        with pytest.raises(TaskNotFound):
            repository.get(999)

    def test_cron_change_recomputes_next_execution(self, repository, clock):
        """A new expression reschedules from now."""
        task = repository.create("noop", "* * * * *")
        updated = repository.update(task.id, cron_expression="0 12 * * *")
        assert updated.next_execution == datetime(2024, 1, 1, 12, 0)

    def test_edits_keep_a_held_lock(self, repository, clock):
        """Editing a running task never lets a second runner claim it."""
        task = repository.create("noop", "* * * * *", site_id=4, next_execution=clock())
        held = clock()
        assert repository.try_lock(task.id, held)

        assert repository.update(task.id, priority=5).locked_at == held
        assert repository.run_now(task.id).locked_at == held
        assert repository.schedule_site_task(site_id=4, type="noop").locked_at == held
        assert not repository.try_lock(task.id, clock())
        assert repository.save_result(task.id, held, {"locked_at": None})

    def test_update_rejects_unknown_fields(self, repository):
        """Counters and lock columns are not editable."""
        task = repository.create("noop", "* * * * *")
        with pytest.raises(TypeError):
            repository.update(task.id, times_failed=0)

    def test_find_and_list(self, repository):
        """Tasks are found by (site, type) and filtered by site."""
        repository.create("noop", "* * * * *", site_id=3)
        repository.create("noop", "* * * * *")
        assert repository.find(site_id=3, type="NOOP").site_id == 3
        assert repository.find(site_id=4, type="noop") is None
        assert len(repository.list(site_id=0)) == 1

    def test_run_now(self, repository, clock):
        """run_now makes a task due immediately."""
        task = repository.create("noop", "0 0 1 1 *")
        assert repository.run_now(task.id).next_execution == clock()

    def test_schedule_site_task_resets_existing(self, repository, clock):
        """The (site, type) task is re-armed, not duplicated."""
        first = repository.schedule_site_task(site_id=7, type="extensionsupdate", run_once="disable")
        repository.update(first.id, enabled=False, storage={"leftover": 1})
        again = repository.schedule_site_task(site_id=7, type="extensionsupdate", run_once="disable")
        assert again.id == first.id
        assert again.enabled
        assert again.storage_bag().to_dict() == {}
        assert again.params_bag().get("run_once") == "disable"
        assert again.next_execution == clock()
        assert len(repository.list(site_id=7)) == 1


class TestLocking:
    def test_only_one_lock_wins(self, repository, clock):
        """The conditional UPDATE admits exactly one claimant."""
        task = repository.create("noop", "* * * * *", next_execution=clock())
        assert repository.try_lock(task.id, clock())
        assert not repository.try_lock(task.id, clock())

    def test_cannot_lock_disabled_or_not_due(self, repository, clock):
        """Disabled and future tasks are never claimed."""
        off = repository.create("noop", "* * * * *", enabled=False, next_execution=clock())
        later = repository.create("noop", "* * * * *")
        assert not repository.try_lock(off.id, clock())
        assert not repository.try_lock(later.id, clock())

    def test_save_result_requires_lock_ownership(self, repository, clock):
        """A stale owner cannot overwrite the row."""
        task = repository.create("noop", "* * * * *", next_execution=clock())
        held = clock()
        assert repository.try_lock(task.id, held)
        assert not repository.save_result(task.id, held + timedelta(seconds=1), {"priority": 9})
        assert repository.save_result(task.id, held, {"priority": 9, "locked_at": None})
        assert repository.get(task.id).priority == 9

    def test_are_tasks_running(self, repository, clock):
        """True while any lock is held."""
        task = repository.create("noop", "* * * * *", next_execution=clock())
        assert not repository.are_tasks_running()
        repository.try_lock(task.id, clock())
        assert repository.are_tasks_running()
        repository.release(task.id)
        assert not repository.are_tasks_running()


class TestStuckSweep:
    def test_old_lock_is_cleared_and_counted_as_failure(self, repository, clock):
        """A lock older than the threshold is released with an EXCEPTION outcome."""
        task = repository.create("noop", "* * * * *", next_execution=clock())
        repository.try_lock(task.id, clock())
        clock.advance(minutes=5)

        assert repository.clean_up_stuck(3, clock()) == 1

        swept = repository.get(task.id)
        assert swept.locked_at is None
        assert swept.last_exit_code == int(Status.EXCEPTION)
        assert swept.times_failed == 1
        assert swept.storage_bag().get("error") == STUCK_MESSAGE
        assert swept.next_execution > clock()

    def test_recent_lock_survives(self, repository, clock):
        """A lock younger than the threshold is left alone."""
        task = repository.create("noop", "* * * * *", next_execution=clock())
        repository.try_lock(task.id, clock())
        clock.advance(minutes=2)
        assert repository.clean_up_stuck(3, clock()) == 0
        assert repository.get(task.id).locked_at is not None

    def test_threshold_never_below_three_minutes(self, repository, clock):
        """A threshold of one minute behaves like three."""
        task = repository.create("noop", "* * * * *", next_execution=clock())
        repository.try_lock(task.id, clock())
        clock.advance(minutes=2)
        assert repository.clean_up_stuck(1, clock()) == 0


class TestScheduler:
    def test_due_ordering(self, repository, clock):
        """Lower priority value first, then the most overdue."""
        clock.set(datetime(2024, 1, 1, 0, 10))
        late = repository.create("noop", "* * * * *", next_execution=datetime(2024, 1, 1, 0, 5))
        early = repository.create("noop", "* * * * *", next_execution=datetime(2024, 1, 1, 0, 2))
        urgent = repository.create("noop", "* * * * *", priority=-1, next_execution=datetime(2024, 1, 1, 0, 9))
        repository.create("noop", "* * * * *", next_execution=datetime(2024, 1, 1, 0, 11))

        scheduler = Scheduler(repository)
        assert [t.id for t in scheduler.due_tasks()] == [urgent.id, early.id, late.id]
        assert scheduler.next_due(exclude=[urgent.id]).id == early.id

    def test_select_sweeps_before_selecting(self, repository, clock):
        """A stuck task becomes selectable in the same pass once its next run is due."""
        task = repository.create("noop", "* * * * *", next_execution=clock())
        repository.try_lock(task.id, clock())
        clock.advance(minutes=10)
        scheduler = Scheduler(repository)
        assert scheduler.select(3) == []
        clock.advance(minutes=1)
        assert [t.id for t in scheduler.due_tasks()] == [task.id]
