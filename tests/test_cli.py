from __future__ import annotations

import gzip
import json

from tickrunner.cli import EXIT_OK, EXIT_TASK_FAILED, main
from tickrunner.core.status import Status


def _register_noop(container):
    container.registry.register("noop", lambda storage, params: Status.OK)


def test_create_and_list(container, capsys):
    """task:create stores the task; task:list --format json shows it."""
    _register_noop(container)
    assert main(["task:create", "noop", "*/5 * * * *", "--site-id", "3", "--params", '{"x": 1}'], container=container) == EXIT_OK
    capsys.readouterr()

    assert main(["task:list", "--format", "json"], container=container) == EXIT_OK
    rows = json.loads(capsys.readouterr().out)
    assert len(rows) == 1
    assert rows[0]["type"] == "noop"
    assert rows[0]["site_id"] == 3
    assert rows[0]["cron_expression"] == "*/5 * * * *"
    assert container.tasks.get(rows[0]["id"]).params_bag().get("x") == 1


def test_create_rejects_bad_input(container):
    """Unknown types, bad cron and bad JSON all fail without writing."""
    _register_noop(container)
    assert main(["task:create", "mystery", "* * * * *"], container=container) == EXIT_TASK_FAILED
    assert main(["task:create", "noop", "* * *"], container=container) == EXIT_TASK_FAILED
    assert main(["task:create", "noop", "* * * * *", "--params", "{oops"], container=container) == EXIT_TASK_FAILED
    assert container.tasks.list() == []


def test_table_listing(container, capsys):
    """The default listing is a table with a header."""
    _register_noop(container)
    container.tasks.create("noop", "* * * * *")
    assert main(["task:list"], container=container) == EXIT_OK
    out = capsys.readouterr().out.splitlines()
    assert out[0].split()[:3] == ["ID", "SITE", "TYPE"]
    assert "noop" in out[1]


def test_enable_disable_delete(container):
    """Toggling and deleting by id; unknown ids fail."""
    _register_noop(container)
    task = container.tasks.create("noop", "* * * * *")
    assert main(["task:disable", str(task.id)], container=container) == EXIT_OK
    assert not container.tasks.get(task.id).enabled
    assert main(["task:enable", str(task.id)], container=container) == EXIT_OK
    assert container.tasks.get(task.id).enabled
    assert main(["task:delete", str(task.id)], container=container) == EXIT_OK
    assert main(["task:delete", str(task.id)], container=container) == EXIT_TASK_FAILED
    assert main(["task:enable", "999"], container=container) == EXIT_TASK_FAILED


def test_run_once_exit_codes(container, clock):
    """A clean tick exits 0; a failed task exits 1."""
    _register_noop(container)
    container.tasks.create("noop", "* * * * *", next_execution=clock())
    assert main(["task:run", "--once"], container=container) == EXIT_OK

    container.registry.register("bad", lambda storage, params: Status.ERROR)
    container.tasks.create("bad", "* * * * *", next_execution=clock())
    assert main(["task:run", "--once"], container=container) == EXIT_TASK_FAILED


def test_db_init(container, capsys):
    """db:init is idempotent on an existing schema."""
    assert main(["db:init"], container=container) == EXIT_OK
    assert "Tables created" in capsys.readouterr().out


def test_db_backup(container, tmp_path, capsys):
    """db:backup exports in one go and unpauses the runner afterwards."""
    _register_noop(container)
    container.tasks.create("noop", "* * * * *")
    target = tmp_path / "manual.sql"

    assert main(["db:backup", "--output", str(target)], container=container) == EXIT_OK

    written = capsys.readouterr().out.strip().splitlines()[-1]
    assert written == str(target) + ".gz"
    assert "'noop'" in gzip.decompress(open(written, "rb").read()).decode("utf-8")
    assert not container.common.tasks_paused()


def test_db_backup_waits_for_running_tasks(container, clock):
    """A task holding its lock past --wait aborts the backup."""
    _register_noop(container)
    task = container.tasks.create("noop", "* * * * *", next_execution=clock())
    container.tasks.try_lock(task.id, clock())
    assert main(["db:backup", "--wait", "0"], container=container) == EXIT_TASK_FAILED
    assert not container.common.tasks_paused()
