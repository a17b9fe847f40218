from __future__ import annotations

import argparse
import json
import logging
import socket
import sys
import time
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from tickrunner.container import Container, build_container
from tickrunner.core.exceptions import InvalidCronExpression, TaskNotFound
from tickrunner.core.kvbag import KVBag
from tickrunner.dbutils.export import DatabaseExport
from tickrunner.fsm import run_until_settled
from tickrunner.models.base import Base
from tickrunner.runner import TickResult
from tickrunner.tasks.dbbackup import STORAGE_KEY, backup_filename


logger = logging.getLogger("tickrunner-cli")

EXIT_OK = 0
EXIT_TASK_FAILED = 1
EXIT_STORAGE_FAILED = 2


def _log_tick(res: TickResult) -> None:
    logger.info(
        "tick stuck=%s executed=%s ok=%s resumed=%s failed=%s skipped=%s",
        res.stuck_cleared,
        res.executed,
        res.ok,
        res.resumed,
        res.failed,
        res.skipped,
    )


def cmd_task_run(args: argparse.Namespace, c: Container) -> int:
    logger.info("starting task runner on %s (max_execution=%ss)", socket.gethostname(), c.runner.max_execution)
    if args.once:
        try:
            res = c.runner.tick()
        except SQLAlchemyError:
            logger.exception("tick failed")
            return EXIT_STORAGE_FAILED
        _log_tick(res)
        return EXIT_TASK_FAILED if res.any_failed else EXIT_OK

    while True:
        try:
            res = c.runner.tick()
            if res.executed or res.stuck_cleared:
                _log_tick(res)
        except Exception:
            logger.exception("tick failed")
        time.sleep(max(1, int(args.poll)))


def cmd_task_list(args: argparse.Namespace, c: Container) -> int:
    tasks = c.tasks.list(site_id=args.site_id)
    if args.format == "json":
        rows = [
            {
                "id": t.id,
                "site_id": t.site_id,
                "type": t.type,
                "cron_expression": t.cron_expression,
                "enabled": bool(t.enabled),
                "priority": t.priority,
                "status": t.status.for_humans(),
                "last_execution": t.last_execution.isoformat() if t.last_execution else None,
                "next_execution": t.next_execution.isoformat() if t.next_execution else None,
                "times_executed": t.times_executed,
                "times_failed": t.times_failed,
            }
            for t in tasks
        ]
        print(json.dumps(rows, indent=2))
        return EXIT_OK

    print(f"{'ID':>5}  {'SITE':>5}  {'TYPE':<20} {'CRON':<16} {'ON':<3} {'STATUS':<22} NEXT (UTC)")
    for t in tasks:
        nxt = t.next_execution.strftime("%Y-%m-%d %H:%M") if t.next_execution else "-"
        print(
            f"{t.id:>5}  {t.site_id:>5}  {t.type:<20} {t.cron_expression:<16} "
            f"{'yes' if t.enabled else 'no':<3} {t.status.for_humans():<22} {nxt}"
        )
    return EXIT_OK


def cmd_task_create(args: argparse.Namespace, c: Container) -> int:
    if not c.registry.has(args.type):
        logger.error("Unknown task type '%s' (known: %s)", args.type, ", ".join(c.registry.types()))
        return EXIT_TASK_FAILED
    try:
        params = KVBag(args.params or None)
    except ValueError as e:
        logger.error("Invalid --params JSON: %s", e)
        return EXIT_TASK_FAILED
    try:
        task = c.tasks.create(
            args.type,
            args.cron,
            site_id=args.site_id,
            priority=args.priority,
            enabled=not args.disabled,
            params=params,
        )
    except InvalidCronExpression as e:
        logger.error("%s", e)
        return EXIT_TASK_FAILED
    print(f"Created task #{task.id}; next execution {task.next_execution} UTC")
    return EXIT_OK


def _toggle(enabled: bool) -> Callable[[argparse.Namespace, Container], int]:
    def handler(args: argparse.Namespace, c: Container) -> int:
        try:
            c.tasks.update(args.id, enabled=enabled)
        except TaskNotFound as e:
            logger.error("%s", e)
            return EXIT_TASK_FAILED
        print(f"Task #{args.id} {'enabled' if enabled else 'disabled'}")
        return EXIT_OK

    return handler


def cmd_task_delete(args: argparse.Namespace, c: Container) -> int:
    if not c.tasks.delete(args.id):
        logger.error("Task #%s not found", args.id)
        return EXIT_TASK_FAILED
    print(f"Task #{args.id} deleted")
    return EXIT_OK


def cmd_db_backup(args: argparse.Namespace, c: Container) -> int:
    """Pause the task runner, wait for running tasks, export in process, resume."""
    c.common.set_tasks_paused(True)
    try:
        deadline = time.monotonic() + max(0, args.wait)
        while c.tasks.are_tasks_running():
            if time.monotonic() >= deadline:
                logger.error("Tasks are still running after %ss; not taking a backup", args.wait)
                return EXIT_TASK_FAILED
            logger.info("Waiting for running tasks to finish")
            time.sleep(1)

        export = DatabaseExport(
            args.output or backup_filename(c.settings.DBBACKUP_PATH),
            c.engine,
            compress=args.compress,
            compress_default=c.settings.DBBACKUP_COMPRESS,
            max_files=c.settings.DBBACKUP_MAXFILES,
        )
        storage = KVBag()
        status, steps = run_until_settled(lambda: export.step_into(storage, STORAGE_KEY), max_iterations=None)
        logger.info("Database export finished with status '%s' after %d step(s)", status.for_humans(), steps)
        print(export.final_filename)
        return EXIT_OK
    finally:
        c.common.set_tasks_paused(False)


def cmd_db_init(args: argparse.Namespace, c: Container) -> int:
    Base.metadata.create_all(c.engine)
    print("Tables created")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tickrunner", description="tickrunner resumable cron task engine")
    parser.add_argument("--log-level", type=str, default=None, help="Overrides LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("task:run", help="Run due tasks")
    p.add_argument("--once", action="store_true", help="Run one tick and exit")
    p.add_argument("--poll", type=int, default=60, help="Seconds between ticks (loop mode)")
    p.set_defaults(handler=cmd_task_run)

    p = sub.add_parser("task:list", help="List tasks")
    p.add_argument("--format", choices=("table", "json"), default="table")
    p.add_argument("--site-id", type=int, default=None)
    p.set_defaults(handler=cmd_task_list)

    p = sub.add_parser("task:create", help="Create a task")
    p.add_argument("type")
    p.add_argument("cron", help="5-field CRON expression, quoted")
    p.add_argument("--site-id", type=int, default=0)
    p.add_argument("--priority", type=int, default=0)
    p.add_argument("--params", type=str, default="", help="JSON object")
    p.add_argument("--disabled", action="store_true")
    p.set_defaults(handler=cmd_task_create)

    for name, handler in (("task:enable", _toggle(True)), ("task:disable", _toggle(False)), ("task:delete", cmd_task_delete)):
        p = sub.add_parser(name)
        p.add_argument("id", type=int)
        p.set_defaults(handler=handler)

    p = sub.add_parser("db:backup", help="Export the database now")
    p.add_argument("--compress", dest="compress", action="store_true", default=None)
    p.add_argument("--no-compress", dest="compress", action="store_false")
    p.add_argument("--output", type=str, default="")
    p.add_argument("--wait", type=int, default=300, help="Max seconds to wait for running tasks")
    p.set_defaults(handler=cmd_db_backup)

    p = sub.add_parser("db:init", help="Create the tables (development)")
    p.set_defaults(handler=cmd_db_init)
    return parser


def main(argv: Optional[List[str]] = None, container: Optional[Container] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        c = container or build_container()
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return EXIT_STORAGE_FAILED

    level = args.log_level or c.settings.LOG_LEVEL
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        return args.handler(args, c)
    except SQLAlchemyError:
        logger.exception("storage failure")
        return EXIT_STORAGE_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
