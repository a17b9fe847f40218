from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from tickrunner.models.queue import CommonValue


LAST_EXECUTION_KEY = "tickrunner.task.last.execution"
TASKS_PAUSED_KEY = "tickrunner.tasks.paused"


class CommonRepository:
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self.session_factory() as db:
            row = db.get(CommonValue, key)
            return row.value if row is not None else default

    def set(self, key: str, value: Optional[str]) -> None:
        with self.session_factory() as db:
            db.merge(CommonValue(key=key, value=value))
            db.commit()

    def tasks_paused(self) -> bool:
        return (self.get(TASKS_PAUSED_KEY) or "0") == "1"

    def set_tasks_paused(self, paused: bool) -> None:
        self.set(TASKS_PAUSED_KEY, "1" if paused else "0")
