from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tickrunner.core.kvbag import KVBag
from tickrunner.core.status import Status
from tickrunner.models.base import Base, TimestampMixin, UTCDateTime


class Task(TimestampMixin, Base):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_due", "enabled", "next_execution"),
        Index("ix_tasks_site_type", "site_id", "type"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    # 0 = system task, otherwise the monitored site this task belongs to
    site_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    type: Mapped[str] = mapped_column(String(255), nullable=False)
    cron_expression: Mapped[str] = mapped_column(String(255), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_exit_code: Mapped[int] = mapped_column(Integer, nullable=False, default=int(Status.INITIAL_SCHEDULE))
    last_execution: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_run_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_execution: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    times_executed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # non-null while a runner owns the task
    locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)

    # JSON documents, see KVBag
    params: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    storage: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    @property
    def is_system(self) -> bool:
        return not self.site_id

    @property
    def status(self) -> Status:
        return Status.try_from(self.last_exit_code) or Status.INVALID_EXIT

    def params_bag(self) -> KVBag:
        return KVBag.from_json(self.params, readonly=True)

    def storage_bag(self) -> KVBag:
        return KVBag.from_json(self.storage)

    def __repr__(self) -> str:
        return f"<Task #{self.id} {self.type} site={self.site_id} cron='{self.cron_expression}'>"
