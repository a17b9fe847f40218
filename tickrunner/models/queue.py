from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tickrunner.models.base import Base, UTCDateTime, utcnow


class QueueEntry(Base):
    __tablename__ = "queue"
    __table_args__ = (Index("ix_queue_partition", "queue_type", "site_id", "available_at"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    queue_type: Mapped[str] = mapped_column(String(64), nullable=False)
    site_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    data: Mapped[str] = mapped_column(Text, nullable=False, default="null")

    available_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class CommonValue(Base):
    """Small key/value table for process-wide markers (last tick, paused flag)."""

    __tablename__ = "common"

    key: Mapped[str] = mapped_column(String(190), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=True)
