from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.dialects import mysql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    # MySQL DATETIME doesn't store timezone; keep values naive UTC to avoid driver issues
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Lock ownership is checked by comparing timestamps, so MySQL must keep microseconds.
UTCDateTime = DateTime(timezone=False).with_variant(mysql.DATETIME(fsp=6), "mysql")


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)
