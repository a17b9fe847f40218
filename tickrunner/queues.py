from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import asc, delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from tickrunner.core.cron import to_utc_naive
from tickrunner.models.base import utcnow
from tickrunner.models.queue import QueueEntry


logger = logging.getLogger("task-queue")

Whence = Union[None, str, int, float, datetime, timedelta]

# a pop that keeps losing races gives up and reports "empty" for this call
_POP_ATTEMPTS = 10


class QueueType(str, Enum):
    MAIL = "mail"
    WEBPUSH = "webpush"
    EXTENSIONS = "extensions"
    PLUGINS = "plugins"
    EXTENSION_INSTALL = "extensioninstall"


@dataclass
class QueueItem:
    data: Any
    queue_type: Optional[str] = None
    site_id: Optional[int] = None
    id: Optional[int] = None
    available_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def to_json(self) -> str:
        return json.dumps({"queueType": self.queue_type, "siteId": self.site_id, "data": self.data}, default=str)

    @classmethod
    def from_json(cls, text: str) -> "QueueItem":
        raw = json.loads(text)
        return cls(data=raw.get("data"), queue_type=raw.get("queueType"), site_id=raw.get("siteId"))

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "QueueItem":
        return cls(
            data=json.loads(entry.data) if entry.data else None,
            queue_type=entry.queue_type,
            site_id=entry.site_id,
            id=entry.id,
            available_at=entry.available_at,
            created_at=entry.created_at,
        )

    def get(self, path: str, default: Any = None) -> Any:
        """Dotted-path lookup inside `data`; a leading `data.` is accepted."""
        if path.startswith("data."):
            path = path[5:]
        node = self.data
        for part in path.split("."):
            if isinstance(node, dict) and part in node:
                node = node[part]
            else:
                return default
        return node


def _queue_name(queue_type: Union[str, QueueType]) -> str:
    value = queue_type.value if isinstance(queue_type, QueueType) else str(queue_type)
    value = value.strip().lower()
    if not value:
        raise ValueError("queue type must not be empty")
    return value


class SqlQueue:
    """
    One FIFO partition `(queue_type, site_id)` of the `queue` table.

    `pop` is destructive and claims an item by deleting its row: an item
    is handed out only when *this* DELETE removed it, so two concurrent
    pops never return the same item.
    """

    def __init__(
        self,
        queue_type: Union[str, QueueType],
        session_factory: sessionmaker[Session],
        *,
        site_id: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue_type = _queue_name(queue_type)
        self.site_id = site_id
        self.session_factory = session_factory
        self.clock = clock

    def __repr__(self) -> str:
        return f"<SqlQueue {self.queue_type} site={self.site_id}>"

    def _partition(self):
        site_cond = QueueEntry.site_id.is_(None) if self.site_id is None else QueueEntry.site_id == self.site_id
        return (QueueEntry.queue_type == self.queue_type, site_cond)

    def normalise_time(self, whence: Whence) -> datetime:
        now = self.clock()
        if whence is None or (isinstance(whence, str) and whence.strip().lower() in ("", "now")):
            return now
        if isinstance(whence, datetime):
            return to_utc_naive(whence)
        if isinstance(whence, timedelta):
            return now + whence
        if isinstance(whence, (int, float)) and not isinstance(whence, bool):
            return datetime.fromtimestamp(whence, tz=timezone.utc).replace(tzinfo=None)
        if isinstance(whence, str):
            try:
                return to_utc_naive(datetime.fromisoformat(whence.strip()))
            except ValueError:
                logger.warning("unparseable queue time %r; using now", whence)
        return now

    def push(self, item: Union[QueueItem, Any], whence: Whence = None) -> QueueItem:
        if not isinstance(item, QueueItem):
            item = QueueItem(data=item)
        item.queue_type = self.queue_type
        item.site_id = self.site_id
        now = self.clock()
        entry = QueueEntry(
            queue_type=self.queue_type,
            site_id=self.site_id,
            data=json.dumps(item.data, default=str),
            available_at=self.normalise_time(whence),
            created_at=now,
        )
        with self.session_factory() as db:
            db.add(entry)
            db.commit()
            db.refresh(entry)
        item.id = entry.id
        item.available_at = entry.available_at
        item.created_at = entry.created_at
        logger.debug("pushed item #%s to %r", entry.id, self)
        return item

    def _head_query(self, now: datetime):
        return (
            select(QueueEntry)
            .where(*self._partition(), QueueEntry.available_at <= now)
            .order_by(asc(QueueEntry.available_at), asc(QueueEntry.id))
            .limit(1)
        )

    def peek(self) -> Optional[QueueItem]:
        with self.session_factory() as db:
            entry = db.execute(self._head_query(self.clock())).scalar_one_or_none()
            return QueueItem.from_entry(entry) if entry else None

    def pop(self) -> Optional[QueueItem]:
        now = self.clock()
        for _ in range(_POP_ATTEMPTS):
            with self.session_factory() as db:
                entry = db.execute(self._head_query(now).with_for_update(skip_locked=True)).scalar_one_or_none()
                if entry is None:
                    db.rollback()
                    return None
                item = QueueItem.from_entry(entry)
                res = db.execute(delete(QueueEntry).where(QueueEntry.id == entry.id))
                db.commit()
                if res.rowcount == 1:
                    return item
            logger.debug("lost the race for queue item #%s on %r; retrying", item.id, self)
        return None

    def requeue(self, item: QueueItem, whence: Whence = None) -> QueueItem:
        """Put a popped item back (at the tail) after a failed attempt."""
        return self.push(QueueItem(data=item.data), whence)

    def _matching_ids(self, db: Session, conditions: Dict[str, Any]) -> List[int]:
        ids: List[int] = []
        for entry in db.execute(select(QueueEntry).where(*self._partition())).scalars():
            item = QueueItem.from_entry(entry)
            if all(item.get(key, _NO_MATCH) == value for key, value in conditions.items()):
                ids.append(entry.id)
        return ids

    @staticmethod
    def _clean_conditions(conditions: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        # the partition already pins these
        return {k: v for k, v in (conditions or {}).items() if k not in ("queueType", "queue_type", "siteId", "site_id")}

    def clear(self, conditions: Optional[Dict[str, Any]] = None) -> int:
        conditions = self._clean_conditions(conditions)
        with self.session_factory() as db:
            if not conditions:
                res = db.execute(delete(QueueEntry).where(*self._partition()))
                db.commit()
                return int(res.rowcount or 0)
            ids = self._matching_ids(db, conditions)
            if not ids:
                return 0
            res = db.execute(delete(QueueEntry).where(QueueEntry.id.in_(ids)))
            db.commit()
            return int(res.rowcount or 0)

    def count(self) -> int:
        with self.session_factory() as db:
            return int(
                db.execute(select(func.count()).select_from(QueueEntry).where(*self._partition())).scalar_one() or 0
            )

    def count_by_condition(self, conditions: Optional[Dict[str, Any]] = None) -> int:
        conditions = self._clean_conditions(conditions)
        if not conditions:
            return self.count()
        with self.session_factory() as db:
            return len(self._matching_ids(db, conditions))


_NO_MATCH = object()


class QueueFactory:
    def __init__(self, session_factory: sessionmaker[Session], *, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def make_queue(self, queue_type: Union[str, QueueType], site_id: Optional[int] = None) -> SqlQueue:
        return SqlQueue(queue_type, self.session_factory, site_id=site_id, clock=self.clock)
