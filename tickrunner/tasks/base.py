from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, Optional

from tickrunner.core.kvbag import KVBag
from tickrunner.core.status import Status
from tickrunner.core.timer import Timer
from tickrunner.queues import QueueFactory, QueueItem, QueueType


# queue items failing this many deliveries are dropped
MAX_ATTEMPTS = 3
RETRY_DELAY = timedelta(minutes=5)


class QueueConsumer:
    """
    Drains one global queue within its own time budget.

    Subclasses implement `handle(item)`; raising from it counts as a
    failed delivery. A failed item goes back to the tail of the queue,
    available again after RETRY_DELAY, until MAX_ATTEMPTS is reached.
    Params: `timelimit` (seconds, default 60) and `bias` (percent, 75).
    """

    queue_type: QueueType = QueueType.MAIL

    def __init__(
        self,
        queue_factory: QueueFactory,
        *,
        logger: Optional[logging.Logger] = None,
        timer_clock: Optional[Callable[[], float]] = None,
    ):
        self.queue_factory = queue_factory
        self.logger = logger or logging.getLogger(f"tasks.{self.queue_type.value}")
        self.timer_clock = timer_clock

    def handle(self, item: QueueItem) -> bool:
        """Deliver one item. False means it was skipped on purpose."""
        raise NotImplementedError

    def __call__(self, storage: KVBag, params: KVBag) -> Status:
        timer = Timer(params.get("timelimit", 60), params.get("bias", 75), clock=self.timer_clock)
        queue = self.queue_factory.make_queue(self.queue_type)

        sent = failed = 0
        while not timer.expired():
            item = queue.pop()
            if item is None:
                break
            try:
                if self.handle(item):
                    sent += 1
            except Exception as exc:
                failed += 1
                self._retry(queue, item, exc)

        self.logger.info("Delivered %d item(s) from the %s queue, %d failed", sent, self.queue_type.value, failed)
        return Status.OK

    def _retry(self, queue, item: QueueItem, exc: Exception) -> None:
        data = item.data if isinstance(item.data, dict) else {"payload": item.data}
        attempts = int(data.get("attempts", 0)) + 1
        if attempts >= MAX_ATTEMPTS:
            self.logger.error("Dropping %s item #%s after %d attempts: %s", self.queue_type.value, item.id, attempts, exc)
            return
        self.logger.warning("Could not deliver %s item #%s (%s); will retry later", self.queue_type.value, item.id, exc)
        data = dict(data, attempts=attempts)
        queue.requeue(QueueItem(data=data, site_id=item.site_id), RETRY_DELAY)
