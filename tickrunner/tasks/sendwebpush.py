from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from tickrunner.queues import QueueFactory, QueueItem, QueueType
from tickrunner.tasks.base import QueueConsumer


class PushSender(Protocol):
    def send(self, subscription: Dict[str, Any], payload: Dict[str, Any]) -> None:
        ...


class HttpPushSender:
    """
    Hands notifications to a push gateway over HTTP:
      POST {url}  {"subscription": {...}, "payload": {...}}
    """

    def __init__(self, url: str, *, timeout: float = 10, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    def send(self, subscription: Dict[str, Any], payload: Dict[str, Any]) -> None:
        if not self.url:
            raise RuntimeError("No push gateway configured (WEBPUSH_URL)")
        body = {"subscription": subscription, "payload": payload}
        if self._client is not None:
            resp = self._client.post(self.url, json=body)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(self.url, json=body)
        resp.raise_for_status()


class SendWebPush(QueueConsumer):
    """sendwebpush: deliver queued push notifications. Item data: {"subscription", "payload"}."""

    queue_type = QueueType.WEBPUSH

    def __init__(
        self,
        queue_factory: QueueFactory,
        sender: PushSender,
        *,
        logger: Optional[logging.Logger] = None,
        timer_clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__(queue_factory, logger=logger or logging.getLogger("tasks.sendwebpush"), timer_clock=timer_clock)
        self.sender = sender

    def handle(self, item: QueueItem) -> bool:
        data = item.data if isinstance(item.data, dict) else {}
        subscription = data.get("subscription")
        if not isinstance(subscription, dict) or not subscription.get("endpoint"):
            self.logger.warning("Push item #%s has no usable subscription; dropping it", item.id)
            return False
        self.sender.send(subscription, data.get("payload") or {})
        return True
