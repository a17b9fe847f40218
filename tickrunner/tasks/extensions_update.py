"""
Per-site update installers.

`extensionsupdate` / `pluginsupdate` tasks consume the site's queue one
item per invocation, returning WILL_RESUME after each item so other due
tasks get a turn. The results gathered in storage (`updateStatus`) are
mailed as a summary once the queue is drained.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx

from tickrunner.core.kvbag import KVBag
from tickrunner.core.status import Status
from tickrunner.models.task import Task
from tickrunner.queues import QueueFactory, QueueItem, QueueType
from tickrunner.repositories.tasks import TaskRepository


class UpdateFailed(Exception):
    def __init__(self, message: str, messages: Optional[List[str]] = None):
        super().__init__(message)
        self.messages = messages or [message]


class UpdateInstaller(Protocol):
    def install(self, site_id: int, extension_id: int) -> List[str]:
        """Install one update; returns the site's messages, raises UpdateFailed."""
        ...


class HttpUpdateInstaller:
    """
    Asks the site to install an update through its API:
      POST {url}  form: eid[]=<id>
      -> {"data": [{"attributes": {"status": bool, "messages": [...]}}]}
    `url_template` may contain `{site_id}`.
    """

    def __init__(
        self,
        url_template: str,
        *,
        token: str = "",
        timeout: float = 60,
        client: Optional[httpx.Client] = None,
    ):
        self.url_template = url_template
        self.token = token
        self.timeout = timeout
        self._client = client

    def _post(self, url: str, data: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, data=data, headers=headers)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(url, data=data, headers=headers)

    def install(self, site_id: int, extension_id: int) -> List[str]:
        if not self.url_template:
            raise UpdateFailed("No update endpoint configured (UPDATE_API_URL)")
        url = self.url_template.format(site_id=site_id)
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            resp = self._post(url, {"eid[]": [str(extension_id)]}, headers)
        except httpx.HTTPError as exc:
            raise UpdateFailed(f"HTTP error: {exc}") from exc

        if resp.status_code >= 400:
            raise UpdateFailed(f"The site replied with HTTP {resp.status_code}", [resp.text])
        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpdateFailed("Invalid JSON reply", [resp.text]) from exc

        items = payload.get("data") if isinstance(payload, dict) else None
        attributes = items[0].get("attributes") if isinstance(items, list) and items and isinstance(items[0], dict) else None
        if not isinstance(attributes, dict):
            raise UpdateFailed("The site returned invalid data", [resp.text])

        messages = [str(m) for m in (attributes.get("messages") or []) if m]
        if not attributes.get("status", True):
            raise UpdateFailed("The site reported a failed update", messages)
        return messages


class ExtensionsUpdate:
    """
    Storage: `updateStatus.<extension id>` = {"status", "messages", "mode"}.
    Params: `task.site_id` (set by the runner), `email_to` (summary recipients).
    """

    label = "Extension"

    def __init__(
        self,
        queue_factory: QueueFactory,
        installer: UpdateInstaller,
        *,
        queue_type: QueueType = QueueType.EXTENSIONS,
        logger: Optional[logging.Logger] = None,
    ):
        self.queue_factory = queue_factory
        self.installer = installer
        self.queue_type = queue_type
        self.logger = logger or logging.getLogger(f"tasks.{queue_type.value}update")

    def __call__(self, storage: KVBag, params: KVBag) -> Status:
        site_id = int(params.get("task.site_id") or 0)
        if not site_id:
            storage.set("error", f"{self.label} updates need a site task")
            return Status.ERROR

        queue = self.queue_factory.make_queue(self.queue_type, site_id)
        item = queue.pop()

        if item is None:
            self.logger.info("%s updates for site #%d: queue empty, done installing updates", self.label, site_id)
            self.enqueue_summary(site_id, storage, params)
            # items scheduled for later do not keep this run alive
            if queue.peek() is None:
                return Status.OK
            # something became available while we were wrapping up
            self.logger.info(
                "%s updates for site #%d: item added before marking ourselves done; will resume", self.label, site_id
            )
            return Status.WILL_RESUME

        self.install(site_id, item, storage)
        return Status.WILL_RESUME

    def install(self, site_id: int, item: QueueItem, storage: KVBag) -> None:
        data = item.data
        raw_id = data.get("id") if isinstance(data, dict) else data
        mode = (data.get("mode") if isinstance(data, dict) else None) or "update"
        try:
            extension_id = int(raw_id or 0)
        except (TypeError, ValueError):
            extension_id = 0

        if extension_id <= 0:
            self.logger.warning("%s updates for site #%d: invalid id %r will be ignored", self.label, site_id, data)
            return

        key = f"updateStatus.{extension_id}"
        if mode == "email":
            self.logger.info(
                "%s updates for site #%d: #%d will be notified by email, not installed", self.label, site_id, extension_id
            )
            storage.set(key, {"status": "email", "messages": [], "mode": mode})
            return

        self.logger.info("%s updates for site #%d: installing update for #%d", self.label, site_id, extension_id)
        try:
            messages = self.installer.install(site_id, extension_id)
        except UpdateFailed as exc:
            self.logger.error("%s updates for site #%d: #%d failed: %s", self.label, site_id, extension_id, exc)
            storage.set(key, {"status": "error", "messages": exc.messages, "mode": mode})
            return
        storage.set(key, {"status": "success", "messages": messages, "mode": mode})

    def enqueue_summary(self, site_id: int, storage: KVBag, params: KVBag) -> None:
        results: Dict[str, Any] = storage.get("updateStatus") or {}
        if not results:
            return

        lines = []
        for ext_id, result in sorted(results.items(), key=lambda kv: int(kv[0])):
            line = f"#{ext_id}: {result.get('status')}"
            if result.get("messages"):
                line += " - " + "; ".join(result["messages"])
            lines.append(line)

        mail = self.queue_factory.make_queue(QueueType.MAIL)
        mail.push(
            {
                "site_id": site_id,
                "subject": f"{self.label} updates for site #{site_id}",
                "body": "\n".join(lines) + "\n",
                "to": params.get("email_to") or [],
            }
        )
        # a later pass must not mail the same results twice
        storage.remove("updateStatus")


class PluginsUpdate(ExtensionsUpdate):
    label = "Plugin"

    def __init__(self, queue_factory: QueueFactory, installer: UpdateInstaller, *, logger: Optional[logging.Logger] = None):
        super().__init__(queue_factory, installer, queue_type=QueueType.PLUGINS, logger=logger)


def enqueue_extension_update(
    queue_factory: QueueFactory,
    *,
    site_id: int,
    extension_id: int,
    mode: str = "update",
    initiating_user: Optional[int] = None,
    queue_type: QueueType = QueueType.EXTENSIONS,
) -> bool:
    """Queue one update for a site. False when the same id is already waiting."""
    queue = queue_factory.make_queue(queue_type, site_id)
    if queue.count_by_condition({"id": extension_id}) > 0:
        return False
    queue.push(
        {
            "id": extension_id,
            "mode": "email" if mode == "email" else "update",
            "initiatingUser": initiating_user,
        },
        "now",
    )
    return True


def schedule_extensions_update(
    repository: TaskRepository,
    *,
    site_id: int,
    at: Optional[datetime] = None,
    force: bool = False,
    task_type: str = "extensionsupdate",
    email_to: Optional[List[str]] = None,
) -> Task:
    """
    Arm the site's run-once update task: right away, or once at `at` (UTC).
    """
    params: Dict[str, Any] = {"force": force}
    if email_to:
        params["email_to"] = email_to

    if at is None:
        return repository.schedule_site_task(
            site_id=site_id, type=task_type, params=params, run_once="disable"
        )

    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    local = at.astimezone(repository.tz)
    expression = f"{local.minute} {local.hour} {local.day} {local.month} *"
    return repository.schedule_site_task(
        site_id=site_id,
        type=task_type,
        cron_expression=expression,
        params=params,
        next_execution=at.astimezone(timezone.utc).replace(tzinfo=None),
        run_once="disable",
    )
