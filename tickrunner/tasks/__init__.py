from __future__ import annotations

from typing import Optional

from sqlalchemy.engine import Engine

from tickrunner.core.config import Settings
from tickrunner.queues import QueueFactory
from tickrunner.registry import TaskRegistry
from tickrunner.tasks.dbbackup import DatabaseBackup
from tickrunner.tasks.extensions_update import (
    ExtensionsUpdate,
    HttpUpdateInstaller,
    PluginsUpdate,
    UpdateInstaller,
)
from tickrunner.tasks.logrotate import LogRotate
from tickrunner.tasks.sendmail import Mailer, SendMail, SmtpMailer
from tickrunner.tasks.sendwebpush import HttpPushSender, PushSender, SendWebPush


def register_default_tasks(
    registry: TaskRegistry,
    *,
    engine: Engine,
    settings: Settings,
    queue_factory: QueueFactory,
    mailer: Optional[Mailer] = None,
    push_sender: Optional[PushSender] = None,
    installer: Optional[UpdateInstaller] = None,
) -> TaskRegistry:
    """Register the built-in task types. Collaborators default to the configured SMTP / HTTP ones."""
    mailer = mailer or SmtpMailer.from_settings(settings)
    push_sender = push_sender or HttpPushSender(settings.WEBPUSH_URL)
    installer = installer or HttpUpdateInstaller(settings.UPDATE_API_URL, token=settings.UPDATE_API_TOKEN)

    registry.register("dbbackup", DatabaseBackup(engine, settings), description="Database backup")
    registry.register(
        "sendmail", SendMail(queue_factory, mailer, default_to=settings.MAIL_TO), description="Send queued e-mails"
    )
    registry.register("sendwebpush", SendWebPush(queue_factory, push_sender), description="Send push notifications")
    registry.register(
        "extensionsupdate", ExtensionsUpdate(queue_factory, installer), description="Install extension updates"
    )
    registry.register("pluginsupdate", PluginsUpdate(queue_factory, installer), description="Install plugin updates")
    registry.register("logrotate", LogRotate(settings.LOG_PATH), description="Rotate log files")
    return registry
