from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Callable, List, Optional, Protocol, Sequence

from tickrunner.core.config import Settings
from tickrunner.queues import QueueFactory, QueueItem, QueueType
from tickrunner.tasks.base import QueueConsumer


class Mailer(Protocol):
    def send(self, *, to: Sequence[str], subject: str, body: str, cc: Sequence[str] = (), html: str = "") -> None:
        ...


class SmtpMailer:
    """Plain SMTP delivery; one connection per message."""

    def __init__(
        self,
        host: str,
        port: int = 25,
        *,
        sender: str,
        user: str = "",
        password: str = "",
        use_tls: bool = False,
        timeout: float = 30,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpMailer":
        return cls(
            settings.MAIL_HOST,
            settings.MAIL_PORT,
            sender=settings.MAIL_FROM,
            user=settings.MAIL_USER,
            password=settings.MAIL_PASSWORD,
            use_tls=settings.MAIL_TLS,
        )

    def build_message(self, *, to: Sequence[str], subject: str, body: str, cc: Sequence[str] = (), html: str = "") -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = ", ".join(to)
        if cc:
            msg["Cc"] = ", ".join(cc)
        msg.set_content(body)
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    def send(self, *, to: Sequence[str], subject: str, body: str, cc: Sequence[str] = (), html: str = "") -> None:
        msg = self.build_message(to=to, subject=subject, body=body, cc=cc, html=html)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.send_message(msg)


def _addresses(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [x.strip() for x in value.split(",") if x.strip()]
    return [str(x).strip() for x in value if str(x).strip()]


class SendMail(QueueConsumer):
    """
    sendmail: deliver queued e-mails.

    Item data: {"subject", "body", "html"?, "to"?, "cc"?}. Items naming no
    recipients go to `default_to`; items with no body are dropped.
    """

    queue_type = QueueType.MAIL

    def __init__(
        self,
        queue_factory: QueueFactory,
        mailer: Mailer,
        *,
        default_to: Sequence[str] = (),
        logger: Optional[logging.Logger] = None,
        timer_clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__(queue_factory, logger=logger or logging.getLogger("tasks.sendmail"), timer_clock=timer_clock)
        self.mailer = mailer
        self.default_to = list(default_to)

    def handle(self, item: QueueItem) -> bool:
        data = item.data if isinstance(item.data, dict) else {}
        site = data.get("site_id", item.site_id)
        subject = str(data.get("subject") or "")
        body = str(data.get("body") or "")
        html = str(data.get("html") or "")
        if not body and not html:
            self.logger.debug("Not sending mail item #%s for site %s; empty body", item.id, site)
            return False

        to = _addresses(data.get("to")) or self.default_to
        if not to:
            self.logger.debug("Not sending mail item #%s for site %s; no recipients", item.id, site)
            return False

        self.logger.info("Sending mail '%s' for site %s", subject, site)
        self.mailer.send(to=to, subject=subject, body=body, cc=_addresses(data.get("cc")), html=html)
        return True
