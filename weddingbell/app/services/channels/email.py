"""
Email channel: SMTP delivery in BCC batches.

``smtplib`` is blocking, so each batch is sent from a worker thread.
"""

import asyncio
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Callable, Dict, List, Optional

from weddingbell.app.models.domain.notification import Channel, Notification
from weddingbell.app.repositories.interfaces import UserRepository
from weddingbell.app.services.channels.base import ChannelSender, SendReport
from weddingbell.app.utils.logging import get_logger
from weddingbell.config.settings import EmailSettings, RetryPolicy

logger = get_logger(__name__)


class EmailSender(ChannelSender):
    """Sends multipart/alternative mail with recipients hidden in BCC."""

    channel = Channel.EMAIL.value

    def __init__(
        self,
        user_repository: UserRepository,
        settings: Optional[EmailSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None,
        **kwargs
    ):
        super().__init__(retry_policy, **kwargs)
        self.user_repository = user_repository
        self.settings = settings or EmailSettings()
        self._smtp_factory = smtp_factory or smtplib.SMTP

    def build_message(self, notification: Notification, payload: Dict[str, Any]) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = payload.get("subject") or notification.title
        message["From"] = formataddr((self.settings.from_name, self.settings.from_address))
        message["To"] = formataddr(("Undisclosed recipients", self.settings.from_address))
        message["Message-ID"] = make_msgid(domain=self.settings.from_address.split("@")[-1])
        message["X-Message-ID"] = notification.id
        message["X-Category"] = notification.type
        if notification.wedding_id:
            message["X-Wedding-ID"] = str(notification.wedding_id)
        for name, value in (payload.get("headers") or {}).items():
            if name not in message:
                message[name] = str(value)

        message.set_content(payload.get("text") or notification.body or notification.title)
        if payload.get("html"):
            message.add_alternative(payload["html"], subtype="html")
        return message

    def batches(self, addresses: List[str]) -> List[List[str]]:
        size = self.settings.batch_size
        return [addresses[i:i + size] for i in range(0, len(addresses), size)]

    def _send_batch(self, message: EmailMessage, addresses: List[str]) -> Dict[str, Any]:
        settings = self.settings
        with self._smtp_factory(settings.smtp_host, settings.smtp_port, timeout=settings.timeout_seconds) as smtp:
            if settings.use_tls:
                smtp.starttls()
            if settings.smtp_user and settings.smtp_password:
                smtp.login(settings.smtp_user, settings.smtp_password)
            return smtp.send_message(message, to_addrs=addresses) or {}

    async def send(
        self,
        notification: Notification,
        payload: Dict[str, Any],
        recipients: List[str]
    ) -> SendReport:
        report = SendReport()
        owners: Dict[str, str] = {}

        for user_id in recipients:
            contact = await self.user_repository.get_contact(user_id)
            address = (contact or {}).get("email")
            if not address:
                report.permanent[user_id] = "no email address"
                continue
            owners[address] = user_id

        if not owners:
            return report

        message = self.build_message(notification, payload)
        for batch in self.batches(list(owners)):
            try:
                refused = await asyncio.to_thread(self._send_batch, message, batch)
            except smtplib.SMTPRecipientsRefused as e:
                refused = e.recipients
            except (smtplib.SMTPException, OSError) as e:
                report.fail_all([owners[address] for address in batch], f"SMTP error: {e}")
                logger.warning(
                    "Email batch failed",
                    notification_id=notification.id,
                    batch_size=len(batch),
                    error=str(e)
                )
                continue

            for address in batch:
                if address in refused:
                    report.permanent[owners[address]] = f"address refused: {refused[address]}"
                else:
                    report.delivered.append(owners[address])

        if report.delivered:
            report.message_ids.append(message["Message-ID"])
        logger.info(
            "Email sent",
            notification_id=notification.id,
            delivered=len(report.delivered),
            batches=len(self.batches(list(owners)))
        )
        return report
