"""
SMS channel: Twilio delivery, one message per recipient.
"""

import asyncio
from typing import Any, Dict, List, Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from weddingbell.app.core.exceptions import ErrorCode, PermanentDeliveryError
from weddingbell.app.models.domain.notification import Channel, Notification
from weddingbell.app.repositories.interfaces import UserRepository
from weddingbell.app.services.channels.base import ChannelSender, SendReport
from weddingbell.app.utils.logging import get_logger
from weddingbell.config.settings import RetryPolicy, SMSSettings

logger = get_logger(__name__)

# Twilio error codes for numbers that will never accept a message
PERMANENT_ERROR_CODES = {21211, 21214, 21408, 21610, 21612, 21614}


class SMSSender(ChannelSender):
    """Sends the rendered text to each recipient's phone number."""

    channel = Channel.SMS.value

    def __init__(
        self,
        user_repository: UserRepository,
        settings: Optional[SMSSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[Client] = None,
        **kwargs
    ):
        super().__init__(retry_policy, **kwargs)
        self.user_repository = user_repository
        self.settings = settings or SMSSettings()
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            if not (self.settings.account_sid and self.settings.auth_token):
                raise PermanentDeliveryError(
                    "Twilio credentials are not configured",
                    error_code=ErrorCode.NOTIFICATION_CHANNEL_UNAVAILABLE,
                    channel=self.channel
                )
            self._client = Client(self.settings.account_sid, self.settings.auth_token)
        return self._client

    def _text(self, notification: Notification, payload: Dict[str, Any]) -> str:
        text = payload.get("text") or notification.title
        max_length = self.settings.max_length
        if len(text) > max_length:
            text = text[:max_length - 3] + "..."
        return text

    def _create_message(self, to: str, body: str) -> str:
        message = self.client.messages.create(to=to, from_=self.settings.from_number, body=body)
        return message.sid

    async def send(
        self,
        notification: Notification,
        payload: Dict[str, Any],
        recipients: List[str]
    ) -> SendReport:
        body = self._text(notification, payload)
        report = SendReport()

        for user_id in recipients:
            contact = await self.user_repository.get_contact(user_id)
            phone = (contact or {}).get("phone")
            if not phone:
                report.permanent[user_id] = "no phone number"
                continue

            try:
                sid = await asyncio.to_thread(self._create_message, phone, body)
            except TwilioRestException as e:
                if e.code in PERMANENT_ERROR_CODES:
                    report.permanent[user_id] = f"invalid number ({e.code})"
                    logger.info("SMS recipient rejected", user_id=user_id, twilio_code=e.code)
                else:
                    report.retryable[user_id] = f"Twilio error {e.code}: {e.msg}"
                continue
            except (TwilioException, OSError) as e:
                report.retryable[user_id] = str(e)
                continue

            report.delivered.append(user_id)
            report.message_ids.append(sid)

        return report
