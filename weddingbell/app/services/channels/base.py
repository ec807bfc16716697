"""
Base class for channel senders.

A sender delivers one rendered payload to a list of recipients and reports
who received it. The base class owns the retry loop: recipients that failed
transiently are retried with the channel's backoff policy, permanent failures
are never retried, and ``deliver`` always returns a ``ChannelResult`` instead
of raising.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from weddingbell.app.core.exceptions import (
    BaseCustomException,
    PermanentDeliveryError,
    is_retryable_error,
)
from weddingbell.app.models.domain.notification import ChannelResult, Notification
from weddingbell.app.utils.decorators import compute_backoff_delay
from weddingbell.app.utils.logging import get_logger, performance_context
from weddingbell.config.settings import RetryPolicy

logger = get_logger(__name__)


@dataclass
class SendReport:
    """Per-recipient outcome of a single send attempt."""

    delivered: List[str] = field(default_factory=list)
    retryable: Dict[str, str] = field(default_factory=dict)
    permanent: Dict[str, str] = field(default_factory=dict)
    message_ids: List[str] = field(default_factory=list)

    def fail_all(self, recipients: List[str], error: str, permanent: bool = False) -> "SendReport":
        target = self.permanent if permanent else self.retryable
        for recipient in recipients:
            target[recipient] = error
        return self


class ChannelSender(ABC):
    """
    Delivers payloads for one channel with bounded retries.

    Subclasses implement ``send`` for a single attempt.
    """

    channel: str = ""

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    @abstractmethod
    async def send(
        self,
        notification: Notification,
        payload: Dict[str, Any],
        recipients: List[str]
    ) -> SendReport:
        """
        Make one delivery attempt.

        Raises:
            ChannelDeliveryError: The whole attempt failed transiently
            PermanentDeliveryError: The whole attempt failed for good
        """

    def _retry_delay(self, attempt: int) -> float:
        policy = self.retry_policy
        return compute_backoff_delay(
            attempt,
            policy.retry_delay,
            exponential_backoff=policy.backoff == "exponential",
            max_delay=policy.max_retry_delay,
            jitter=policy.jitter
        )

    async def _attempt(
        self,
        notification: Notification,
        payload: Dict[str, Any],
        recipients: List[str]
    ) -> SendReport:
        try:
            return await self.send(notification, payload, recipients)
        except PermanentDeliveryError as e:
            return SendReport().fail_all(recipients, e.message, permanent=True)
        except BaseCustomException as e:
            return SendReport().fail_all(recipients, e.message, permanent=not is_retryable_error(e))
        except Exception as e:
            logger.error(
                "Unexpected channel error",
                channel=self.channel,
                notification_id=notification.id,
                error=str(e)
            )
            return SendReport().fail_all(recipients, str(e), permanent=not is_retryable_error(e))

    async def deliver(
        self,
        notification: Notification,
        payload: Dict[str, Any],
        recipients: List[str]
    ) -> ChannelResult:
        """
        Deliver ``payload`` to ``recipients``, retrying transient failures.

        Returns:
            ChannelResult; ``success`` is True when at least one recipient
            received the notification.
        """
        delivered: List[str] = []
        message_ids: List[str] = []
        permanent: Dict[str, str] = {}
        pending = list(recipients)
        retryable: Dict[str, str] = {}
        retries = 0

        with performance_context("channel_send", channel=self.channel, notification_id=notification.id):
            attempt = 0
            while pending:
                report = await self._attempt(notification, payload, pending)
                delivered.extend(report.delivered)
                message_ids.extend(report.message_ids)
                permanent.update(report.permanent)
                retryable = report.retryable
                pending = list(retryable)

                if not pending or attempt >= self.retry_policy.max_retries:
                    break

                attempt += 1
                retries = attempt
                delay = self._retry_delay(attempt)
                logger.warning(
                    "Channel send failed, retrying",
                    channel=self.channel,
                    notification_id=notification.id,
                    attempt=attempt,
                    pending=len(pending),
                    delay=round(delay, 2)
                )
                await self._sleep(delay)

        errors = {**permanent, **retryable}
        error = "; ".join(f"{recipient}: {message}" for recipient, message in errors.items()) or None
        success = bool(delivered)

        return ChannelResult(
            channel=self.channel,
            success=success,
            error=error,
            retry_count=retries,
            permanent=not success and bool(permanent) and not retryable,
            delivered_to=delivered,
            message_ids=message_ids,
        )

    async def close(self) -> None:
        """Release provider resources."""
