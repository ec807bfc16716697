"""
Push channel: Web Push delivery to stored browser subscriptions.

Payloads are encrypted for each subscription (aes128gcm) and signed with the
service's VAPID key by ``pywebpush``.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import requests
from pywebpush import WebPushException, webpush

from weddingbell.app.core.exceptions import ErrorCode, PermanentDeliveryError
from weddingbell.app.models.domain.notification import Channel, Notification, Priority
from weddingbell.app.repositories.interfaces import UserRepository
from weddingbell.app.services.channels.base import ChannelSender, SendReport
from weddingbell.app.utils.logging import get_logger
from weddingbell.config.settings import PushSettings, RetryPolicy

logger = get_logger(__name__)

GONE_STATUS_CODES = (404, 410)


def _is_transient_status(status_code: Optional[int]) -> bool:
    return status_code is None or status_code == 429 or status_code >= 500


class PushSender(ChannelSender):
    """
    Delivers to every push subscription of each recipient.

    A 404 or 410 from the push service means the subscription is gone: it is
    removed from the user repository and never retried. Other 4xx answers
    are permanent for that subscription; 429 and 5xx are retried.
    """

    channel = Channel.PUSH.value

    def __init__(
        self,
        user_repository: UserRepository,
        settings: Optional[PushSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        push: Callable[..., Any] = webpush,
        session: Optional[requests.Session] = None,
        **kwargs
    ):
        super().__init__(retry_policy, **kwargs)
        self.user_repository = user_repository
        self.settings = settings or PushSettings()
        self._push = push
        self._session = session

    def build_payload(self, notification: Notification, payload: Dict[str, Any]) -> Dict[str, Any]:
        priority = notification.priority or Priority(notification.lane)
        data = dict(payload.get("data") or {})
        data.setdefault("notification_id", notification.id)
        data.setdefault("type", notification.type)

        return {
            "title": payload.get("title") or notification.title,
            "body": payload.get("body") or notification.body,
            "icon": payload.get("icon") or self.settings.default_icon,
            "badge": payload.get("badge"),
            "image": payload.get("image"),
            "tag": notification.type,
            "actions": payload.get("actions") or [],
            "data": data,
            "requireInteraction": priority in (Priority.HIGH, Priority.CRITICAL),
            "silent": priority == Priority.LOW,
        }

    def _send_one(self, subscription: Dict[str, Any], data: str) -> Any:
        return self._push(
            subscription_info=subscription,
            data=data,
            vapid_private_key=self.settings.vapid_private_key,
            vapid_claims={"sub": self.settings.vapid_subject},
            ttl=self.settings.ttl_seconds,
            timeout=self.settings.timeout_seconds,
            requests_session=self._session
        )

    async def send(
        self,
        notification: Notification,
        payload: Dict[str, Any],
        recipients: List[str]
    ) -> SendReport:
        if not self.settings.vapid_private_key:
            raise PermanentDeliveryError(
                "VAPID keys are not configured",
                error_code=ErrorCode.NOTIFICATION_CHANNEL_UNAVAILABLE,
                channel=self.channel
            )

        data = json.dumps(self.build_payload(notification, payload))
        report = SendReport()

        for user_id in recipients:
            subscriptions = await self.user_repository.get_push_subscriptions(user_id)
            if not subscriptions:
                report.permanent[user_id] = "no push subscription"
                continue

            delivered = False
            transient_error: Optional[str] = None
            for subscription in subscriptions:
                endpoint = subscription.get("endpoint")
                keys = subscription.get("keys") or {}
                if not endpoint or not (keys.get("p256dh") and keys.get("auth")):
                    logger.warning("Skipping incomplete push subscription", user_id=user_id)
                    continue

                try:
                    response = await asyncio.to_thread(self._send_one, subscription, data)
                except WebPushException as e:
                    status_code = getattr(e.response, "status_code", None)
                    if status_code in GONE_STATUS_CODES:
                        await self.user_repository.remove_push_subscription(user_id, endpoint)
                        logger.info("Push subscription pruned", user_id=user_id, status_code=status_code)
                    elif _is_transient_status(status_code):
                        transient_error = f"push service returned {status_code}: {e.message}"
                    else:
                        logger.warning(
                            "Push service rejected message",
                            user_id=user_id,
                            status_code=status_code,
                            error=e.message
                        )
                    continue
                except requests.RequestException as e:
                    transient_error = f"push service unreachable: {e}"
                    continue

                delivered = True
                message_id = (getattr(response, "headers", None) or {}).get("location")
                if message_id:
                    report.message_ids.append(message_id)

            if delivered:
                report.delivered.append(user_id)
            elif transient_error:
                report.retryable[user_id] = transient_error
            else:
                report.permanent[user_id] = "push subscriptions gone or rejected"

        return report
