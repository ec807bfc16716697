"""
Realtime channel: pushes notifications to connected sockets over the bus.
"""

from typing import Any, Dict, List, Optional

from weddingbell.app.core.pubsub import PubSubBus
from weddingbell.app.models.domain.notification import Channel, Notification, format_datetime
from weddingbell.app.services.channels.base import ChannelSender, SendReport
from weddingbell.app.utils.logging import get_logger
from weddingbell.config.settings import RetryPolicy

logger = get_logger(__name__)


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class RealtimeSender(ChannelSender):
    """
    Publishes a ``notification`` frame on each recipient's ``user:{id}`` channel.

    A recipient without a live subscriber anywhere is offline; that is not
    retried.
    """

    channel = Channel.REALTIME.value

    def __init__(self, bus: PubSubBus, retry_policy: Optional[RetryPolicy] = None, **kwargs):
        super().__init__(retry_policy, **kwargs)
        self.bus = bus

    def build_frame(self, notification: Notification, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": "notification",
            "data": {
                "id": notification.id,
                "notification_type": notification.type,
                "title": payload.get("title") or notification.title,
                "body": payload.get("message") or notification.body,
                "priority": notification.lane,
                "timestamp": format_datetime(notification.timestamp),
                "metadata": payload.get("metadata") or notification.metadata,
                "severity": payload.get("severity", "info"),
                "actions": payload.get("actions") or [],
            },
            "timestamp": format_datetime(notification.timestamp),
        }

    async def send(
        self,
        notification: Notification,
        payload: Dict[str, Any],
        recipients: List[str]
    ) -> SendReport:
        frame = self.build_frame(notification, payload)
        report = SendReport()

        for user_id in recipients:
            receivers = await self.bus.publish(user_channel(user_id), frame)
            if receivers > 0:
                report.delivered.append(user_id)
            else:
                report.permanent[user_id] = "recipient offline"

        logger.debug(
            "Realtime notification published",
            notification_id=notification.id,
            online=len(report.delivered),
            offline=len(report.permanent)
        )
        return report
