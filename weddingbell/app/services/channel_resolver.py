"""
Channel determination for routed notifications.

For each recipient the resolver starts from the requested channels and
those forced by rules, adds the defaults for the notification's priority
tier (gated by the recipient's preferences), then removes the channels
excluded by rules. The union over all recipients is the notification's
resolved channel set.

Priority tiers:
- CRITICAL: every channel (subject to ``critical_overrides_preferences``)
- HIGH: realtime and push; email when email notifications are on
- MEDIUM: each channel the recipient opted into; email only with the digest
- LOW: realtime only, when realtime notifications are on
"""

from typing import Dict, List, Optional, Set

from weddingbell.app.models.domain.notification import (
    ALL_CHANNELS,
    Channel,
    Notification,
    Priority,
    priority_for_type,
)
from weddingbell.app.models.domain.preferences import UserPreferences
from weddingbell.app.services.preference_store import PreferenceStore
from weddingbell.app.utils.logging import get_logger
from weddingbell.config.settings import PolicySettings

logger = get_logger(__name__)


class ChannelResolver:
    """Resolves per-recipient delivery channels."""

    def __init__(
        self,
        preference_store: PreferenceStore,
        policy: Optional[PolicySettings] = None,
        enabled_channels: Optional[List[str]] = None
    ):
        self.preference_store = preference_store
        self.policy = policy or PolicySettings()
        self.enabled_channels = list(enabled_channels or ALL_CHANNELS)

    def tier_channels(self, priority: Priority, preferences: UserPreferences) -> Set[str]:
        """Default channels for a priority tier given one recipient's preferences."""
        channels: Set[str] = set()

        if priority == Priority.CRITICAL:
            if self.policy.critical_overrides_preferences:
                return set(ALL_CHANNELS)
            channels.update({Channel.REALTIME.value, Channel.PUSH.value})
            if preferences.email_notifications:
                channels.add(Channel.EMAIL.value)
            if preferences.sms_notifications:
                channels.add(Channel.SMS.value)

        elif priority == Priority.HIGH:
            channels.update({Channel.REALTIME.value, Channel.PUSH.value})
            if preferences.email_notifications:
                channels.add(Channel.EMAIL.value)

        elif priority == Priority.MEDIUM:
            if preferences.realtime_notifications:
                channels.add(Channel.REALTIME.value)
            if preferences.push_notifications:
                channels.add(Channel.PUSH.value)
            if preferences.email_digest:
                channels.add(Channel.EMAIL.value)
            if preferences.sms_notifications:
                channels.add(Channel.SMS.value)

        elif preferences.realtime_notifications:
            channels.add(Channel.REALTIME.value)

        return channels

    async def channels_for_recipient(self, notification: Notification, user_id: str) -> Set[str]:
        priority = notification.priority or priority_for_type(notification.type)
        preferences = await self.preference_store.get(user_id)

        channels = set(notification.force_channels) | set(notification.channels)
        channels |= self.tier_channels(priority, preferences)
        channels -= set(notification.exclude_channels)
        return {c for c in channels if c in self.enabled_channels}

    async def determine_channels(self, notification: Notification) -> Set[str]:
        """
        Resolve channels for every recipient.

        Fills ``notification.channel_recipients`` and
        ``notification.resolved_channels`` and returns the resolved set.
        """
        channel_recipients: Dict[str, List[str]] = {}
        for user_id in notification.recipients:
            for channel in await self.channels_for_recipient(notification, user_id):
                channel_recipients.setdefault(channel, []).append(user_id)

        ordered = [c for c in ALL_CHANNELS if c in channel_recipients]
        notification.channel_recipients = {c: channel_recipients[c] for c in ordered}
        notification.resolved_channels = ordered

        logger.debug(
            "Channels determined",
            notification_id=notification.id,
            channels=ordered,
            recipients=len(notification.recipients)
        )
        return set(ordered)
