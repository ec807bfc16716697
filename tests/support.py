"""
Shared builders and fakes for the test suite.

Everything here runs in-process: in-memory repositories, queue, bus and
cache, a controllable clock, and senders that record what they were asked
to deliver.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from weddingbell.app.core.cache import InMemoryCache
from weddingbell.app.core.pubsub import InMemoryPubSubBus
from weddingbell.app.core.queue_backend import InMemoryQueueBackend
from weddingbell.app.models.domain.notification import ALL_CHANNELS, Notification, utc_now
from weddingbell.app.repositories.memory.delivery_log_repository import InMemoryDeliveryLogRepository
from weddingbell.app.repositories.memory.preferences_repository import InMemoryPreferencesRepository
from weddingbell.app.repositories.memory.rule_repository import InMemoryRuleRepository
from weddingbell.app.repositories.memory.user_repository import InMemoryUserRepository
from weddingbell.app.services.channel_resolver import ChannelResolver
from weddingbell.app.services.channels.base import ChannelSender, SendReport
from weddingbell.app.services.notification_service import NotificationService
from weddingbell.app.services.preference_store import PreferenceStore
from weddingbell.app.services.rule_engine import RuleEngine
from weddingbell.app.services.template_engine import TemplateEngine
from weddingbell.config.settings import AppSettings, PolicySettings, QueueSettings


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender(ChannelSender):
    """Sender that delivers to everyone and remembers each call."""

    def __init__(self, channel: str, permanent_failures: Optional[Dict[str, str]] = None):
        super().__init__()
        self.channel = channel
        self.permanent_failures = permanent_failures or {}
        self.calls: List[Dict[str, Any]] = []

    async def send(self, notification: Notification, payload: Dict[str, Any], recipients: List[str]) -> SendReport:
        self.calls.append({
            "notification_id": notification.id,
            "payload": payload,
            "recipients": list(recipients),
        })
        report = SendReport()
        for recipient in recipients:
            if recipient in self.permanent_failures:
                report.permanent[recipient] = self.permanent_failures[recipient]
            else:
                report.delivered.append(recipient)
        return report


class Pipeline:
    """A fully wired in-memory notification pipeline."""

    def __init__(
        self,
        preferences: Optional[Dict[str, Dict[str, Any]]] = None,
        policy: Optional[PolicySettings] = None,
        clock: Optional[FakeClock] = None
    ):
        self.clock = clock or FakeClock()
        self.policy = policy or PolicySettings()
        self.cache = InMemoryCache()
        self.bus = InMemoryPubSubBus()
        self.delivery_log = InMemoryDeliveryLogRepository()
        self.preferences_repository = InMemoryPreferencesRepository(preferences)
        self.user_repository = InMemoryUserRepository()
        self.rule_repository = InMemoryRuleRepository()

        self.preference_store = PreferenceStore(self.preferences_repository, self.cache, self.bus)
        self.rule_engine = RuleEngine(
            self.preference_store,
            self.delivery_log,
            repository=self.rule_repository,
            bus=self.bus,
            policy=self.policy,
            clock=self.clock
        )
        self.channel_resolver = ChannelResolver(self.preference_store, policy=self.policy)
        self.template_engine = TemplateEngine(AppSettings())
        self.senders = {channel: RecordingSender(channel) for channel in ALL_CHANNELS}
        self.service = NotificationService(
            self.rule_engine,
            self.channel_resolver,
            self.template_engine,
            self.delivery_log,
            self.cache,
            self.senders,
            clock=self.clock
        )
        self.backend = InMemoryQueueBackend()
        self.dispatcher = self.service.build_dispatcher(self.backend, QueueSettings().lanes, bus=self.bus)

    async def drain(self, lane: str) -> int:
        """Process every job currently visible in ``lane``."""
        processed = 0
        while await self.dispatcher.poll_lane(lane):
            processed += 1
        return processed

    def sent_channels(self, notification_id: str) -> List[str]:
        return sorted(
            channel for channel, sender in self.senders.items()
            if any(call["notification_id"] == notification_id for call in sender.calls)
        )

    def outcomes(self, notification_id: str) -> List[str]:
        return [
            entry.outcome.value for entry in self.delivery_log.entries
            if entry.notification_id == notification_id
        ]
