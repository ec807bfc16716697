"""
Service wiring for the WeddingBell notification service.

Builds repositories, infrastructure backends and services from settings and
owns their startup and shutdown order. The FastAPI app keeps one container
on ``app.state``; route dependencies read their services from it.
"""

from typing import Dict, List, Optional

from weddingbell.app.core.cache import Cache, InMemoryCache, RedisCache
from weddingbell.app.core.database import MongoDBManager, RedisManager
from weddingbell.app.core.presence_manager import PresenceManager
from weddingbell.app.core.pubsub import InMemoryPubSubBus, PubSubBus, RedisPubSubBus
from weddingbell.app.core.queue_backend import InMemoryQueueBackend, QueueBackend, RedisQueueBackend
from weddingbell.app.repositories.interfaces import (
    DeliveryLogRepository,
    PreferencesRepository,
    RuleRepository,
    TemplateRepository,
    UserRepository,
)
from weddingbell.app.repositories.memory.delivery_log_repository import InMemoryDeliveryLogRepository
from weddingbell.app.repositories.memory.preferences_repository import InMemoryPreferencesRepository
from weddingbell.app.repositories.memory.rule_repository import InMemoryRuleRepository
from weddingbell.app.repositories.memory.template_repository import InMemoryTemplateRepository
from weddingbell.app.repositories.memory.user_repository import InMemoryUserRepository
from weddingbell.app.repositories.mongodb.delivery_log_repository import MongoDeliveryLogRepository
from weddingbell.app.repositories.mongodb.preferences_repository import MongoPreferencesRepository
from weddingbell.app.repositories.mongodb.rule_repository import MongoRuleRepository
from weddingbell.app.repositories.mongodb.template_repository import MongoTemplateRepository
from weddingbell.app.repositories.mongodb.user_repository import MongoUserRepository
from weddingbell.app.services.channel_resolver import ChannelResolver
from weddingbell.app.services.channels.base import ChannelSender
from weddingbell.app.services.channels.email import EmailSender
from weddingbell.app.services.channels.push import PushSender
from weddingbell.app.services.channels.realtime import RealtimeSender
from weddingbell.app.services.channels.sms import SMSSender
from weddingbell.app.services.dispatcher import Dispatcher
from weddingbell.app.services.notification_service import NotificationService
from weddingbell.app.services.preference_store import PreferenceStore
from weddingbell.app.services.rule_engine import RuleEngine
from weddingbell.app.services.template_engine import TemplateEngine
from weddingbell.app.utils.logging import get_logger
from weddingbell.app.utils.security import TokenManager
from weddingbell.config.settings import Settings

logger = get_logger(__name__)


class ServiceContainer:
    """
    Holds every long-lived component of one process.

    Usage:
        container = ServiceContainer(settings)
        await container.start()
        ...
        await container.stop()
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.mongodb: Optional[MongoDBManager] = None
        self.redis: Optional[RedisManager] = None

        backends = {settings.queue.backend, settings.pubsub.backend, settings.cache.backend}
        if "redis" in backends:
            self.redis = RedisManager(settings.redis)

        self._build_repositories()
        self.queue_backend = self._build_queue_backend()
        self.bus = self._build_bus()
        self.cache = self._build_cache()

        self.token_manager = TokenManager(settings.security)
        self.preference_store = PreferenceStore(self.preferences_repository, self.cache, self.bus)
        self.template_engine = TemplateEngine(
            settings.app,
            repository=self.template_repository,
            push_settings=settings.push,
            sms_settings=settings.sms,
        )
        self.rule_engine = RuleEngine(
            self.preference_store,
            self.delivery_log,
            repository=self.rule_repository,
            bus=self.bus,
            policy=settings.policy,
        )
        self.channel_resolver = ChannelResolver(
            self.preference_store,
            policy=settings.policy,
            enabled_channels=settings.channels.enabled,
        )
        self.senders = self._build_senders()
        self.notification_service = NotificationService(
            self.rule_engine,
            self.channel_resolver,
            self.template_engine,
            self.delivery_log,
            self.cache,
            self.senders,
        )
        self.dispatcher: Dispatcher = self.notification_service.build_dispatcher(
            self.queue_backend, settings.queue.lanes, bus=self.bus
        )
        self.presence = PresenceManager(self.token_manager, self.bus, settings.presence)
        self._started: List[str] = []

    def _build_repositories(self) -> None:
        self.delivery_log: DeliveryLogRepository
        self.preferences_repository: PreferencesRepository
        self.user_repository: UserRepository
        self.rule_repository: RuleRepository
        self.template_repository: TemplateRepository

        if self.settings.storage.backend == "mongodb":
            self.mongodb = MongoDBManager(self.settings.database)
            self.delivery_log = MongoDeliveryLogRepository(self.mongodb)
            self.preferences_repository = MongoPreferencesRepository(self.mongodb)
            self.user_repository = MongoUserRepository(self.mongodb)
            self.rule_repository = MongoRuleRepository(self.mongodb)
            self.template_repository = MongoTemplateRepository(self.mongodb)
        else:
            self.delivery_log = InMemoryDeliveryLogRepository()
            self.preferences_repository = InMemoryPreferencesRepository()
            self.user_repository = InMemoryUserRepository()
            self.rule_repository = InMemoryRuleRepository()
            self.template_repository = InMemoryTemplateRepository()

    def _build_queue_backend(self) -> QueueBackend:
        if self.settings.queue.backend == "redis":
            return RedisQueueBackend(self.redis, visibility_timeout=self.settings.queue.visibility_timeout)
        return InMemoryQueueBackend(visibility_timeout=self.settings.queue.visibility_timeout)

    def _build_bus(self) -> PubSubBus:
        if self.settings.pubsub.backend == "redis":
            return RedisPubSubBus(self.redis)
        return InMemoryPubSubBus()

    def _build_cache(self) -> Cache:
        if self.settings.cache.backend == "redis":
            return RedisCache(self.redis)
        return InMemoryCache(maxsize=self.settings.cache.maxsize)

    def _build_senders(self) -> Dict[str, ChannelSender]:
        channels = self.settings.channels
        factories = {
            "realtime": lambda policy: RealtimeSender(self.bus, retry_policy=policy),
            "push": lambda policy: PushSender(self.user_repository, self.settings.push, retry_policy=policy),
            "email": lambda policy: EmailSender(self.user_repository, self.settings.email, retry_policy=policy),
            "sms": lambda policy: SMSSender(self.user_repository, self.settings.sms, retry_policy=policy),
        }
        senders: Dict[str, ChannelSender] = {}
        for channel in channels.enabled:
            factory = factories.get(channel)
            if factory is None:
                logger.warning("No sender for enabled channel", channel=channel)
                continue
            senders[channel] = factory(channels.retry_policy(channel))
        return senders

    async def start(self, run_workers: bool = True) -> None:
        """
        Connect backends and start background workers.

        Args:
            run_workers: Start the dispatcher lanes and presence heartbeat
        """
        if self.mongodb is not None:
            await self.mongodb.connect()
        if self.redis is not None:
            await self.redis.connect()

        await self.bus.start()
        await self.preference_store.start()
        await self.rule_engine.start()
        await self.template_engine.load_from_repository()

        if run_workers:
            await self.dispatcher.start()
            await self.presence.start()

        logger.info(
            "Service container started",
            storage=self.settings.storage.backend,
            queue=self.settings.queue.backend,
            pubsub=self.settings.pubsub.backend,
            channels=list(self.senders),
        )

    async def stop(self) -> None:
        """Stop workers and release connections in reverse start order."""
        await self.presence.stop()
        await self.dispatcher.stop()
        await self.rule_engine.stop()
        await self.preference_store.stop()
        await self.bus.stop()

        for sender in self.senders.values():
            await sender.close()

        if self.redis is not None:
            await self.redis.disconnect()
        if self.mongodb is not None:
            await self.mongodb.disconnect()
        logger.info("Service container stopped")

    async def health(self) -> Dict[str, object]:
        """Component health for the ``/health`` endpoint."""
        components: Dict[str, object] = {
            "dispatcher": {
                "status": "healthy" if self.dispatcher.is_healthy else "unhealthy",
                "running": self.dispatcher.is_running,
                "failed_lanes": self.dispatcher.failed_lanes,
            },
            "presence": self.presence.get_stats(),
        }
        if self.mongodb is not None:
            components["mongodb"] = await self.mongodb.health_check()
        if self.redis is not None:
            components["redis"] = await self.redis.health_check()
        return components
