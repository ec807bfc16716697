"""
Publish/subscribe bus used for cross-process fan-out.

Room broadcasts, per-user realtime notifications and cache invalidations are
published on named channels (``wedding:42``, ``user:u1``, ``preferences``).
Every process subscribes to the channels its local sockets care about and
delivers what it receives to them.

- ``RedisPubSubBus`` relays through Redis pub/sub with a listener task.
- ``InMemoryPubSubBus`` dispatches directly, for a single process.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from weddingbell.app.core.database import RedisManager
from weddingbell.app.core.exceptions import get_retry_delay
from weddingbell.app.utils.logging import get_logger

logger = get_logger(__name__)

MessageHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


class PubSubBus(ABC):
    """Interface shared by the pub/sub buses."""

    def __init__(self):
        self._handlers: Dict[str, List[MessageHandler]] = defaultdict(list)

    async def start(self) -> None:
        """Start background listening, if the bus needs it."""

    async def stop(self) -> None:
        """Stop background listening."""

    async def _dispatch(self, channel: str, message: Dict[str, Any]) -> int:
        delivered = 0
        for handler in list(self._handlers.get(channel, [])):
            try:
                await handler(channel, message)
                delivered += 1
            except Exception as e:
                logger.error("Pub/sub handler failed", channel=channel, error=str(e))
        return delivered

    @abstractmethod
    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        """Register ``handler`` for messages on ``channel``."""

    @abstractmethod
    async def unsubscribe(self, channel: str, handler: MessageHandler) -> None:
        """Remove ``handler`` from ``channel``."""

    @abstractmethod
    async def publish(self, channel: str, message: Dict[str, Any]) -> int:
        """Publish ``message`` and return how many subscribers received it."""


class InMemoryPubSubBus(PubSubBus):
    """Direct in-process dispatch."""

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        if handler not in self._handlers[channel]:
            self._handlers[channel].append(handler)

    async def unsubscribe(self, channel: str, handler: MessageHandler) -> None:
        handlers = self._handlers.get(channel)
        if handlers and handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(channel, None)

    async def publish(self, channel: str, message: Dict[str, Any]) -> int:
        return await self._dispatch(channel, message)


class RedisPubSubBus(PubSubBus):
    """Redis-backed bus. ``publish`` returns the number of subscribed processes."""

    def __init__(self, redis_manager: RedisManager, poll_timeout: float = 1.0):
        super().__init__()
        self.redis_manager = redis_manager
        self.poll_timeout = poll_timeout
        self._pubsub: Optional[PubSub] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._prefix = redis_manager.key("bus") + ":"

    async def start(self) -> None:
        if self._listener_task is not None:
            return
        self._pubsub = self.redis_manager.get_client().pubsub(ignore_subscribe_messages=True)
        self._listener_task = asyncio.create_task(self._listen_loop())
        logger.info("Redis pub/sub bus started")

    async def stop(self) -> None:
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        logger.info("Redis pub/sub bus stopped")

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        first = not self._handlers.get(channel)
        if handler not in self._handlers[channel]:
            self._handlers[channel].append(handler)
        if first and self._pubsub is not None:
            await self._pubsub.subscribe(self._prefix + channel)

    async def unsubscribe(self, channel: str, handler: MessageHandler) -> None:
        handlers = self._handlers.get(channel)
        if handlers and handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(channel, None)
            if self._pubsub is not None:
                await self._pubsub.unsubscribe(self._prefix + channel)

    async def publish(self, channel: str, message: Dict[str, Any]) -> int:
        return await self.redis_manager.get_client().publish(
            self._prefix + channel,
            json.dumps(message, default=str)
        )

    async def _listen_loop(self) -> None:
        """Relay Redis messages to local handlers."""
        failures = 0
        while True:
            try:
                if not self._handlers:
                    await asyncio.sleep(self.poll_timeout)
                    continue
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self.poll_timeout
                )
                if message is None or message.get("type") != "message":
                    continue
                channel = message["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode()
                payload = json.loads(message["data"])
                await self._dispatch(channel[len(self._prefix):], payload)
                failures = 0
            except asyncio.CancelledError:
                break
            except (RedisError, ValueError) as e:
                failures += 1
                delay = get_retry_delay(failures, max_delay=30.0)
                logger.error("Error in pub/sub listener", error=str(e), retry_in=round(delay, 2))
                await asyncio.sleep(delay)
