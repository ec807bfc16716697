"""
Preference store for the WeddingBell notification service.

Resolves per-user notification preferences from the preferences repository,
fills in defaults for anything the user never set, and caches the result
without expiry. Updates invalidate the local cache and announce the change on
the pub/sub bus so other processes drop their copies too.
"""

from typing import Any, Dict, Optional

from weddingbell.app.core.cache import Cache
from weddingbell.app.core.pubsub import PubSubBus
from weddingbell.app.models.domain.preferences import UserPreferences
from weddingbell.app.repositories.interfaces import PreferencesRepository
from weddingbell.app.utils.logging import get_logger

logger = get_logger(__name__)

PREFERENCES_CHANNEL = "preferences"


class PreferenceStore:
    """Cached access to user preferences."""

    def __init__(
        self,
        repository: PreferencesRepository,
        cache: Cache,
        bus: Optional[PubSubBus] = None
    ):
        self.repository = repository
        self.cache = cache
        self.bus = bus

    @staticmethod
    def _cache_key(user_id: str) -> str:
        return f"prefs:{user_id}"

    async def start(self) -> None:
        """Listen for invalidations published by other processes."""
        if self.bus is not None:
            await self.bus.subscribe(PREFERENCES_CHANNEL, self._on_invalidation)

    async def stop(self) -> None:
        if self.bus is not None:
            await self.bus.unsubscribe(PREFERENCES_CHANNEL, self._on_invalidation)

    async def get(self, user_id: str) -> UserPreferences:
        """
        Resolved preferences for ``user_id``.

        A user with no stored document gets the defaults: realtime, push and
        email on; sms and email digest off; no quiet hours.
        """
        cached = await self.cache.get(self._cache_key(user_id))
        if cached is not None:
            return UserPreferences.from_dict(user_id, cached)

        document = await self.repository.get(user_id)
        preferences = UserPreferences.from_dict(user_id, document)
        await self.cache.set(self._cache_key(user_id), preferences.to_dict())
        return preferences

    async def update(self, user_id: str, updates: Dict[str, Any]) -> UserPreferences:
        """Merge ``updates`` into the stored preferences and invalidate caches."""
        current = await self.get(user_id)
        updated = current.apply_updates(updates)
        await self.repository.upsert(user_id, updated.to_dict())
        await self.invalidate(user_id)

        logger.info("Preferences updated", user_id=user_id, keys=sorted(updates))
        return updated

    async def invalidate(self, user_id: str, broadcast: bool = True) -> None:
        await self.cache.delete(self._cache_key(user_id))
        if broadcast and self.bus is not None:
            await self.bus.publish(PREFERENCES_CHANNEL, {"user_id": user_id})

    async def _on_invalidation(self, channel: str, message: Dict[str, Any]) -> None:
        user_id = message.get("user_id")
        if user_id:
            await self.invalidate(user_id, broadcast=False)
