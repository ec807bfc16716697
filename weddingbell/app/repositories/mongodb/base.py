"""
Shared collection handling for the MongoDB repositories.

Collections are resolved lazily on first use and their indexes are ensured
once per repository instance.
"""

from typing import Optional

from motor.motor_asyncio import AsyncIOMotorCollection

from weddingbell.app.core.database import MongoDBManager
from weddingbell.app.utils.logging import get_logger

logger = get_logger(__name__)


class MongoRepository:
    """Base class holding the lazily initialized collection."""

    collection_name: str = ""

    def __init__(self, db_manager: MongoDBManager):
        self._db_manager = db_manager
        self._collection: Optional[AsyncIOMotorCollection] = None

    async def _get_collection(self) -> AsyncIOMotorCollection:
        """Get MongoDB collection with lazy initialization."""
        if self._collection is None:
            database = self._db_manager.get_database()
            self._collection = database[self.collection_name]
            await self._ensure_indexes()
        return self._collection

    async def _ensure_indexes(self) -> None:
        """Create the indexes this collection needs."""
