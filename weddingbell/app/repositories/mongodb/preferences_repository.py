"""MongoDB repository for user notification preferences."""

from typing import Any, Dict, Optional

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from weddingbell.app.core.exceptions import raise_database_error
from weddingbell.app.repositories.interfaces import PreferencesRepository
from weddingbell.app.repositories.mongodb.base import MongoRepository, logger


class MongoPreferencesRepository(MongoRepository, PreferencesRepository):
    """Preference documents in ``user_preferences``, one per user."""

    collection_name = "user_preferences"

    async def _ensure_indexes(self) -> None:
        try:
            await self._collection.create_index(
                [("user_id", ASCENDING)], unique=True, name="user_id_unique"
            )
        except PyMongoError as e:
            logger.warning(f"Failed to create preference indexes: {e}")

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        collection = await self._get_collection()
        return await collection.find_one({"user_id": user_id}, projection={"_id": 0})

    async def upsert(self, user_id: str, data: Dict[str, Any]) -> None:
        try:
            collection = await self._get_collection()
            await collection.update_one(
                {"user_id": user_id},
                {"$set": {**data, "user_id": user_id}},
                upsert=True
            )
        except PyMongoError as e:
            raise_database_error(
                f"Failed to update preferences for {user_id}: {e}",
                database_type="mongodb",
                operation="upsert",
                collection_name=self.collection_name
            )
