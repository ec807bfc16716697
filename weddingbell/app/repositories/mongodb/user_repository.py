"""
MongoDB repository for recipient contact details.

Each document in ``users`` carries the contact fields used by the email and
SMS senders, plus the list of push subscriptions registered by the user's
browsers and devices.
"""

from typing import Any, Dict, List, Optional

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from weddingbell.app.core.exceptions import raise_database_error
from weddingbell.app.repositories.interfaces import UserRepository
from weddingbell.app.repositories.mongodb.base import MongoRepository, logger


class MongoUserRepository(MongoRepository, UserRepository):

    collection_name = "users"

    async def _ensure_indexes(self) -> None:
        try:
            await self._collection.create_index(
                [("user_id", ASCENDING)], unique=True, name="user_id_unique"
            )
        except PyMongoError as e:
            logger.warning(f"Failed to create user indexes: {e}")

    async def get_contact(self, user_id: str) -> Optional[Dict[str, Any]]:
        collection = await self._get_collection()
        return await collection.find_one(
            {"user_id": user_id},
            projection={"_id": 0, "email": 1, "phone": 1, "name": 1, "language": 1}
        )

    async def upsert_user(self, user_id: str, data: Dict[str, Any]) -> None:
        collection = await self._get_collection()
        await collection.update_one(
            {"user_id": user_id},
            {"$set": {**data, "user_id": user_id}},
            upsert=True
        )

    async def get_push_subscriptions(self, user_id: str) -> List[Dict[str, Any]]:
        collection = await self._get_collection()
        document = await collection.find_one(
            {"user_id": user_id}, projection={"_id": 0, "push_subscriptions": 1}
        )
        return (document or {}).get("push_subscriptions", [])

    async def add_push_subscription(self, user_id: str, subscription: Dict[str, Any]) -> None:
        collection = await self._get_collection()
        await collection.update_one(
            {"user_id": user_id},
            {"$addToSet": {"push_subscriptions": subscription}},
            upsert=True
        )

    async def remove_push_subscription(self, user_id: str, endpoint: str) -> bool:
        try:
            collection = await self._get_collection()
            result = await collection.update_one(
                {"user_id": user_id},
                {"$pull": {"push_subscriptions": {"endpoint": endpoint}}}
            )
            return result.modified_count > 0
        except PyMongoError as e:
            raise_database_error(
                f"Failed to remove push subscription for {user_id}: {e}",
                database_type="mongodb",
                operation="remove_push_subscription",
                collection_name=self.collection_name
            )
