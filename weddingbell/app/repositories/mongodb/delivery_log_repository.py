"""
MongoDB repository for the delivery log.

The ``delivery_log`` collection is append-only. It serves three readers:
- idempotency checks before a channel send
- frequency caps evaluated by the rule engine
- per-notification delivery history for the API
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from weddingbell.app.core.exceptions import raise_database_error
from weddingbell.app.models.domain.notification import (
    ACCEPTED_OUTCOMES,
    WITHDRAWN_OUTCOMES,
    DeliveryLogEntry,
    DeliveryOutcome,
    utc_now,
)
from weddingbell.app.repositories.interfaces import DeliveryLogRepository
from weddingbell.app.repositories.mongodb.base import MongoRepository, logger
from weddingbell.app.utils.logging import performance_context


class MongoDeliveryLogRepository(MongoRepository, DeliveryLogRepository):
    """Delivery log stored in MongoDB."""

    collection_name = "delivery_log"

    async def _ensure_indexes(self) -> None:
        try:
            await self._collection.create_index([
                ("notification_id", ASCENDING),
                ("channel", ASCENDING)
            ], name="notification_channel")

            await self._collection.create_index([
                ("user_id", ASCENDING),
                ("notification_type", ASCENDING),
                ("timestamp", DESCENDING)
            ], name="user_type_timestamp")

            logger.debug("Delivery log collection indexes ensured")
        except PyMongoError as e:
            logger.warning(f"Failed to create delivery log indexes: {e}")

    async def append(self, entry: DeliveryLogEntry) -> None:
        try:
            collection = await self._get_collection()
            with performance_context("delivery_log_append", notification_id=entry.notification_id):
                await collection.insert_one(entry.to_dict())
        except PyMongoError as e:
            raise_database_error(
                f"Failed to append delivery log entry: {e}",
                database_type="mongodb",
                operation="append",
                collection_name=self.collection_name
            )

    async def entries_for(self, notification_id: str) -> List[DeliveryLogEntry]:
        try:
            collection = await self._get_collection()
            cursor = collection.find({"notification_id": notification_id}).sort("timestamp", ASCENDING)
            return [DeliveryLogEntry.from_dict(doc) async for doc in cursor]
        except PyMongoError as e:
            raise_database_error(
                f"Failed to read delivery log: {e}",
                database_type="mongodb",
                operation="entries_for",
                collection_name=self.collection_name
            )

    async def has_delivered(self, notification_id: str, channel: str) -> bool:
        collection = await self._get_collection()
        document = await collection.find_one({
            "notification_id": notification_id,
            "channel": channel,
            "outcome": DeliveryOutcome.DELIVERED.value,
        }, projection={"_id": 1})
        return document is not None

    async def count_recent(
        self,
        user_id: str,
        notification_type: str,
        window_ms: int,
        now: Optional[datetime] = None
    ) -> int:
        since = (now or utc_now()) - timedelta(milliseconds=window_ms)
        collection = await self._get_collection()
        accepted = await collection.distinct("notification_id", {
            "user_id": user_id,
            "notification_type": notification_type,
            "outcome": {"$in": [o.value for o in ACCEPTED_OUTCOMES]},
            "timestamp": {"$gte": since},
        })
        if not accepted:
            return 0
        withdrawn = await collection.distinct("notification_id", {
            "notification_id": {"$in": accepted},
            "outcome": {"$in": [o.value for o in WITHDRAWN_OUTCOMES]},
        })
        return len(set(accepted) - set(withdrawn))

    async def outcome_counts(self) -> Dict[str, int]:
        collection = await self._get_collection()
        pipeline = [{"$group": {"_id": "$outcome", "count": {"$sum": 1}}}]
        return {doc["_id"]: doc["count"] async for doc in collection.aggregate(pipeline)}
