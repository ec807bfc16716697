"""MongoDB repository for routing rules."""

from typing import List

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from weddingbell.app.models.domain.rule import RoutingRule
from weddingbell.app.repositories.interfaces import RuleRepository
from weddingbell.app.repositories.mongodb.base import MongoRepository, logger


class MongoRuleRepository(MongoRepository, RuleRepository):

    collection_name = "notification_rules"

    async def _ensure_indexes(self) -> None:
        try:
            await self._collection.create_index(
                [("id", ASCENDING)], unique=True, name="rule_id_unique"
            )
            await self._collection.create_index(
                [("notification_type", ASCENDING), ("position", ASCENDING)],
                name="type_position"
            )
        except PyMongoError as e:
            logger.warning(f"Failed to create rule indexes: {e}")

    async def list_rules(self) -> List[RoutingRule]:
        collection = await self._get_collection()
        cursor = collection.find({}, projection={"_id": 0}).sort("position", ASCENDING)
        return [RoutingRule.from_dict(doc) async for doc in cursor]

    async def save_rule(self, rule: RoutingRule) -> None:
        collection = await self._get_collection()
        await collection.replace_one({"id": rule.id}, rule.to_dict(), upsert=True)

    async def delete_rule(self, rule_id: str) -> bool:
        collection = await self._get_collection()
        result = await collection.delete_one({"id": rule_id})
        return result.deleted_count > 0
