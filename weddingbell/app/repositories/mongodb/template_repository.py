"""MongoDB repository for notification templates."""

from typing import Any, Dict, List, Optional

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from weddingbell.app.core.exceptions import raise_database_error
from weddingbell.app.models.domain.template import NotificationTemplate
from weddingbell.app.repositories.interfaces import TemplateRepository
from weddingbell.app.repositories.mongodb.base import MongoRepository, logger


class MongoTemplateRepository(MongoRepository, TemplateRepository):

    collection_name = "notification_templates"

    async def _ensure_indexes(self) -> None:
        try:
            await self._collection.create_index(
                [("id", ASCENDING)], unique=True, name="template_id_unique"
            )
            await self._collection.create_index([
                ("type", ASCENDING),
                ("channel", ASCENDING),
                ("language", ASCENDING)
            ], name="template_key")
        except PyMongoError as e:
            logger.warning(f"Failed to create template indexes: {e}")

    async def get(self, template_id: str) -> Optional[NotificationTemplate]:
        collection = await self._get_collection()
        document = await collection.find_one({"id": template_id}, projection={"_id": 0})
        return NotificationTemplate.from_dict(document) if document else None

    async def save(self, template: NotificationTemplate) -> None:
        try:
            collection = await self._get_collection()
            await collection.replace_one({"id": template.id}, template.to_dict(), upsert=True)
        except PyMongoError as e:
            raise_database_error(
                f"Failed to save template {template.id}: {e}",
                database_type="mongodb",
                operation="save",
                collection_name=self.collection_name
            )

    async def find(self, filters: Optional[Dict[str, Any]] = None) -> List[NotificationTemplate]:
        collection = await self._get_collection()
        cursor = collection.find(dict(filters or {}), projection={"_id": 0})
        return [NotificationTemplate.from_dict(doc) async for doc in cursor]
