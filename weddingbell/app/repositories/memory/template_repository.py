"""In-memory notification templates."""

from typing import Any, Dict, List, Optional

from weddingbell.app.models.domain.template import NotificationTemplate
from weddingbell.app.repositories.interfaces import TemplateRepository


class InMemoryTemplateRepository(TemplateRepository):

    def __init__(self):
        self._templates: Dict[str, NotificationTemplate] = {}

    async def get(self, template_id: str) -> Optional[NotificationTemplate]:
        template = self._templates.get(template_id)
        return NotificationTemplate.from_dict(template.to_dict()) if template else None

    async def save(self, template: NotificationTemplate) -> None:
        self._templates[template.id] = NotificationTemplate.from_dict(template.to_dict())

    async def find(self, filters: Optional[Dict[str, Any]] = None) -> List[NotificationTemplate]:
        filters = filters or {}
        return [
            NotificationTemplate.from_dict(template.to_dict())
            for template in self._templates.values()
            if all(getattr(template, key, None) == value for key, value in filters.items())
        ]
