"""In-memory preference documents."""

import copy
from typing import Any, Dict, Optional

from weddingbell.app.repositories.interfaces import PreferencesRepository


class InMemoryPreferencesRepository(PreferencesRepository):

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._documents: Dict[str, Dict[str, Any]] = copy.deepcopy(initial or {})

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        document = self._documents.get(user_id)
        return copy.deepcopy(document) if document is not None else None

    async def upsert(self, user_id: str, data: Dict[str, Any]) -> None:
        self._documents.setdefault(user_id, {}).update(copy.deepcopy(data))
