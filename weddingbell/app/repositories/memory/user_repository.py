"""In-memory user contacts and push subscriptions."""

import copy
from typing import Any, Dict, List, Optional

from weddingbell.app.repositories.interfaces import UserRepository


class InMemoryUserRepository(UserRepository):

    def __init__(self):
        self._users: Dict[str, Dict[str, Any]] = {}

    async def get_contact(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self._users.get(user_id)
        if user is None:
            return None
        return {
            "email": user.get("email"),
            "phone": user.get("phone"),
            "name": user.get("name"),
            "language": user.get("language"),
        }

    async def upsert_user(self, user_id: str, data: Dict[str, Any]) -> None:
        user = self._users.setdefault(user_id, {"push_subscriptions": []})
        user.update(copy.deepcopy(data))

    async def get_push_subscriptions(self, user_id: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._users.get(user_id, {}).get("push_subscriptions", []))

    async def add_push_subscription(self, user_id: str, subscription: Dict[str, Any]) -> None:
        user = self._users.setdefault(user_id, {"push_subscriptions": []})
        subscriptions = user.setdefault("push_subscriptions", [])
        if all(s.get("endpoint") != subscription.get("endpoint") for s in subscriptions):
            subscriptions.append(copy.deepcopy(subscription))

    async def remove_push_subscription(self, user_id: str, endpoint: str) -> bool:
        subscriptions = self._users.get(user_id, {}).get("push_subscriptions", [])
        remaining = [s for s in subscriptions if s.get("endpoint") != endpoint]
        if len(remaining) == len(subscriptions):
            return False
        self._users[user_id]["push_subscriptions"] = remaining
        return True
