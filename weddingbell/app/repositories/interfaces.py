"""
Repository interfaces shared by the MongoDB and in-memory implementations.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from weddingbell.app.models.domain.notification import DeliveryLogEntry
from weddingbell.app.models.domain.rule import RoutingRule
from weddingbell.app.models.domain.template import NotificationTemplate


class DeliveryLogRepository(ABC):
    """Append-only store of notification and channel outcomes."""

    @abstractmethod
    async def append(self, entry: DeliveryLogEntry) -> None:
        ...

    @abstractmethod
    async def entries_for(self, notification_id: str) -> List[DeliveryLogEntry]:
        """Entries for one notification, oldest first."""

    @abstractmethod
    async def has_delivered(self, notification_id: str, channel: str) -> bool:
        """True if ``channel`` already succeeded for this notification."""

    @abstractmethod
    async def count_recent(
        self,
        user_id: str,
        notification_type: str,
        window_ms: int,
        now: Optional[datetime] = None
    ) -> int:
        """
        Distinct notifications of a type accepted for a user inside the window.

        A notification counts once it is queued or delivered, unless it was
        later cancelled or expired.
        """

    @abstractmethod
    async def outcome_counts(self) -> Dict[str, int]:
        ...


class PreferencesRepository(ABC):
    """Raw stored preference documents keyed by user id."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def upsert(self, user_id: str, data: Dict[str, Any]) -> None:
        ...


class UserRepository(ABC):
    """Contact details and push subscriptions of recipients."""

    @abstractmethod
    async def get_contact(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Return ``{email, phone, name, language}`` or None."""

    @abstractmethod
    async def upsert_user(self, user_id: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def get_push_subscriptions(self, user_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def add_push_subscription(self, user_id: str, subscription: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def remove_push_subscription(self, user_id: str, endpoint: str) -> bool:
        """Permanently drop a subscription. True if one was removed."""


class RuleRepository(ABC):

    @abstractmethod
    async def list_rules(self) -> List[RoutingRule]:
        """Every stored rule ordered by position."""

    @abstractmethod
    async def save_rule(self, rule: RoutingRule) -> None:
        ...

    @abstractmethod
    async def delete_rule(self, rule_id: str) -> bool:
        ...


class TemplateRepository(ABC):

    @abstractmethod
    async def get(self, template_id: str) -> Optional[NotificationTemplate]:
        ...

    @abstractmethod
    async def save(self, template: NotificationTemplate) -> None:
        """Insert or replace by id."""

    @abstractmethod
    async def find(self, filters: Optional[Dict[str, Any]] = None) -> List[NotificationTemplate]:
        """Templates whose fields equal every key in ``filters``."""
