"""In-memory delivery log for tests and single-process deployments."""

from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from weddingbell.app.models.domain.notification import (
    ACCEPTED_OUTCOMES,
    WITHDRAWN_OUTCOMES,
    DeliveryLogEntry,
    DeliveryOutcome,
    utc_now,
)
from weddingbell.app.repositories.interfaces import DeliveryLogRepository


class InMemoryDeliveryLogRepository(DeliveryLogRepository):

    def __init__(self):
        self._entries: List[DeliveryLogEntry] = []

    async def append(self, entry: DeliveryLogEntry) -> None:
        self._entries.append(entry)

    async def entries_for(self, notification_id: str) -> List[DeliveryLogEntry]:
        return [e for e in self._entries if e.notification_id == notification_id]

    async def has_delivered(self, notification_id: str, channel: str) -> bool:
        return any(
            e.notification_id == notification_id
            and e.channel == channel
            and e.outcome == DeliveryOutcome.DELIVERED
            for e in self._entries
        )

    async def count_recent(
        self,
        user_id: str,
        notification_type: str,
        window_ms: int,
        now: Optional[datetime] = None
    ) -> int:
        since = (now or utc_now()) - timedelta(milliseconds=window_ms)
        accepted = {
            e.notification_id
            for e in self._entries
            if e.user_id == user_id
            and e.notification_type == notification_type
            and e.outcome in ACCEPTED_OUTCOMES
            and e.timestamp >= since
        }
        withdrawn = {
            e.notification_id
            for e in self._entries
            if e.notification_id in accepted and e.outcome in WITHDRAWN_OUTCOMES
        }
        return len(accepted - withdrawn)

    async def outcome_counts(self) -> Dict[str, int]:
        return dict(Counter(e.outcome.value for e in self._entries))

    @property
    def entries(self) -> List[DeliveryLogEntry]:
        return list(self._entries)
