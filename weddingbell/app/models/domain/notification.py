"""
Domain model for notifications in the WeddingBell delivery pipeline.

This module defines the entities that flow through the pipeline:
- Notification entity with its lifecycle status
- Priority, channel and outcome enumerations
- Per-channel delivery results
- Immutable delivery log entries
"""

import copy
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


_ID_ALPHABET = string.digits + string.ascii_lowercase


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_notification_id() -> str:
    """Generate an id of the form ``notif_<epoch ms>_<9 base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"notif_{int(time.time() * 1000)}_{suffix}"


def parse_datetime(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO string, epoch milliseconds or datetime into an aware UTC datetime.

    Naive datetimes are assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        result = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str):
        result = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported datetime value: {value!r}")
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Priority(str, Enum):
    """Notification priority. Each priority maps to exactly one queue lane."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """1 for critical down to 4 for low."""
        return _PRIORITY_RANKS[self]

    @classmethod
    def coerce(cls, value: Union["Priority", str, int]) -> "Priority":
        """
        Accept a Priority, its name, or the integers 1..4 (1 = critical).

        Raises:
            ValueError: If the value does not name a priority
        """
        if isinstance(value, Priority):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid priority: {value!r}")
        if isinstance(value, int):
            for priority, rank in _PRIORITY_RANKS.items():
                if rank == value:
                    return priority
            raise ValueError(f"Invalid priority: {value!r}")
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized.isdigit():
                return cls.coerce(int(normalized))
            return cls(normalized)
        raise ValueError(f"Invalid priority: {value!r}")


_PRIORITY_RANKS = {
    Priority.CRITICAL: 1,
    Priority.HIGH: 2,
    Priority.MEDIUM: 3,
    Priority.LOW: 4,
}


class Channel(str, Enum):
    """Delivery channels."""

    REALTIME = "realtime"
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"

    @classmethod
    def values(cls) -> List[str]:
        return [channel.value for channel in cls]


ALL_CHANNELS = Channel.values()


class NotificationType(str, Enum):
    """Notification types known to the default priority mapping."""

    EMERGENCY = "emergency"
    PAYMENT_FAILED = "payment_failed"
    VENDOR_CANCELLED = "vendor_cancelled"
    REMINDER_24H = "reminder_24h"
    REMINDER_1H = "reminder_1h"
    TASK_DUE = "task_due"
    BOOKING_CONFIRMED = "booking_confirmed"
    PAYMENT_SUCCESS = "payment_success"
    RSVP_RECEIVED = "rsvp_received"
    SCHEDULE_CHANGE = "schedule_change"
    NEW_MESSAGE = "new_message"
    VENDOR_UPDATE = "vendor_update"
    WEEKLY_SUMMARY = "weekly_summary"
    TIP_OF_DAY = "tip_of_day"
    FEATURE_ANNOUNCEMENT = "feature_announcement"


DEFAULT_TYPE_PRIORITIES: Dict[str, Priority] = {
    NotificationType.EMERGENCY.value: Priority.CRITICAL,
    NotificationType.PAYMENT_FAILED.value: Priority.CRITICAL,
    NotificationType.VENDOR_CANCELLED.value: Priority.CRITICAL,
    NotificationType.REMINDER_24H.value: Priority.HIGH,
    NotificationType.REMINDER_1H.value: Priority.HIGH,
    NotificationType.TASK_DUE.value: Priority.HIGH,
    NotificationType.BOOKING_CONFIRMED.value: Priority.MEDIUM,
    NotificationType.PAYMENT_SUCCESS.value: Priority.MEDIUM,
    NotificationType.RSVP_RECEIVED.value: Priority.MEDIUM,
}


def priority_for_type(notification_type: str) -> Priority:
    """Default priority for a notification type; unknown types are LOW."""
    return DEFAULT_TYPE_PRIORITIES.get(notification_type, Priority.LOW)


class NotificationStatus(str, Enum):
    """Lifecycle status of a notification."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSED = "processed"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXPIRED = "expired"
    SUPPRESSED = "suppressed"
    CANCELLED = "cancelled"
    AGGREGATED = "aggregated"
    NO_ELIGIBLE_CHANNEL = "no_eligible_channel"


class DeliveryOutcome(str, Enum):
    """Outcomes recorded in the delivery log."""

    QUEUED = "queued"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXPIRED = "expired"
    SUPPRESSED = "suppressed"
    CANCELLED = "cancelled"
    NO_ELIGIBLE_CHANNEL = "no_eligible_channel"
    ALREADY_SENT = "already_sent"


# Outcomes that count a notification against frequency caps, and those that
# withdraw it again
ACCEPTED_OUTCOMES = (DeliveryOutcome.QUEUED, DeliveryOutcome.DELIVERED)
WITHDRAWN_OUTCOMES = (DeliveryOutcome.CANCELLED, DeliveryOutcome.EXPIRED)


@dataclass
class Notification:
    """
    A notification moving through validation, routing, queueing and delivery.

    Rules only ever touch copies (see ``copy``); once a notification is
    processed its per-channel outcomes live in the delivery log.
    """

    type: str
    title: str
    recipients: List[str]
    body: str = ""
    id: str = field(default_factory=generate_notification_id)
    priority: Optional[Priority] = None
    channels: List[str] = field(default_factory=list)
    force_channels: List[str] = field(default_factory=list)
    exclude_channels: List[str] = field(default_factory=list)
    resolved_channels: List[str] = field(default_factory=list)
    channel_recipients: Dict[str, List[str]] = field(default_factory=dict)
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    language: Optional[str] = None
    wedding_id: Optional[str] = None
    aggregate: Optional[Dict[str, Any]] = None
    status: NotificationStatus = NotificationStatus.PENDING
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def primary_recipient(self) -> Optional[str]:
        """The recipient rules and frequency caps are evaluated against."""
        return self.recipients[0] if self.recipients else None

    @property
    def lane(self) -> str:
        return (self.priority or priority_for_type(self.type)).value

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if self.scheduled_for is None:
            return True
        return (now or utc_now()) >= self.scheduled_for

    def copy(self) -> "Notification":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for queue storage and API responses."""
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "recipients": list(self.recipients),
            "priority": self.priority.value if self.priority else None,
            "channels": list(self.channels),
            "force_channels": list(self.force_channels),
            "exclude_channels": list(self.exclude_channels),
            "resolved_channels": list(self.resolved_channels),
            "channel_recipients": {k: list(v) for k, v in self.channel_recipients.items()},
            "scheduled_for": format_datetime(self.scheduled_for),
            "expires_at": format_datetime(self.expires_at),
            "metadata": copy.deepcopy(self.metadata),
            "language": self.language,
            "wedding_id": self.wedding_id,
            "aggregate": copy.deepcopy(self.aggregate),
            "status": self.status.value,
            "timestamp": format_datetime(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        """Rebuild a notification serialized with ``to_dict``."""
        priority = data.get("priority")
        return cls(
            id=data["id"],
            type=data["type"],
            title=data.get("title", ""),
            body=data.get("body", ""),
            recipients=list(data.get("recipients", [])),
            priority=Priority.coerce(priority) if priority is not None else None,
            channels=list(data.get("channels", [])),
            force_channels=list(data.get("force_channels", [])),
            exclude_channels=list(data.get("exclude_channels", [])),
            resolved_channels=list(data.get("resolved_channels", [])),
            channel_recipients={k: list(v) for k, v in data.get("channel_recipients", {}).items()},
            scheduled_for=parse_datetime(data.get("scheduled_for")),
            expires_at=parse_datetime(data.get("expires_at")),
            metadata=dict(data.get("metadata") or {}),
            language=data.get("language"),
            wedding_id=data.get("wedding_id"),
            aggregate=data.get("aggregate"),
            status=NotificationStatus(data.get("status", NotificationStatus.PENDING.value)),
            timestamp=parse_datetime(data.get("timestamp")) or utc_now(),
        )


@dataclass
class ChannelResult:
    """Outcome of one channel send for one notification."""

    channel: str
    success: bool
    error: Optional[str] = None
    retry_count: int = 0
    permanent: bool = False
    delivered_to: List[str] = field(default_factory=list)
    message_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "success": self.success,
            "error": self.error,
            "retry_count": self.retry_count,
            "permanent": self.permanent,
            "delivered_to": list(self.delivered_to),
            "message_ids": list(self.message_ids),
        }


@dataclass(frozen=True)
class DeliveryLogEntry:
    """Append-only record of a notification or channel outcome."""

    notification_id: str
    outcome: DeliveryOutcome
    channel: Optional[str] = None
    user_id: Optional[str] = None
    notification_type: Optional[str] = None
    retry_count: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "channel": self.channel,
            "outcome": self.outcome.value,
            "user_id": self.user_id,
            "notification_type": self.notification_type,
            "retry_count": self.retry_count,
            "error": self.error,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryLogEntry":
        return cls(
            notification_id=data["notification_id"],
            outcome=DeliveryOutcome(data["outcome"]),
            channel=data.get("channel"),
            user_id=data.get("user_id"),
            notification_type=data.get("notification_type"),
            retry_count=data.get("retry_count", 0),
            error=data.get("error"),
            timestamp=parse_datetime(data.get("timestamp")) or utc_now(),
        )
