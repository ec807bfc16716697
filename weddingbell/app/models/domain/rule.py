"""Domain model for routing rules evaluated before a notification is queued."""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


class RuleActionType(str, Enum):
    """Actions a rule can apply to a matching notification."""

    SET_PRIORITY = "SET_PRIORITY"
    ADD_CHANNEL = "ADD_CHANNEL"
    REMOVE_CHANNEL = "REMOVE_CHANNEL"
    DELAY = "DELAY"
    AGGREGATE = "AGGREGATE"
    TRANSFORM = "TRANSFORM"


class RuleConditionType(str, Enum):
    TIME = "time"
    USER_PREFERENCE = "user_preference"
    FREQUENCY = "frequency"


@dataclass
class RoutingRule:
    """
    A routing rule for one notification type.

    ``conditions`` maps a condition type to its parameters, for example
    ``{"frequency": {"window": 86400000, "max": 1}}``. ``actions`` is an
    ordered list of ``{"type": ..., ...}`` dicts applied when every condition
    passes.
    """

    notification_type: str
    conditions: Dict[str, Any] = field(default_factory=dict)
    actions: List[Dict[str, Any]] = field(default_factory=list)
    id: str = field(default_factory=lambda: f"rule_{uuid.uuid4().hex[:12]}")
    active: bool = True
    position: int = 0
    description: str = ""

    @property
    def frequency_cap(self) -> Dict[str, Any]:
        return self.conditions.get(RuleConditionType.FREQUENCY.value) or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "notification_type": self.notification_type,
            "conditions": dict(self.conditions),
            "actions": [dict(action) for action in self.actions],
            "active": self.active,
            "position": self.position,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoutingRule":
        kwargs: Dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = data["id"]
        return cls(
            notification_type=data["notification_type"],
            conditions=dict(data.get("conditions") or {}),
            actions=[dict(action) for action in data.get("actions") or []],
            active=data.get("active", True),
            position=data.get("position", 0),
            description=data.get("description", ""),
            **kwargs,
        )
