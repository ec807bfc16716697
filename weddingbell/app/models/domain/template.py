"""Domain model for notification templates."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from weddingbell.app.models.domain.notification import format_datetime, parse_datetime


TemplateKey = Tuple[str, str, str]


@dataclass
class NotificationTemplate:
    """
    Template source for one (type, channel, language) key.

    ``content`` is Jinja2 text, optionally split into sections with
    ``--- name ---`` marker lines.
    """

    type: str
    channel: str
    language: str
    content: str
    id: str = field(default_factory=lambda: f"tpl_{uuid.uuid4().hex[:12]}")
    metadata: Dict[str, Any] = field(default_factory=dict)
    active: bool = True
    compiled_at: Optional[datetime] = None

    @property
    def key(self) -> TemplateKey:
        return (self.type, self.channel, self.language)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "channel": self.channel,
            "language": self.language,
            "content": self.content,
            "metadata": dict(self.metadata),
            "active": self.active,
            "compiled_at": format_datetime(self.compiled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationTemplate":
        kwargs: Dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = data["id"]
        return cls(
            type=data["type"],
            channel=data["channel"],
            language=data.get("language") or "fr",
            content=data["content"],
            metadata=dict(data.get("metadata") or {}),
            active=data.get("active", True),
            compiled_at=parse_datetime(data.get("compiled_at")),
            **kwargs,
        )
