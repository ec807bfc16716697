"""Domain model for per-user notification preferences."""

from dataclasses import dataclass, field, fields
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@dataclass
class QuietHours:
    """Daily window (local time) during which non-critical sends are delayed."""

    start: time
    end: time
    timezone: str = "Europe/Paris"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuietHours":
        return cls(
            start=time.fromisoformat(data["start"]),
            end=time.fromisoformat(data["end"]),
            timezone=data.get("timezone") or "Europe/Paris",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.strftime("%H:%M"),
            "end": self.end.strftime("%H:%M"),
            "timezone": self.timezone,
        }

    def _zone(self) -> tzinfo:
        if self.timezone.upper() == "UTC":
            return timezone.utc
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            return timezone.utc

    def contains(self, moment: datetime) -> bool:
        """True if ``moment`` falls inside the window. Windows may wrap midnight."""
        local = moment.astimezone(self._zone()).time()
        if self.start <= self.end:
            return self.start <= local < self.end
        return local >= self.start or local < self.end

    def window_end(self, moment: datetime) -> datetime:
        """The next end of the window at or after ``moment``, as an aware datetime."""
        zone = self._zone()
        local = moment.astimezone(zone)
        end = local.replace(hour=self.end.hour, minute=self.end.minute, second=0, microsecond=0)
        if end <= local:
            end = end + timedelta(days=1)
        return end.astimezone(moment.tzinfo)


@dataclass
class UserPreferences:
    """
    Resolved notification preferences for one user.

    Unknown stored keys are kept in ``extra`` so routing rules can match on
    them through ``user_preference`` conditions.
    """

    user_id: str
    realtime_notifications: bool = True
    push_notifications: bool = True
    email_notifications: bool = True
    sms_notifications: bool = False
    email_digest: bool = False
    quiet_hours: Optional[QuietHours] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    FLAG_NAMES = (
        "realtime_notifications",
        "push_notifications",
        "email_notifications",
        "sms_notifications",
        "email_digest",
    )

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a flag or an extra stored key by name."""
        if key in self.FLAG_NAMES:
            return getattr(self, key)
        if key == "quiet_hours":
            return self.quiet_hours.to_dict() if self.quiet_hours else None
        return self.extra.get(key, default)

    def apply_updates(self, updates: Dict[str, Any]) -> "UserPreferences":
        """Return a copy with ``updates`` merged in."""
        data = self.to_dict()
        data.update(updates)
        return UserPreferences.from_dict(self.user_id, data)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        for name in self.FLAG_NAMES:
            data[name] = getattr(self, name)
        data["quiet_hours"] = self.quiet_hours.to_dict() if self.quiet_hours else None
        return data

    @classmethod
    def from_dict(cls, user_id: str, data: Optional[Dict[str, Any]]) -> "UserPreferences":
        """Build preferences from stored data, falling back to defaults per flag."""
        data = dict(data or {})
        data.pop("_id", None)
        data.pop("user_id", None)
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for name in cls.FLAG_NAMES:
            if name in data and data[name] is not None:
                kwargs[name] = bool(data.pop(name))
            else:
                data.pop(name, None)
        quiet_hours = data.pop("quiet_hours", None)
        if quiet_hours:
            kwargs["quiet_hours"] = (
                quiet_hours if isinstance(quiet_hours, QuietHours) else QuietHours.from_dict(quiet_hours)
            )
        extra = {k: v for k, v in data.items() if k not in known}
        extra.update(data.pop("extra", None) or {})
        return cls(user_id=user_id, extra=extra, **kwargs)

    @classmethod
    def defaults(cls, user_id: str) -> "UserPreferences":
        return cls(user_id=user_id)
