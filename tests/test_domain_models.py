"""
Unit tests for domain models.

Test Coverage:
- Notification priorities, lanes, expiry and scheduling
- Queue serialization of notifications
- Preference defaults, updates and quiet-hours windows
- Routing rule and template records
"""

from datetime import datetime, time, timedelta, timezone

import pytest

from weddingbell.app.models.domain.notification import (
    DeliveryLogEntry,
    DeliveryOutcome,
    Notification,
    NotificationStatus,
    Priority,
    generate_notification_id,
    parse_datetime,
    priority_for_type,
)
from weddingbell.app.models.domain.preferences import QuietHours, UserPreferences
from weddingbell.app.models.domain.rule import RoutingRule
from weddingbell.app.models.domain.template import NotificationTemplate


class TestPriority:
    """Test suite for priority coercion and type mapping."""

    def test_coerce_accepts_names_and_ranks(self):
        """Names, numeric strings and integers all map to a priority."""
        assert Priority.coerce("critical") == Priority.CRITICAL
        assert Priority.coerce(" HIGH ") == Priority.HIGH
        assert Priority.coerce(3) == Priority.MEDIUM
        assert Priority.coerce("4") == Priority.LOW
        assert Priority.coerce(Priority.HIGH) == Priority.HIGH

    def test_coerce_rejects_unknown_values(self):
        """Out-of-range ranks, booleans and unknown names are refused."""
        for value in (0, 5, True, "urgent", 1.5):
            with pytest.raises(ValueError):
                Priority.coerce(value)

    def test_default_type_priorities(self):
        """Known types map to their tier; unknown types are low."""
        assert priority_for_type("payment_failed") == Priority.CRITICAL
        assert priority_for_type("vendor_cancelled") == Priority.CRITICAL
        assert priority_for_type("reminder_24h") == Priority.HIGH
        assert priority_for_type("rsvp_received") == Priority.MEDIUM
        assert priority_for_type("weekly_summary") == Priority.LOW
        assert priority_for_type("something_new") == Priority.LOW

    def test_rank_order(self):
        """Critical ranks first and low ranks last."""
        ranks = [p.rank for p in (Priority.CRITICAL, Priority.HIGH, Priority.MEDIUM, Priority.LOW)]
        assert ranks == [1, 2, 3, 4]


class TestNotification:
    """Test suite for the Notification entity."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.now = datetime(2025, 6, 14, 12, 0, tzinfo=timezone.utc)

    def test_generated_id_format(self):
        """Ids look like notif_<epoch ms>_<9 base36 chars>."""
        notification_id = generate_notification_id()
        prefix, millis, suffix = notification_id.split("_")
        assert prefix == "notif"
        assert millis.isdigit()
        assert len(suffix) == 9
        assert generate_notification_id() != notification_id

    def test_lane_follows_explicit_priority_then_type(self):
        """An explicit priority wins over the type default."""
        notification = Notification(type="tip_of_day", title="Tip", recipients=["u1"])
        assert notification.lane == "low"

        notification.priority = Priority.HIGH
        assert notification.lane == "high"

    def test_expiry_and_due_checks(self):
        """A notification is due once scheduled_for passes and expired once expires_at passes."""
        notification = Notification(
            type="task_due",
            title="Task",
            recipients=["u1"],
            scheduled_for=self.now + timedelta(minutes=5),
            expires_at=self.now + timedelta(hours=1)
        )

        assert not notification.is_due(self.now)
        assert notification.is_due(self.now + timedelta(minutes=5))
        assert not notification.is_expired(self.now)
        assert notification.is_expired(self.now + timedelta(hours=1))

    def test_primary_recipient(self):
        """The first recipient is the primary one."""
        notification = Notification(type="task_due", title="Task", recipients=["u2", "u1"])
        assert notification.primary_recipient == "u2"
        assert Notification(type="task_due", title="Task", recipients=[]).primary_recipient is None

    def test_queue_serialization_preserves_routing(self):
        """Queued jobs keep everything the dispatcher and senders need."""
        notification = Notification(
            type="reminder_24h",
            title="Essayage",
            body="Demain 14h",
            recipients=["u1", "u2"],
            priority=Priority.HIGH,
            force_channels=["sms"],
            exclude_channels=["email"],
            resolved_channels=["realtime", "sms"],
            channel_recipients={"realtime": ["u1", "u2"], "sms": ["u1"]},
            scheduled_for=self.now,
            metadata={"location": "Paris"},
            language="fr",
            wedding_id="w1",
            aggregate={"key": "rsvp", "window_ms": 60000},
            status=NotificationStatus.QUEUED,
        )

        restored = Notification.from_dict(notification.to_dict())

        assert restored.id == notification.id
        assert restored.priority == Priority.HIGH
        assert restored.channel_recipients == {"realtime": ["u1", "u2"], "sms": ["u1"]}
        assert restored.scheduled_for == self.now
        assert restored.status == NotificationStatus.QUEUED
        assert restored.aggregate == {"key": "rsvp", "window_ms": 60000}
        assert restored.metadata == {"location": "Paris"}

    def test_copy_is_independent(self):
        """Copies never share mutable state with the original."""
        notification = Notification(type="task_due", title="Task", recipients=["u1"], metadata={"a": 1})
        duplicate = notification.copy()
        duplicate.metadata["a"] = 2
        duplicate.force_channels.append("sms")

        assert notification.metadata == {"a": 1}
        assert notification.force_channels == []

    def test_parse_datetime_variants(self):
        """ISO strings, Z suffixes, epoch milliseconds and naive datetimes become aware UTC."""
        assert parse_datetime("2025-06-14T12:00:00Z") == self.now
        assert parse_datetime(int(self.now.timestamp() * 1000)) == self.now
        assert parse_datetime(datetime(2025, 6, 14, 12, 0)) == self.now
        assert parse_datetime(None) is None
        with pytest.raises(ValueError):
            parse_datetime("not a date")


class TestDeliveryLogEntry:
    """Test suite for delivery log entries."""

    def test_round_trip_from_stored_document(self):
        """Entries rebuilt from storage keep their outcome and channel."""
        entry = DeliveryLogEntry(
            notification_id="n1",
            outcome=DeliveryOutcome.FAILED,
            channel="sms",
            user_id="u1",
            retry_count=3,
            error="Twilio error 30003"
        )
        restored = DeliveryLogEntry.from_dict(entry.to_dict())

        assert restored == entry

    def test_entries_are_immutable(self):
        """The log is append-only; entries cannot be edited."""
        entry = DeliveryLogEntry(notification_id="n1", outcome=DeliveryOutcome.DELIVERED)
        with pytest.raises(AttributeError):
            entry.outcome = DeliveryOutcome.FAILED


class TestUserPreferences:
    """Test suite for preferences and quiet hours."""

    def test_defaults_for_unknown_user(self):
        """Realtime, push and email are on; sms and digest are off."""
        preferences = UserPreferences.from_dict("u1", None)

        assert preferences.realtime_notifications
        assert preferences.push_notifications
        assert preferences.email_notifications
        assert not preferences.sms_notifications
        assert not preferences.email_digest
        assert preferences.quiet_hours is None

    def test_unknown_keys_are_kept_as_extra(self):
        """Extra stored keys stay readable for rule conditions."""
        preferences = UserPreferences.from_dict("u1", {
            "_id": "mongo-id",
            "sms_notifications": True,
            "vip": "gold",
        })

        assert preferences.sms_notifications
        assert preferences.get("vip") == "gold"
        assert preferences.get("missing", "fallback") == "fallback"
        assert "_id" not in preferences.to_dict()

    def test_apply_updates_returns_new_preferences(self):
        """Updates merge into a copy; the original is untouched."""
        preferences = UserPreferences.defaults("u1")
        updated = preferences.apply_updates({
            "push_notifications": False,
            "quiet_hours": {"start": "22:00", "end": "07:30", "timezone": "UTC"},
        })

        assert preferences.push_notifications
        assert not updated.push_notifications
        assert updated.quiet_hours == QuietHours(start=time(22, 0), end=time(7, 30), timezone="UTC")

    def test_quiet_hours_wrapping_midnight(self):
        """A 22:00-07:00 window contains late evening and early morning."""
        quiet_hours = QuietHours(start=time(22, 0), end=time(7, 0), timezone="UTC")

        assert quiet_hours.contains(datetime(2025, 6, 14, 23, 30, tzinfo=timezone.utc))
        assert quiet_hours.contains(datetime(2025, 6, 15, 6, 59, tzinfo=timezone.utc))
        assert not quiet_hours.contains(datetime(2025, 6, 15, 7, 0, tzinfo=timezone.utc))
        assert not quiet_hours.contains(datetime(2025, 6, 14, 12, 0, tzinfo=timezone.utc))

    def test_quiet_hours_window_end(self):
        """The window end is the next local end time after the moment."""
        quiet_hours = QuietHours(start=time(22, 0), end=time(7, 0), timezone="UTC")

        late = datetime(2025, 6, 14, 23, 30, tzinfo=timezone.utc)
        early = datetime(2025, 6, 15, 3, 0, tzinfo=timezone.utc)
        expected = datetime(2025, 6, 15, 7, 0, tzinfo=timezone.utc)

        assert quiet_hours.window_end(late) == expected
        assert quiet_hours.window_end(early) == expected

    def test_quiet_hours_use_local_timezone(self):
        """Windows are evaluated in the user's timezone."""
        quiet_hours = QuietHours(start=time(22, 0), end=time(7, 0), timezone="Europe/Paris")

        # 21:30 UTC is 23:30 in Paris during summer time
        assert quiet_hours.contains(datetime(2025, 6, 14, 21, 30, tzinfo=timezone.utc))
        assert quiet_hours.window_end(datetime(2025, 6, 14, 21, 30, tzinfo=timezone.utc)) == datetime(
            2025, 6, 15, 5, 0, tzinfo=timezone.utc
        )


class TestRuleAndTemplateRecords:
    """Test suite for rule and template records."""

    def test_rule_round_trip(self):
        """Stored rules come back with the same id and ordering data."""
        rule = RoutingRule(
            notification_type="rsvp_received",
            conditions={"frequency": {"window": 3600000, "max": 2}},
            actions=[{"type": "AGGREGATE", "window": 60000}],
            position=3,
        )
        restored = RoutingRule.from_dict(rule.to_dict())

        assert restored.id == rule.id
        assert restored.position == 3
        assert restored.frequency_cap == {"window": 3600000, "max": 2}

    def test_template_key(self):
        """Templates are keyed by type, channel and language."""
        template = NotificationTemplate(type="task_due", channel="sms", language="en", content="{{ title }}")

        assert template.key == ("task_due", "sms", "en")
        restored = NotificationTemplate.from_dict(template.to_dict())
        assert restored.id == template.id
        assert restored.active
