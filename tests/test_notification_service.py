"""
Integration tests for the notification pipeline.

Test Coverage:
- Request validation and field errors
- Routing through rules, channel resolution and priority lanes
- Delivery fan-out, per-channel failure isolation and idempotency
- Frequency-cap suppression, aggregation and quiet-hours delay
- Cancellation, expiry and statistics
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from support import Pipeline, RecordingSender
from weddingbell.app.core.exceptions import ErrorCode, QueueBackendError, ValidationError
from weddingbell.app.models.domain.notification import NotificationStatus
from weddingbell.app.models.domain.rule import RoutingRule
from weddingbell.app.models.domain.template import NotificationTemplate


class TestValidation:
    """Test suite for request validation."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.pipeline = Pipeline()
        self.service = self.pipeline.service

    def test_missing_fields_reported_together(self):
        """Every invalid field is listed in a single error."""
        with pytest.raises(ValidationError) as exc_info:
            self.service.validate({"priority": "urgent", "channels": ["fax"]})

        error = exc_info.value
        assert error.error_code == ErrorCode.NOTIFICATION_VALIDATION_FAILED
        assert error.http_status_code == 422
        fields = [e["field"] for e in error.details["field_errors"]]
        assert fields == ["user_id", "type", "title", "priority", "channels"]

    def test_request_aliases(self):
        """user_ids, message and data map onto recipients, body and metadata."""
        notification = self.service.validate({
            "user_ids": ["u1", "u2", "u1"],
            "type": "rsvp_received",
            "title": "Nouvelle réponse",
            "message": "Marie a confirmé",
            "data": {"guest": "Marie"},
            "metadata": {"source": "form"},
        })

        assert notification.recipients == ["u1", "u2"]
        assert notification.body == "Marie a confirmé"
        assert notification.metadata == {"source": "form", "guest": "Marie"}
        assert notification.lane == "medium"

    def test_invalid_datetime(self):
        """Unparseable schedule times are field errors."""
        with pytest.raises(ValidationError) as exc_info:
            self.service.validate({"user_id": "u1", "type": "x", "title": "x", "scheduled_for": "tomorrow"})

        assert exc_info.value.details["field_errors"][0]["field"] == "scheduled_for"


class TestSendAndProcess:
    """Test suite for the send and process path."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.pipeline = Pipeline()
        self.service = self.pipeline.service

    @pytest.mark.asyncio
    async def test_queue_failure_propagates(self):
        """An unavailable queue fails the send with the notification id attached."""
        self.pipeline.backend.enqueue = AsyncMock(
            side_effect=QueueBackendError("connection refused", lane="high", operation="enqueue")
        )

        with pytest.raises(QueueBackendError) as exc_info:
            await self.service.send({"user_id": "u1", "type": "task_due", "title": "Traiteur"})

        assert exc_info.value.http_status_code == 503
        assert exc_info.value.details["notification_id"].startswith("notif_")
        assert self.service.stats.queued == 0

    @pytest.mark.asyncio
    async def test_critical_notification_uses_every_channel(self):
        """A payment failure is queued critical and delivered everywhere."""
        result = await self.service.send({
            "user_id": "u1",
            "type": "payment_failed",
            "title": "Paiement refusé",
            "data": {"amount": 250, "vendor": "Traiteur"},
        })

        assert result["status"] == "queued"
        assert result["priority"] == "critical"
        assert result["channels"] == ["realtime", "push", "email", "sms"]

        assert await self.pipeline.drain("critical") == 1
        assert self.pipeline.sent_channels(result["id"]) == ["email", "push", "realtime", "sms"]
        assert sorted(self.pipeline.outcomes(result["id"])) == ["delivered"] * 4 + ["queued"]

        push_call = self.pipeline.senders["push"].calls[0]
        assert "250€ pour Traiteur" in push_call["payload"]["body"]

    @pytest.mark.asyncio
    async def test_one_failed_channel_does_not_block_others(self):
        """A permanent sms failure is logged while the other channels deliver."""
        self.service.senders["sms"] = RecordingSender("sms", permanent_failures={"u1": "no phone number"})
        result = await self.service.send({"user_id": "u1", "type": "vendor_cancelled", "title": "Annulation"})

        await self.pipeline.drain("critical")

        outcomes = self.pipeline.outcomes(result["id"])
        assert outcomes.count("delivered") == 3
        assert outcomes.count("failed") == 1
        failed = [e for e in self.pipeline.delivery_log.entries if e.outcome.value == "failed"][0]
        assert failed.channel == "sms"
        assert "no phone number" in failed.error

    @pytest.mark.asyncio
    async def test_processing_twice_never_resends(self):
        """Channels already delivered for an id are skipped and logged as already sent."""
        notification = self.service.validate({"user_id": "u1", "type": "task_due", "title": "Fleurs"})
        await self.pipeline.channel_resolver.determine_channels(notification)

        first = await self.service.process(notification)
        second = await self.service.process(notification)

        assert first.status == NotificationStatus.DELIVERED
        assert second.status == NotificationStatus.DELIVERED
        assert len(self.pipeline.senders["realtime"].calls) == 1
        assert self.pipeline.outcomes(notification.id).count("already_sent") == 3

    @pytest.mark.asyncio
    async def test_no_eligible_channel(self):
        """Nothing is queued when no channel is left for the recipient."""
        pipeline = Pipeline(preferences={"u1": {"realtime_notifications": False}})

        result = await pipeline.service.send({"user_id": "u1", "type": "tip_of_day", "title": "Astuce"})

        assert result["status"] == "no_eligible_channel"
        assert result["channels"] == []
        assert await pipeline.dispatcher.queue_sizes() == {"critical": 0, "high": 0, "medium": 0, "low": 0}
        assert pipeline.outcomes(result["id"]) == ["no_eligible_channel"]

    @pytest.mark.asyncio
    async def test_rule_changes_lane_and_channels(self):
        """Rules run before channel resolution and lane selection."""
        await self.pipeline.rule_engine.add_rule(RoutingRule(
            notification_type="rsvp_received",
            actions=[{"type": "SET_PRIORITY", "value": "high"}, {"type": "ADD_CHANNEL", "value": "sms"}]
        ))

        result = await self.service.send({"user_id": "u1", "type": "rsvp_received", "title": "RSVP"})

        assert result["priority"] == "high"
        assert result["channels"] == ["realtime", "push", "email", "sms"]
        assert await self.pipeline.drain("high") == 1

    @pytest.mark.asyncio
    async def test_frequency_cap_after_delivery(self):
        """Once the cap is reached, the next notification is suppressed."""
        await self.pipeline.rule_engine.add_rule(RoutingRule(
            notification_type="reminder_24h",
            conditions={"frequency": {"window": 86400000, "max": 1}}
        ))

        first = await self.service.send({"user_id": "u1", "type": "reminder_24h", "title": "Traiteur"})
        await self.pipeline.drain("high")
        second = await self.service.send({"user_id": "u1", "type": "reminder_24h", "title": "Fleuriste"})

        assert first["status"] == "queued"
        assert second["status"] == "suppressed"
        assert self.pipeline.outcomes(second["id"]) == ["suppressed"]
        assert await self.pipeline.drain("high") == 0

    @pytest.mark.asyncio
    async def test_frequency_cap_counts_queued_notifications(self):
        """A queued but not yet delivered reminder already counts against the cap."""
        await self.pipeline.rule_engine.add_rule(RoutingRule(
            notification_type="reminder_24h",
            conditions={"frequency": {"window": 86400000, "max": 1}}
        ))

        first = await self.service.send({"user_id": "u1", "type": "reminder_24h", "title": "Traiteur"})
        second = await self.service.send({"user_id": "u1", "type": "reminder_24h", "title": "Fleuriste"})

        assert first["status"] == "queued"
        assert second["status"] == "suppressed"
        assert await self.pipeline.drain("high") == 1
        assert self.pipeline.sent_channels(second["id"]) == []

    @pytest.mark.asyncio
    async def test_cancelled_notification_frees_frequency_cap(self):
        """Cancelling the queued reminder lets the next one through."""
        await self.pipeline.rule_engine.add_rule(RoutingRule(
            notification_type="reminder_24h",
            conditions={"frequency": {"window": 86400000, "max": 1}}
        ))
        later = (self.pipeline.clock.now + timedelta(hours=2)).isoformat()

        first = await self.service.send({
            "user_id": "u1", "type": "reminder_24h", "title": "Traiteur", "scheduled_for": later
        })
        assert await self.service.cancel(first["id"])
        second = await self.service.send({"user_id": "u1", "type": "reminder_24h", "title": "Fleuriste"})

        assert second["status"] == "queued"

    @pytest.mark.asyncio
    async def test_quiet_hours_delay_non_critical(self):
        """Notifications inside quiet hours wait for the window end."""
        clock_hour = self.pipeline.clock.now.hour
        pipeline = Pipeline(preferences={"u1": {"quiet_hours": {
            "start": f"{clock_hour:02d}:00",
            "end": f"{(clock_hour + 2) % 24:02d}:00",
            "timezone": "UTC",
        }}}, clock=self.pipeline.clock)

        delayed = await pipeline.service.send({"user_id": "u1", "type": "task_due", "title": "Rappel"})
        urgent = await pipeline.service.send({"user_id": "u1", "type": "emergency", "title": "Urgence"})

        assert delayed["scheduled_for"] is not None
        assert urgent["scheduled_for"] is None
        assert await pipeline.drain("high") == 0
        assert await pipeline.drain("critical") == 1

        pipeline.clock.advance(hours=2)
        assert await pipeline.drain("high") == 1


class TestAggregation:
    """Test suite for aggregation buckets."""

    @pytest.mark.asyncio
    async def test_followers_fold_into_leader(self):
        """Notifications in the same window are delivered once, with every item attached."""
        pipeline = Pipeline()
        await pipeline.rule_engine.add_rule(RoutingRule(
            notification_type="rsvp_received",
            actions=[{"type": "AGGREGATE", "window": 60000, "key": "rsvp"}]
        ))
        pipeline.template_engine.register_template(NotificationTemplate(
            type="rsvp_received",
            channel="realtime",
            language="fr",
            content="--- title ---\n{{ aggregated_count }} nouvelles réponses\n--- message ---\n{{ body }}"
        ))

        leader = await pipeline.service.send({"user_id": "u1", "type": "rsvp_received", "title": "Marie"})
        follower = await pipeline.service.send({"user_id": "u1", "type": "rsvp_received", "title": "Paul"})

        assert leader["status"] == "queued"
        assert follower["status"] == "aggregated"
        assert follower["aggregated_into"] == leader["id"]
        assert len(await pipeline.cache.get_list(f"aggregate_items:{leader['id']}")) == 2

        assert await pipeline.drain("medium") == 0
        pipeline.clock.advance(minutes=1)
        assert await pipeline.drain("medium") == 1

        realtime_calls = pipeline.senders["realtime"].calls
        assert len(realtime_calls) == 1
        assert realtime_calls[0]["payload"]["title"] == "2 nouvelles réponses"
        assert await pipeline.cache.get_list(f"aggregate_items:{leader['id']}") == []
        assert (await pipeline.service.get_stats())["aggregated"] == 1

    @pytest.mark.asyncio
    async def test_buckets_are_per_recipient(self):
        """Different primary recipients open their own buckets."""
        pipeline = Pipeline()
        await pipeline.rule_engine.add_rule(RoutingRule(
            notification_type="rsvp_received",
            actions=[{"type": "AGGREGATE", "window": 60000}]
        ))

        first = await pipeline.service.send({"user_id": "u1", "type": "rsvp_received", "title": "A"})
        second = await pipeline.service.send({"user_id": "u2", "type": "rsvp_received", "title": "B"})

        assert first["status"] == "queued"
        assert second["status"] == "queued"


class TestLifecycle:
    """Test suite for cancellation, expiry, bulk sends and statistics."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.pipeline = Pipeline()
        self.service = self.pipeline.service

    @pytest.mark.asyncio
    async def test_cancel_queued_notification(self):
        """Cancelling removes the job and leaves a marker."""
        later = (self.pipeline.clock.now + timedelta(hours=1)).isoformat()
        result = await self.service.send({
            "user_id": "u1", "type": "task_due", "title": "Plus tard", "scheduled_for": later
        })

        assert await self.service.cancel(result["id"])
        assert await self.service.is_cancelled(result["id"])
        assert not await self.service.cancel(result["id"])
        self.pipeline.clock.advance(hours=1)
        assert await self.pipeline.drain("high") == 0
        assert self.pipeline.outcomes(result["id"]) == ["queued", "cancelled"]

    @pytest.mark.asyncio
    async def test_cancel_unknown_id_still_marks(self):
        """A job that left the queue is dropped by its marker."""
        assert not await self.service.cancel("notif_missing")
        assert await self.service.is_cancelled("notif_missing")

    @pytest.mark.asyncio
    async def test_expired_before_delivery(self):
        """Jobs whose expiry passes in the queue are dropped as expired."""
        expires = (self.pipeline.clock.now + timedelta(seconds=30)).isoformat()
        result = await self.service.send({
            "user_id": "u1", "type": "reminder_1h", "title": "Cérémonie", "expires_at": expires
        })
        self.pipeline.clock.advance(minutes=1)

        await self.pipeline.drain("high")

        assert self.pipeline.outcomes(result["id"]) == ["queued", "expired"]
        assert self.pipeline.sent_channels(result["id"]) == []
        assert (await self.service.get_stats())["expired"] == 1

    @pytest.mark.asyncio
    async def test_bulk_send_reports_each_item(self):
        """Bulk sends keep going after an invalid item."""
        result = await self.service.send_bulk([
            {"user_id": "u1", "type": "task_due", "title": "A"},
            {"user_id": "u1", "type": "task_due"},
            {"user_id": "u2", "type": "rsvp_received", "title": "C"},
        ])

        assert result["total"] == 3
        assert result["successful"] == 2
        assert result["failed"] == 1
        assert result["results"][1]["status"] == "rejected"
        assert result["results"][1]["field_errors"][0]["field"] == "title"
        assert result["results"][2]["status"] == "queued"

    @pytest.mark.asyncio
    async def test_stats_and_delivery_history(self):
        """Statistics count outcomes per channel and history lists log entries."""
        result = await self.service.send({"user_id": "u1", "type": "task_due", "title": "A"})
        await self.pipeline.drain("high")

        stats = await self.service.get_stats()
        assert stats["queued"] == 1
        assert stats["delivered"] == 1
        assert stats["channels"]["push"] == {"sent": 1, "delivered": 1, "failed": 0}
        assert stats["queues"]["high"] == 0
        assert stats["dispatcher_healthy"] is True

        history = await self.service.deliveries(result["id"])
        assert sorted(entry["channel"] for entry in history) == ["email", "push", "realtime"]
        assert all(isinstance(entry["timestamp"], str) for entry in history)
