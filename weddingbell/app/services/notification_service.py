"""
Notification Service - orchestration of the delivery pipeline.

This module ties the pipeline together: requests are validated into
notifications, routed by the rule engine, given channels by the channel
resolver and queued in their priority lane. When the dispatcher hands a job
back, the service renders one payload per channel, fans out to the channel
senders and records every outcome in the delivery log.

Key Features:
- Validation of single and bulk requests with per-item outcomes
- Frequency-cap suppression, quiet-hours delay and aggregation buckets
- Cancellation markers re-checked at dequeue time
- Per-channel idempotency through the delivery log
- Per-channel failure isolation: one failed channel never aborts another
- Delivery statistics per outcome and per channel
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from weddingbell.app.core.cache import Cache
from weddingbell.app.core.exceptions import QueueBackendError, TemplateError, ValidationError
from weddingbell.app.core.pubsub import PubSubBus
from weddingbell.app.core.queue_backend import QueueBackend
from weddingbell.app.models.domain.notification import (
    ALL_CHANNELS,
    ChannelResult,
    DeliveryLogEntry,
    DeliveryOutcome,
    Notification,
    NotificationStatus,
    Priority,
    format_datetime,
    parse_datetime,
    priority_for_type,
    utc_now,
)
from weddingbell.app.repositories.interfaces import DeliveryLogRepository
from weddingbell.app.services.channel_resolver import ChannelResolver
from weddingbell.app.services.channels.base import ChannelSender
from weddingbell.app.services.dispatcher import Dispatcher
from weddingbell.app.services.rule_engine import RuleEngine
from weddingbell.app.services.template_engine import TemplateEngine
from weddingbell.app.utils.logging import correlation_context, get_logger, log_delivery_outcome
from weddingbell.config.settings import LaneSettings

logger = get_logger(__name__)

CANCEL_MARKER_TTL = 7 * 24 * 3600


@dataclass
class NotificationStats:
    """Counters for the notification pipeline."""
    queued: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    expired: int = 0
    suppressed: int = 0
    cancelled: int = 0
    aggregated: int = 0
    no_eligible_channel: int = 0
    channel_stats: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def record_channel(self, channel: str, success: bool) -> None:
        counters = self.channel_stats.setdefault(channel, {"sent": 0, "delivered": 0, "failed": 0})
        counters["sent"] += 1
        counters["delivered" if success else "failed"] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queued": self.queued,
            "sent": self.sent,
            "delivered": self.delivered,
            "failed": self.failed,
            "expired": self.expired,
            "suppressed": self.suppressed,
            "cancelled": self.cancelled,
            "aggregated": self.aggregated,
            "no_eligible_channel": self.no_eligible_channel,
            "channels": {k: dict(v) for k, v in self.channel_stats.items()},
        }


@dataclass
class ProcessResult:
    """Outcome of processing one dequeued notification."""
    notification_id: str
    status: NotificationStatus
    channels: Dict[str, ChannelResult] = field(default_factory=dict)

    @property
    def delivered_channels(self) -> List[str]:
        return [c for c, r in self.channels.items() if r.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "status": self.status.value,
            "channels": {c: r.to_dict() for c, r in self.channels.items()},
        }


class NotificationService:
    """
    Business logic service for wedding notifications.

    Usage:
        service = NotificationService(rule_engine, resolver, templates, log, cache, senders)
        service.attach_dispatcher(dispatcher)
        result = await service.send({"user_id": "u1", "type": "reminder_24h", "title": "..."})
    """

    def __init__(
        self,
        rule_engine: RuleEngine,
        channel_resolver: ChannelResolver,
        template_engine: TemplateEngine,
        delivery_log: DeliveryLogRepository,
        cache: Cache,
        senders: Dict[str, ChannelSender],
        dispatcher: Optional[Dispatcher] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the notification service.

        Args:
            rule_engine: Routing rule evaluation
            channel_resolver: Per-recipient channel determination
            template_engine: Payload rendering per channel
            delivery_log: Append-only outcome store
            cache: Cancellation markers and aggregation buckets
            senders: Channel name to sender
            dispatcher: Priority dispatcher; see ``attach_dispatcher``
            clock: Source of the current time
        """
        self.rule_engine = rule_engine
        self.channel_resolver = channel_resolver
        self.template_engine = template_engine
        self.delivery_log = delivery_log
        self.cache = cache
        self.senders = dict(senders)
        self.dispatcher = dispatcher
        self.clock = clock
        self.stats = NotificationStats()

    def attach_dispatcher(self, dispatcher: Dispatcher) -> None:
        self.dispatcher = dispatcher

    def build_dispatcher(
        self,
        backend: QueueBackend,
        lanes: Dict[str, LaneSettings],
        bus: Optional[PubSubBus] = None
    ) -> Dispatcher:
        """Create the dispatcher that feeds queued jobs back into ``process``."""
        dispatcher = Dispatcher(
            backend,
            lanes,
            handler=self.process,
            drop_handler=self.record_drop,
            is_cancelled=self.is_cancelled,
            bus=bus,
            clock=self.clock
        )
        self.attach_dispatcher(dispatcher)
        return dispatcher

    # Validation

    def validate(self, request: Dict[str, Any]) -> Notification:
        """
        Build a notification from a request dictionary.

        Raises:
            ValidationError: If recipients, type or title are missing, or a
                field has an invalid value
        """
        field_errors: List[Dict[str, Any]] = []

        recipients = request.get("user_ids") or request.get("recipients")
        if recipients is None and request.get("user_id"):
            recipients = [request["user_id"]]
        if isinstance(recipients, str):
            recipients = [recipients]
        valid_recipients = isinstance(recipients, list) and all(isinstance(r, str) and r for r in recipients)
        if not recipients or not valid_recipients:
            field_errors.append({"field": "user_id", "message": "At least one recipient is required"})

        notification_type = request.get("type")
        if not notification_type or not isinstance(notification_type, str):
            field_errors.append({"field": "type", "message": "Notification type is required"})

        title = request.get("title")
        if not title or not isinstance(title, str):
            field_errors.append({"field": "title", "message": "Title is required"})

        priority = None
        if request.get("priority") is not None:
            try:
                priority = Priority.coerce(request["priority"])
            except ValueError:
                field_errors.append({"field": "priority", "message": f"Invalid priority: {request['priority']}"})

        channels = list(request.get("channels") or [])
        unknown = [c for c in channels if c not in ALL_CHANNELS]
        if unknown:
            field_errors.append({"field": "channels", "message": f"Unknown channels: {unknown}"})

        times: Dict[str, Optional[datetime]] = {}
        for name in ("scheduled_for", "expires_at"):
            try:
                times[name] = parse_datetime(request.get(name))
            except ValueError:
                field_errors.append({"field": name, "message": f"Invalid datetime: {request.get(name)}"})

        if field_errors:
            raise ValidationError(
                "; ".join(e["message"] for e in field_errors),
                field_errors=field_errors
            )

        kwargs: Dict[str, Any] = {}
        if request.get("id"):
            kwargs["id"] = str(request["id"])

        metadata = dict(request.get("metadata") or {})
        metadata.update(request.get("data") or {})

        # de-duplicate while keeping recipient order
        return Notification(
            type=notification_type,
            title=title,
            body=request.get("body") or request.get("message") or "",
            recipients=list(dict.fromkeys(recipients)),
            priority=priority or priority_for_type(notification_type),
            channels=channels,
            scheduled_for=times.get("scheduled_for"),
            expires_at=times.get("expires_at"),
            metadata=metadata,
            language=request.get("language"),
            wedding_id=request.get("wedding_id"),
            **kwargs
        )

    # Sending

    async def send(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate, route and queue one notification.

        Returns:
            ``{id, status, priority, channels}`` where status is one of
            queued, suppressed, aggregated or no_eligible_channel

        Raises:
            ValidationError: If the request is invalid
            QueueBackendError: If the queue backend is unavailable
        """
        notification = self.validate(request)
        routed = await self.rule_engine.apply_rules(notification)

        if routed.status == NotificationStatus.SUPPRESSED:
            self.stats.suppressed += 1
            await self._record(routed, DeliveryOutcome.SUPPRESSED)
            return self._send_result(routed)

        channels = await self.channel_resolver.determine_channels(routed)
        if not channels:
            routed.status = NotificationStatus.NO_ELIGIBLE_CHANNEL
            self.stats.no_eligible_channel += 1
            await self._record(routed, DeliveryOutcome.NO_ELIGIBLE_CHANNEL)
            return self._send_result(routed)

        if routed.aggregate:
            folded_into = await self._aggregate(routed)
            if folded_into is not None:
                routed.status = NotificationStatus.AGGREGATED
                self.stats.aggregated += 1
                result = self._send_result(routed)
                result["aggregated_into"] = folded_into
                return result

        await self._enqueue(routed)
        return self._send_result(routed)

    async def send_bulk(self, requests: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Send many notifications. Every item gets its own outcome.

        Returns:
            ``{total, successful, failed, results}`` with one result per item
        """
        results: List[Dict[str, Any]] = []
        for index, request in enumerate(requests):
            try:
                outcome = await self.send(request)
            except ValidationError as e:
                results.append({
                    "index": index,
                    "status": "rejected",
                    "error": e.message,
                    "field_errors": e.details.get("field_errors", []),
                })
                continue
            except TemplateError as e:
                results.append({"index": index, "status": "rejected", "error": e.message})
                continue
            results.append({"index": index, **outcome})

        failed = sum(1 for r in results if r["status"] == "rejected")
        logger.info("Bulk send completed", total=len(requests), failed=failed)
        return {
            "total": len(requests),
            "successful": len(requests) - failed,
            "failed": failed,
            "results": results,
        }

    async def cancel(self, notification_id: str) -> bool:
        """
        Cancel a queued notification.

        The job is removed from its lane when still there. A cancellation
        marker is always left so a job already in flight is dropped at
        dequeue time.

        Returns:
            True if the job was removed from the queue
        """
        await self.cache.set(self._cancel_key(notification_id), True, ttl=CANCEL_MARKER_TTL)
        removed = False
        if self.dispatcher is not None:
            removed = await self.dispatcher.remove(notification_id)

        if removed:
            self.stats.cancelled += 1
            await self.delivery_log.append(DeliveryLogEntry(
                notification_id=notification_id,
                outcome=DeliveryOutcome.CANCELLED,
                timestamp=self.clock(),
            ))
            log_delivery_outcome(notification_id, None, DeliveryOutcome.CANCELLED.value)

        logger.info("Notification cancelled", notification_id=notification_id, removed_from_queue=removed)
        return removed

    async def is_cancelled(self, notification_id: str) -> bool:
        return await self.cache.get(self._cancel_key(notification_id)) is not None

    @staticmethod
    def _cancel_key(notification_id: str) -> str:
        return f"cancelled:{notification_id}"

    async def _enqueue(self, notification: Notification) -> None:
        if self.dispatcher is None:
            raise RuntimeError("NotificationService has no dispatcher attached")
        notification.status = NotificationStatus.QUEUED
        try:
            await self.dispatcher.enqueue(notification)
        except QueueBackendError as e:
            e.add_context("notification_id", notification.id)
            raise
        self.stats.queued += 1
        await self._record(notification, DeliveryOutcome.QUEUED)
        logger.info(
            "Notification queued",
            notification_id=notification.id,
            lane=notification.lane,
            channels=notification.resolved_channels,
            scheduled_for=format_datetime(notification.scheduled_for)
        )

    async def _aggregate(self, notification: Notification) -> Optional[str]:
        """
        Open or join an aggregation bucket.

        Returns:
            The id of the notification that opened the bucket when this one
            was folded into it, None when this one opened a new bucket
        """
        window_ms = int(notification.aggregate["window_ms"])
        bucket_key = f"aggregate:{notification.primary_recipient}:{notification.aggregate['key']}"
        item = {
            "id": notification.id,
            "title": notification.title,
            "body": notification.body,
            "timestamp": format_datetime(notification.timestamp),
        }

        opened = await self.cache.set_if_absent(bucket_key, notification.id, ttl=window_ms / 1000.0)
        if opened:
            items_key = f"aggregate_items:{notification.id}"
            # items must outlive the bucket until it is processed
            await self.cache.append(items_key, item, ttl=window_ms / 500.0 + 60)
            due = self.clock() + timedelta(milliseconds=window_ms)
            if notification.scheduled_for is None or notification.scheduled_for < due:
                notification.scheduled_for = due
            notification.metadata["aggregate_items_key"] = items_key
            return None

        leader_id = await self.cache.get(bucket_key)
        if leader_id is None:
            # bucket expired between the two calls
            return await self._aggregate(notification)
        await self.cache.append(f"aggregate_items:{leader_id}", item, ttl=window_ms / 500.0 + 60)
        logger.info("Notification aggregated", notification_id=notification.id, aggregated_into=leader_id)
        return leader_id

    def _send_result(self, notification: Notification) -> Dict[str, Any]:
        return {
            "id": notification.id,
            "status": notification.status.value,
            "priority": notification.lane,
            "channels": list(notification.resolved_channels),
            "scheduled_for": format_datetime(notification.scheduled_for),
        }

    # Processing

    async def process(self, notification: Notification) -> ProcessResult:
        """
        Deliver a dequeued notification on every resolved channel.

        Channels already delivered for this notification id are skipped.
        Channel sends run concurrently and every outcome is logged once all
        of them have settled.
        """
        with correlation_context(notification.id):
            await self._attach_aggregated_items(notification)

            channel_recipients = notification.channel_recipients
            if not channel_recipients:
                await self.channel_resolver.determine_channels(notification)
                channel_recipients = notification.channel_recipients

            channels = list(channel_recipients)
            outcomes = await asyncio.gather(*(
                self._process_channel(notification, channel, channel_recipients[channel])
                for channel in channels
            ))

            results: Dict[str, ChannelResult] = {}
            for channel, (result, already_sent) in zip(channels, outcomes):
                results[channel] = result
                if already_sent:
                    await self._record(notification, DeliveryOutcome.ALREADY_SENT, channel=channel)
                    continue
                self.stats.record_channel(channel, result.success)
                await self._record(
                    notification,
                    DeliveryOutcome.DELIVERED if result.success else DeliveryOutcome.FAILED,
                    channel=channel,
                    retry_count=result.retry_count,
                    error=result.error
                )

            delivered = any(r.success for r in results.values())
            status = NotificationStatus.DELIVERED if delivered else NotificationStatus.FAILED
            self.stats.sent += 1
            if delivered:
                self.stats.delivered += 1
            else:
                self.stats.failed += 1

            logger.info(
                "Notification processed",
                notification_id=notification.id,
                status=status.value,
                channels=channels
            )
            return ProcessResult(notification_id=notification.id, status=status, channels=results)

    async def _process_channel(
        self,
        notification: Notification,
        channel: str,
        recipients: List[str]
    ) -> Tuple[ChannelResult, bool]:
        if await self.delivery_log.has_delivered(notification.id, channel):
            return ChannelResult(channel=channel, success=True), True

        sender = self.senders.get(channel)
        if sender is None:
            return ChannelResult(
                channel=channel,
                success=False,
                error=f"No sender registered for channel {channel}",
                permanent=True
            ), False

        try:
            payload = self.template_engine.render(
                notification.type,
                channel,
                notification.language,
                self._template_data(notification)
            )
        except TemplateError as e:
            logger.error(
                "Template rendering failed, channel skipped",
                notification_id=notification.id,
                channel=channel,
                error_code=e.error_code.value,
                error=e.message
            )
            return ChannelResult(channel=channel, success=False, error=e.message, permanent=True), False

        return await sender.deliver(notification, payload, recipients), False

    def _template_data(self, notification: Notification) -> Dict[str, Any]:
        data = dict(notification.metadata)
        data.update({
            "notification_id": notification.id,
            "title": notification.title,
            "body": notification.body,
            "message": notification.body,
            "priority": notification.lane,
            "wedding_id": notification.wedding_id,
        })
        return data

    async def _attach_aggregated_items(self, notification: Notification) -> None:
        items_key = notification.metadata.get("aggregate_items_key")
        if not items_key:
            return
        items = await self.cache.get_list(items_key)
        notification.metadata["aggregated_items"] = items
        notification.metadata["aggregated_count"] = len(items)
        await self.cache.delete(items_key)

    async def record_drop(self, notification: Notification, outcome: DeliveryOutcome) -> None:
        """Record a job the dispatcher dropped without sending."""
        if outcome == DeliveryOutcome.EXPIRED:
            self.stats.expired += 1
        elif outcome == DeliveryOutcome.CANCELLED:
            self.stats.cancelled += 1
        await self._record(notification, outcome)

    async def _record(
        self,
        notification: Notification,
        outcome: DeliveryOutcome,
        channel: Optional[str] = None,
        retry_count: int = 0,
        error: Optional[str] = None
    ) -> None:
        await self.delivery_log.append(DeliveryLogEntry(
            notification_id=notification.id,
            outcome=outcome,
            channel=channel,
            user_id=notification.primary_recipient,
            notification_type=notification.type,
            retry_count=retry_count,
            error=error,
            timestamp=self.clock(),
        ))
        log_delivery_outcome(
            notification.id,
            channel,
            outcome.value,
            retry_count=retry_count,
            error=error,
            notification_type=notification.type
        )

    # Queries

    async def deliveries(self, notification_id: str) -> List[Dict[str, Any]]:
        entries = await self.delivery_log.entries_for(notification_id)
        return [
            {**entry.to_dict(), "timestamp": format_datetime(entry.timestamp)}
            for entry in entries
        ]

    async def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.to_dict()
        if self.dispatcher is not None:
            stats["queues"] = await self.dispatcher.queue_sizes()
            stats["dispatcher_healthy"] = self.dispatcher.is_healthy
        return stats
