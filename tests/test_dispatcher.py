"""
Unit tests for the priority dispatcher.

Test Coverage:
- Lane routing and unknown lanes
- Expired, scheduled and cancelled jobs at dequeue time
- Leases, acknowledgements and redelivery after a failed handler
- Lane worker loops and concurrency limits
- Queue backend failures raising a system alarm
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List

import pytest

from support import FakeClock
from weddingbell.app.core.exceptions import ErrorCode, QueueBackendError
from weddingbell.app.core.pubsub import InMemoryPubSubBus
from weddingbell.app.core.queue_backend import InMemoryQueueBackend
from weddingbell.app.models.domain.notification import DeliveryOutcome, Notification, Priority
from weddingbell.app.services.dispatcher import Dispatcher
from weddingbell.config.settings import LaneSettings, QueueSettings


class FailingQueueBackend(InMemoryQueueBackend):
    """Backend whose dequeue always fails."""

    async def dequeue(self, lane, now=None):
        raise QueueBackendError("connection refused", lane=lane, operation="dequeue")


class TestDispatcher:
    """Test suite for dequeue-time decisions."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.clock = FakeClock()
        self.backend = InMemoryQueueBackend()
        self.handled: List[str] = []
        self.dropped: List[tuple] = []
        self.cancelled = set()

        async def handler(notification):
            self.handled.append(notification.id)

        async def drop_handler(notification, outcome):
            self.dropped.append((notification.id, outcome))

        async def is_cancelled(notification_id):
            return notification_id in self.cancelled

        self.dispatcher = Dispatcher(
            self.backend,
            QueueSettings().lanes,
            handler,
            drop_handler=drop_handler,
            is_cancelled=is_cancelled,
            clock=self.clock
        )

    def notification(self, priority=Priority.HIGH, **kwargs) -> Notification:
        return Notification(type="task_due", title="Tâche", recipients=["u1"], priority=priority, **kwargs)

    @pytest.mark.asyncio
    async def test_jobs_routed_to_their_lane(self):
        """Each notification lands in the lane of its priority."""
        await self.dispatcher.enqueue(self.notification(Priority.CRITICAL))
        await self.dispatcher.enqueue(self.notification(Priority.LOW))
        await self.dispatcher.enqueue(self.notification(Priority.LOW))

        assert await self.dispatcher.queue_sizes() == {"critical": 1, "high": 0, "medium": 0, "low": 2}

    @pytest.mark.asyncio
    async def test_due_job_is_handled(self):
        """A due job reaches the handler."""
        item = self.notification()
        await self.dispatcher.enqueue(item)

        assert await self.dispatcher.poll_lane("high")
        assert self.handled == [item.id]
        assert not await self.dispatcher.poll_lane("high")

    @pytest.mark.asyncio
    async def test_unknown_lane_rejected(self):
        """Enqueueing into a lane without workers fails loudly."""
        dispatcher = Dispatcher(self.backend, {"critical": LaneSettings()}, self.dispatcher.handler)

        with pytest.raises(QueueBackendError) as exc_info:
            await dispatcher.enqueue(self.notification(Priority.LOW))

        assert exc_info.value.error_code == ErrorCode.QUEUE_UNKNOWN_LANE

    @pytest.mark.asyncio
    async def test_expired_job_dropped(self):
        """Jobs past their expiry are dropped without processing."""
        item = self.notification(expires_at=self.clock.now + timedelta(seconds=30))
        await self.dispatcher.enqueue(item)
        self.clock.advance(minutes=1)

        assert await self.dispatcher.poll_lane("high")
        assert self.handled == []
        assert self.dropped == [(item.id, DeliveryOutcome.EXPIRED)]

    @pytest.mark.asyncio
    async def test_scheduled_job_waits(self):
        """A scheduled job stays invisible until its time comes."""
        item = self.notification(scheduled_for=self.clock.now + timedelta(minutes=10))
        await self.dispatcher.enqueue(item)

        assert not await self.dispatcher.poll_lane("high")

        self.clock.advance(minutes=10)
        assert await self.dispatcher.poll_lane("high")
        assert self.handled == [item.id]

    @pytest.mark.asyncio
    async def test_job_seen_early_is_requeued(self):
        """A job surfaced before its scheduled time goes back with delayed visibility."""
        item = self.notification(scheduled_for=self.clock.now + timedelta(minutes=5))
        await self.backend.enqueue("high", item.to_dict(), available_at=self.clock.now.timestamp())

        assert await self.dispatcher.poll_lane("high")
        assert self.handled == []
        assert await self.backend.size("high") == 1

        self.clock.advance(minutes=5)
        assert await self.dispatcher.poll_lane("high")
        assert self.handled == [item.id]

    @pytest.mark.asyncio
    async def test_cancelled_job_dropped(self):
        """A job with a cancellation marker is dropped as cancelled."""
        item = self.notification()
        await self.dispatcher.enqueue(item)
        self.cancelled.add(item.id)

        await self.dispatcher.poll_lane("high")

        assert self.handled == []
        assert self.dropped == [(item.id, DeliveryOutcome.CANCELLED)]

    @pytest.mark.asyncio
    async def test_remove_queued_job(self):
        """A queued job can be removed before a worker takes it."""
        item = self.notification(Priority.MEDIUM)
        await self.dispatcher.enqueue(item)

        assert await self.dispatcher.remove(item.id)
        assert not await self.dispatcher.remove(item.id)
        assert not await self.dispatcher.poll_lane("medium")

    @pytest.mark.asyncio
    async def test_handled_job_acknowledged(self):
        """A handled job is deleted and never handed out again."""
        await self.dispatcher.enqueue(self.notification())

        assert await self.dispatcher.poll_lane("high")
        assert await self.backend.size("high") == 0

        self.clock.advance(minutes=10)
        assert not await self.dispatcher.poll_lane("high")

    @pytest.mark.asyncio
    async def test_failed_handler_redelivers_after_lease(self):
        """A job whose handler raised stays leased, then comes back."""
        attempts: List[str] = []

        async def flaky_handler(notification):
            attempts.append(notification.id)
            if len(attempts) == 1:
                raise RuntimeError("worker crashed")

        backend = InMemoryQueueBackend(visibility_timeout=60)
        dispatcher = Dispatcher(backend, QueueSettings().lanes, flaky_handler, clock=self.clock)
        item = self.notification()
        await dispatcher.enqueue(item)

        with pytest.raises(RuntimeError):
            await dispatcher.poll_lane("high")
        assert await backend.size("high") == 1
        assert not await dispatcher.poll_lane("high")
        assert not await dispatcher.remove(item.id)

        self.clock.advance(seconds=61)
        assert await dispatcher.poll_lane("high")
        assert attempts == [item.id, item.id]
        assert await backend.size("high") == 0


class TestLaneWorkers:
    """Test suite for the running worker loops."""

    @pytest.mark.asyncio
    async def test_workers_drain_lanes(self):
        """Started workers process queued jobs in every lane."""
        done = asyncio.Event()
        handled: List[str] = []

        async def handler(notification):
            handled.append(notification.priority.value)
            if len(handled) == 2:
                done.set()

        lanes = {"critical": LaneSettings(poll_interval=0.01, concurrency=2),
                 "low": LaneSettings(poll_interval=0.01, concurrency=1)}
        dispatcher = Dispatcher(InMemoryQueueBackend(), lanes, handler)
        await dispatcher.enqueue(Notification(type="x", title="x", recipients=["u1"], priority=Priority.LOW))
        await dispatcher.enqueue(Notification(type="x", title="x", recipients=["u1"], priority=Priority.CRITICAL))

        await dispatcher.start()
        try:
            await asyncio.wait_for(done.wait(), timeout=2)
        finally:
            await dispatcher.stop()

        assert sorted(handled) == ["critical", "low"]
        assert not dispatcher.is_running
        assert dispatcher.is_healthy

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        """A lane never runs more jobs at once than its concurrency."""
        running = 0
        peak = 0
        finished = 0
        all_done = asyncio.Event()

        async def handler(notification):
            nonlocal running, peak, finished
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            finished += 1
            if finished == 5:
                all_done.set()

        dispatcher = Dispatcher(
            InMemoryQueueBackend(),
            {"medium": LaneSettings(poll_interval=0.01, concurrency=2)},
            handler
        )
        for _ in range(5):
            await dispatcher.enqueue(
                Notification(type="x", title="x", recipients=["u1"], priority=Priority.MEDIUM)
            )

        await dispatcher.start()
        try:
            await asyncio.wait_for(all_done.wait(), timeout=2)
        finally:
            await dispatcher.stop()

        assert peak == 2

    @pytest.mark.asyncio
    async def test_backend_failure_raises_alarm(self):
        """A failing backend stops the lane and alerts the admin room."""
        bus = InMemoryPubSubBus()
        alarms: List[Dict[str, Any]] = []
        raised = asyncio.Event()

        async def on_admin(channel, message):
            alarms.append(message)
            raised.set()

        await bus.subscribe("admin", on_admin)

        async def handler(notification):
            raise AssertionError("no job should be handled")

        dispatcher = Dispatcher(
            FailingQueueBackend(),
            {"high": LaneSettings(poll_interval=0.01, concurrency=1)},
            handler,
            bus=bus
        )

        await dispatcher.start()
        try:
            await asyncio.wait_for(raised.wait(), timeout=2)
        finally:
            await dispatcher.stop()

        assert not dispatcher.is_healthy
        assert dispatcher.failed_lanes == ["high"]
        assert alarms[0]["type"] == "system_alarm"
        assert alarms[0]["data"]["lane"] == "high"
        assert alarms[0]["data"]["code"] == ErrorCode.QUEUE_BACKEND_UNAVAILABLE.value

    @pytest.mark.asyncio
    async def test_worker_failure_leaves_job_leased(self):
        """A crashing handler does not lose the job or stop the lane."""
        backend = InMemoryQueueBackend()
        crashed = asyncio.Event()

        async def handler(notification):
            crashed.set()
            raise RuntimeError("boom")

        dispatcher = Dispatcher(backend, {"high": LaneSettings(poll_interval=0.01, concurrency=1)}, handler)
        await dispatcher.enqueue(Notification(type="x", title="x", recipients=["u1"], priority=Priority.HIGH))

        await dispatcher.start()
        try:
            await asyncio.wait_for(crashed.wait(), timeout=2)
        finally:
            await dispatcher.stop()

        assert await backend.size("high") == 1
        assert dispatcher.is_healthy
