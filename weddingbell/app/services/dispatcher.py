"""
Priority dispatcher for queued notifications.

One worker loop runs per lane. Each loop polls the queue backend on the
lane's interval and processes up to ``concurrency`` jobs at once, every job
held to completion (all channel sends settled) before its slot is released.

At dequeue time a job is:
- dropped as ``expired`` when past ``expires_at``
- put back with delayed visibility when ``scheduled_for`` is in the future
- dropped as ``cancelled`` when a cancellation marker exists
- otherwise handed to the processing handler

Jobs are leased from the backend and acknowledged once handled; a job whose
handler raised keeps its lease and is handed out again when the lease runs
out.

A ``QueueBackendError`` stops the affected lane, marks the dispatcher
unhealthy and raises a system alarm. It is never retried here.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from weddingbell.app.core.exceptions import ErrorCode, QueueBackendError
from weddingbell.app.core.pubsub import PubSubBus
from weddingbell.app.core.queue_backend import QueueBackend
from weddingbell.app.models.domain.notification import (
    DeliveryOutcome,
    Notification,
    format_datetime,
    utc_now,
)
from weddingbell.app.utils.logging import get_logger
from weddingbell.config.settings import LaneSettings

logger = get_logger(__name__)

ADMIN_ROOM = "admin"

JobHandler = Callable[[Notification], Awaitable[Any]]
DropHandler = Callable[[Notification, DeliveryOutcome], Awaitable[None]]
CancelCheck = Callable[[str], Awaitable[bool]]


class Dispatcher:
    """
    Runs the per-lane worker pools.

    Usage:
        dispatcher = Dispatcher(backend, settings.queue.lanes, service.process)
        await dispatcher.start()
        await dispatcher.enqueue(notification)
    """

    def __init__(
        self,
        backend: QueueBackend,
        lanes: Dict[str, LaneSettings],
        handler: JobHandler,
        drop_handler: Optional[DropHandler] = None,
        is_cancelled: Optional[CancelCheck] = None,
        bus: Optional[PubSubBus] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.backend = backend
        self.lanes = dict(lanes)
        self.handler = handler
        self.drop_handler = drop_handler
        self.is_cancelled = is_cancelled
        self.bus = bus
        self.clock = clock

        self._semaphores = {
            lane: asyncio.Semaphore(settings.concurrency) for lane, settings in self.lanes.items()
        }
        self._lane_tasks: Dict[str, asyncio.Task] = {}
        self._active_jobs: Set[asyncio.Task] = set()
        self._failed_lanes: Set[str] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_healthy(self) -> bool:
        return not self._failed_lanes

    @property
    def failed_lanes(self) -> List[str]:
        return sorted(self._failed_lanes)

    async def start(self) -> None:
        """Start one worker loop per lane."""
        if self._running:
            return
        self._running = True
        for lane in self.lanes:
            self._lane_tasks[lane] = asyncio.create_task(self._lane_loop(lane))
        logger.info("Dispatcher started", lanes=list(self.lanes))

    async def stop(self) -> None:
        """Stop polling and wait for in-flight jobs to settle."""
        self._running = False

        for task in self._lane_tasks.values():
            task.cancel()
        if self._lane_tasks:
            await asyncio.gather(*self._lane_tasks.values(), return_exceptions=True)
        self._lane_tasks.clear()

        if self._active_jobs:
            await asyncio.gather(*self._active_jobs, return_exceptions=True)

        logger.info("Dispatcher stopped")

    async def enqueue(self, notification: Notification) -> None:
        """
        Queue a notification in its priority lane.

        Raises:
            QueueBackendError: If the lane is unknown or the backend fails
        """
        lane = notification.lane
        if lane not in self.lanes:
            raise QueueBackendError(
                f"Unknown lane: {lane}",
                error_code=ErrorCode.QUEUE_UNKNOWN_LANE,
                lane=lane,
                operation="enqueue"
            )

        available_at = (notification.scheduled_for or self.clock()).timestamp()
        await self.backend.enqueue(lane, notification.to_dict(), available_at=available_at)
        logger.debug(
            "Job enqueued",
            notification_id=notification.id,
            lane=lane,
            scheduled_for=format_datetime(notification.scheduled_for)
        )

    async def remove(self, notification_id: str) -> bool:
        """Remove a still-queued job from whichever lane holds it."""
        for lane in self.lanes:
            if await self.backend.remove(lane, notification_id):
                return True
        return False

    async def queue_sizes(self) -> Dict[str, int]:
        return {lane: await self.backend.size(lane) for lane in self.lanes}

    async def poll_lane(self, lane: str) -> bool:
        """
        Dequeue and handle one visible job from ``lane``.

        Returns:
            True if a job was taken from the queue
        """
        job = await self.backend.dequeue(lane, now=self.clock().timestamp())
        if job is None:
            return False
        if await self._handle_job(lane, job):
            await self.backend.ack(lane, job["id"])
        return True

    async def _lane_loop(self, lane: str) -> None:
        settings = self.lanes[lane]
        semaphore = self._semaphores[lane]
        logger.info("Lane worker started", lane=lane, concurrency=settings.concurrency)

        while self._running:
            await semaphore.acquire()
            try:
                job = await self.backend.dequeue(lane, now=self.clock().timestamp())
            except QueueBackendError as e:
                semaphore.release()
                await self._raise_alarm(lane, e)
                return
            except asyncio.CancelledError:
                semaphore.release()
                raise

            if job is None:
                semaphore.release()
                await asyncio.sleep(settings.poll_interval)
                continue

            task = asyncio.create_task(self._run_job(lane, job, semaphore))
            self._active_jobs.add(task)
            task.add_done_callback(self._active_jobs.discard)

        logger.info("Lane worker stopped", lane=lane)

    async def _run_job(self, lane: str, job: Dict[str, Any], semaphore: asyncio.Semaphore) -> None:
        try:
            if await self._handle_job(lane, job):
                await self.backend.ack(lane, job["id"])
        except QueueBackendError as e:
            await self._raise_alarm(lane, e)
            task = self._lane_tasks.get(lane)
            if task is not None:
                task.cancel()
        except Exception as e:
            logger.error(
                "Job processing failed, left for redelivery",
                lane=lane,
                notification_id=job.get("id"),
                error=str(e),
                exc_info=True
            )
        finally:
            semaphore.release()

    async def _handle_job(self, lane: str, job: Dict[str, Any]) -> bool:
        """Handle one leased job. False when it went back to the queue instead."""
        try:
            notification = Notification.from_dict(job)
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Dropping malformed job", lane=lane, job_id=job.get("id"), error=str(e))
            return "id" in job

        now = self.clock()

        if notification.is_expired(now):
            logger.info("Notification expired before delivery", notification_id=notification.id, lane=lane)
            await self._drop(notification, DeliveryOutcome.EXPIRED)
            return True

        if not notification.is_due(now):
            await self.backend.enqueue(lane, job, available_at=notification.scheduled_for.timestamp())
            logger.debug(
                "Job not due yet, requeued",
                notification_id=notification.id,
                scheduled_for=format_datetime(notification.scheduled_for)
            )
            return False

        if self.is_cancelled is not None and await self.is_cancelled(notification.id):
            logger.info("Cancelled notification dropped", notification_id=notification.id, lane=lane)
            await self._drop(notification, DeliveryOutcome.CANCELLED)
            return True

        await self.handler(notification)
        return True

    async def _drop(self, notification: Notification, outcome: DeliveryOutcome) -> None:
        if self.drop_handler is not None:
            await self.drop_handler(notification, outcome)

    async def _raise_alarm(self, lane: str, error: QueueBackendError) -> None:
        self._failed_lanes.add(lane)
        logger.critical(
            "Queue backend failure, lane stopped",
            lane=lane,
            error_code=error.error_code.value,
            error=error.message
        )
        if self.bus is None:
            return

        frame = {
            "type": "system_alarm",
            "data": {
                "component": "dispatcher",
                "lane": lane,
                "code": error.error_code.value,
                "message": error.message,
            },
            "timestamp": format_datetime(self.clock()),
        }
        try:
            await self.bus.publish(ADMIN_ROOM, frame)
        except Exception as e:
            logger.error("Failed to broadcast system alarm", lane=lane, error=str(e))
