"""
Notification API routes.

Endpoints:
- POST   /notifications                    send one notification
- POST   /notifications/bulk               send many, outcome per item
- DELETE /notifications/{id}               cancel a queued notification
- GET    /notifications/stats              counters and queue sizes
- GET    /notifications/{id}/deliveries    delivery log of one notification
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from weddingbell.app.api.deps import get_notification_service
from weddingbell.app.models.api.notification_schemas import (
    BulkNotificationRequest,
    BulkNotificationResponse,
    CancelResponse,
    DeliveryListResponse,
    NotificationRequest,
    NotificationResponse,
)
from weddingbell.app.services.notification_service import NotificationService
from weddingbell.app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "",
    response_model=NotificationResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send a notification"
)
async def send_notification(
    request: NotificationRequest,
    service: NotificationService = Depends(get_notification_service)
) -> Dict[str, Any]:
    """
    Validate, route and queue one notification.

    The response reports whether it was queued, suppressed by a rule, folded
    into an aggregation bucket, or dropped for lack of an eligible channel.
    """
    return await service.send(request.to_request())


@router.post(
    "/bulk",
    response_model=BulkNotificationResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send many notifications"
)
async def send_bulk_notifications(
    request: BulkNotificationRequest,
    service: NotificationService = Depends(get_notification_service)
) -> Dict[str, Any]:
    """Invalid items are rejected individually; the rest are still sent."""
    return await service.send_bulk(request.notifications)


@router.get("/stats", summary="Notification statistics")
async def get_notification_stats(
    service: NotificationService = Depends(get_notification_service)
) -> Dict[str, Any]:
    return await service.get_stats()


@router.delete("/{notification_id}", response_model=CancelResponse, summary="Cancel a notification")
async def cancel_notification(
    notification_id: str,
    service: NotificationService = Depends(get_notification_service)
) -> Dict[str, Any]:
    cancelled = await service.cancel(notification_id)
    return {"id": notification_id, "cancelled": cancelled}


@router.get(
    "/{notification_id}/deliveries",
    response_model=DeliveryListResponse,
    summary="Delivery log of a notification"
)
async def get_notification_deliveries(
    notification_id: str,
    service: NotificationService = Depends(get_notification_service)
) -> Dict[str, Any]:
    return {
        "notification_id": notification_id,
        "deliveries": await service.deliveries(notification_id),
    }
