"""
Pydantic API schemas for the notification endpoints.

Request bodies are validated here only for shape. Business validation
(required recipients, known channels, parseable dates) stays in
``NotificationService.validate`` so bulk requests can report it per item.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NotificationRequest(BaseModel):
    """Schema for a single notification send request."""

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "user_id": "user_123",
                "type": "reminder_24h",
                "title": "Votre mariage est demain !",
                "message": "Tout est prêt pour le grand jour.",
                "wedding_id": "wedding_42",
                "data": {"wedding": {"name": "Mariage de Marie & Pierre"}},
            }
        }
    )

    id: Optional[str] = Field(None, description="Caller-supplied notification ID")
    user_id: Optional[str] = Field(None, description="Single recipient")
    user_ids: Optional[List[str]] = Field(None, description="Several recipients")
    type: Optional[str] = Field(None, description="Notification type, e.g. payment_failed")
    title: Optional[str] = Field(None, description="Short title")
    message: Optional[str] = Field(None, description="Body text")
    body: Optional[str] = Field(None, description="Alias of message")
    priority: Optional[str] = Field(None, description="critical, high, medium or low")
    channels: Optional[List[str]] = Field(None, description="Channels to force")
    wedding_id: Optional[str] = Field(None, description="Wedding the notification concerns")
    language: Optional[str] = Field(None, description="Template language")
    data: Optional[Dict[str, Any]] = Field(None, description="Template variables")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Template variables")
    scheduled_for: Optional[str] = Field(None, description="ISO datetime before which nothing is sent")
    expires_at: Optional[str] = Field(None, description="ISO datetime after which nothing is sent")

    def to_request(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class NotificationResponse(BaseModel):
    """Result of a send request."""
    id: str = Field(..., description="Notification ID")
    status: str = Field(..., description="queued, suppressed, aggregated or no_eligible_channel")
    priority: str = Field(..., description="Resolved priority lane")
    channels: List[str] = Field(default_factory=list, description="Resolved channels")
    scheduled_for: Optional[str] = Field(None, description="Scheduled delivery time")
    aggregated_into: Optional[str] = Field(None, description="Bucket leader when folded")


class BulkNotificationRequest(BaseModel):
    """Schema for a bulk send. Items are validated one by one."""
    notifications: List[Dict[str, Any]] = Field(
        ...,
        description="Send requests, each shaped like NotificationRequest",
        max_length=1000
    )


class BulkNotificationResponse(BaseModel):
    total: int
    successful: int
    failed: int
    results: List[Dict[str, Any]]


class CancelResponse(BaseModel):
    id: str = Field(..., description="Notification ID")
    cancelled: bool = Field(..., description="True if the job was still queued and removed")


class DeliveryRecord(BaseModel):
    """One delivery log entry."""
    notification_id: str
    outcome: str
    channel: Optional[str] = None
    user_id: Optional[str] = None
    notification_type: Optional[str] = None
    timestamp: Optional[str] = None
    retry_count: int = 0
    error: Optional[str] = None


class DeliveryListResponse(BaseModel):
    notification_id: str
    deliveries: List[DeliveryRecord]
