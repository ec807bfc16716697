"""
Pydantic API schemas for preference, template and rule management.
"""

from datetime import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from weddingbell.app.models.domain.notification import ALL_CHANNELS


class QuietHoursSchema(BaseModel):
    start: str = Field(..., description="Local start time, HH:MM", pattern=r"^\d{2}:\d{2}$")
    end: str = Field(..., description="Local end time, HH:MM", pattern=r"^\d{2}:\d{2}$")
    timezone: str = Field("Europe/Paris", description="IANA timezone name")

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, v):
        try:
            time.fromisoformat(v)
        except ValueError:
            raise ValueError(f"{v} is not a valid HH:MM time")
        return v


class PreferencesUpdateRequest(BaseModel):
    """Partial preference update. Unknown keys are stored as extra preferences."""

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "push_notifications": False,
                "quiet_hours": {"start": "22:00", "end": "08:00", "timezone": "Europe/Paris"},
            }
        }
    )

    realtime_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    email_notifications: Optional[bool] = None
    sms_notifications: Optional[bool] = None
    email_digest: Optional[bool] = None
    quiet_hours: Optional[QuietHoursSchema] = None

    def to_updates(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class PreferencesResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    user_id: str
    realtime_notifications: bool
    push_notifications: bool
    email_notifications: bool
    sms_notifications: bool
    email_digest: bool
    quiet_hours: Optional[Dict[str, Any]] = None


class TemplateCreateRequest(BaseModel):
    """Schema for creating a template."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "type": "vendor_confirmed",
                "channel": "sms",
                "language": "fr",
                "content": "{{ vendor.name }} a confirmé sa présence.",
            }
        }
    )

    type: str = Field(..., min_length=1, description="Notification type")
    channel: str = Field(..., description="Delivery channel")
    language: Optional[str] = Field(None, description="Language; defaults to the app language")
    content: str = Field(..., min_length=1, description="Jinja2 template source")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("channel")
    @classmethod
    def validate_channel(cls, v):
        if v not in ALL_CHANNELS:
            raise ValueError(f"Channel must be one of: {', '.join(ALL_CHANNELS)}")
        return v


class TemplateUpdateRequest(BaseModel):
    type: Optional[str] = None
    channel: Optional[str] = None
    language: Optional[str] = None
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    active: Optional[bool] = None

    def to_updates(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TemplatePreviewRequest(BaseModel):
    type: str = Field(..., description="Notification type")
    channel: str = Field(..., description="Delivery channel")
    language: Optional[str] = None
    sample_data: Dict[str, Any] = Field(default_factory=dict, description="Overrides for sample data")


class TemplateImportRequest(BaseModel):
    templates: List[Dict[str, Any]] = Field(..., description="Templates as produced by export")


class TemplateResponse(BaseModel):
    id: str
    type: str
    channel: str
    language: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    compiled_at: Optional[str] = None


class RuleCreateRequest(BaseModel):
    """Schema for adding a routing rule."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "notification_type": "reminder_24h",
                "conditions": {"frequency": {"window": 86400000, "max": 1}},
                "actions": [],
                "description": "One day-before reminder per user",
            }
        }
    )

    notification_type: str = Field(..., min_length=1, description="Type the rule applies to, or *")
    conditions: Dict[str, Any] = Field(default_factory=dict)
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    position: int = Field(0, description="Evaluation order, lowest first")
    active: bool = True
    description: str = ""


class RuleListResponse(BaseModel):
    rules: List[Dict[str, Any]]
    total: int
