"""Request/response models for the alert engine HTTP API."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ─── Alerts ──────────────────────────────────────────────────────────────


class SeverityEnum(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertCreateRequest(BaseModel):
    """Create a new alert."""

    title: str = Field(..., min_length=1, max_length=500)
    message: str = ""
    severity: SeverityEnum
    category: str = Field(..., min_length=1, max_length=100)
    source: str = "system"
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    assignee: Optional[str] = None


class AlertCreatedResponse(BaseModel):
    alert_id: str


class UserActionRequest(BaseModel):
    """Acknowledge / resolve on behalf of a user."""

    user_id: str = Field(..., min_length=1)


class SnoozeRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    duration_minutes: Optional[float] = Field(default=None, gt=0)


class InteractionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    event_type: str
    action_id: Optional[str] = None


class CommandResponse(BaseModel):
    success: bool
    alert_id: Optional[str] = None


class DeliveryAttemptResponse(BaseModel):
    attempt_id: str
    channel: str
    user_id: str
    timestamp: datetime
    success: bool
    error: Optional[str] = None
    retry_count: int = 0
    escalation_level: int = 0
    final: bool = False


class AlertResponse(BaseModel):
    alert_id: str
    title: str
    message: str
    severity: str
    category: str
    source: str
    status: str
    created_at: datetime
    escalation_level: int = 0
    escalated_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    assignee: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    delivery_attempts: list[DeliveryAttemptResponse] = Field(default_factory=list)


# ─── Preferences ─────────────────────────────────────────────────────────


class PreferencesImportRequest(BaseModel):
    payload: str = Field(..., min_length=2)


# ─── Notifications ───────────────────────────────────────────────────────


class NotificationGroupResponse(BaseModel):
    group_id: str
    user_id: str
    category: str
    priority: str
    collapsed: bool
    notification_ids: list[str]
    count: int
    created_at: datetime
    updated_at: Optional[datetime] = None


class BatchOperationResponse(BaseModel):
    operation: str
    group_id: str
    processed: int
    succeeded: int
    failed: int
    results: list[dict[str, Any]] = Field(default_factory=list)
