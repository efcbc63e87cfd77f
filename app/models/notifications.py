"""
Notification Models — Pydantic schemas for notification fan-out.

Defines the targeting rules, the notification job submitted by callers,
the persisted NotificationRecord, and the transient per-dispatch
delivery results exchanged between the delivery engine and the
lifecycle manager.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# ===================================================================
# Targeting Rules
# ===================================================================

TargetAttribute = Literal["city", "category"]


class AllRecipients(BaseModel):
    """Every recipient eligible to be notified."""
    kind: Literal["all"] = "all"


class ByAttribute(BaseModel):
    """Eligible recipients whose attribute value is one of `values`."""
    kind: Literal["by_attribute"] = "by_attribute"
    attribute: TargetAttribute
    values: list[str] = Field(default_factory=list)


class ExplicitRecipients(BaseModel):
    """Exactly the listed recipients (still subject to eligibility)."""
    kind: Literal["explicit"] = "explicit"
    recipient_ids: list[str] = Field(default_factory=list)


TargetRule = Annotated[
    Union[AllRecipients, ByAttribute, ExplicitRecipients],
    Field(discriminator="kind"),
]


# ===================================================================
# Payload
# ===================================================================

class PushEnvelope(BaseModel):
    """The human-readable part of a push: what the OS displays."""
    title: str
    body: str
    image_url: Optional[str] = None


class NotificationPayload(BaseModel):
    """
    What the delivery engine hands to a gateway.

    The envelope travels separately from the data map. Data values
    are arbitrary here; the engine stringifies them before transmission.
    """
    envelope: PushEnvelope
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationType(str, Enum):
    PUSH = "Push"
    BANNER = "Banner"
    ANNOUNCEMENT = "Announcement"


class NotificationJob(BaseModel):
    """
    A request to notify an audience. Not persisted on its own;
    its snapshot lives in the NotificationRecord.
    """
    title: str = ""
    body: str = ""
    image_url: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    target: TargetRule = Field(default_factory=AllRecipients)
    type: NotificationType = NotificationType.PUSH
    scheduled_at: Optional[datetime] = None


# ===================================================================
# Notification Record
# ===================================================================

class NotificationStatus(str, Enum):
    DRAFT = "Draft"
    SCHEDULED = "Scheduled"
    SENT = "Sent"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (NotificationStatus.SENT, NotificationStatus.FAILED)


class NotificationRecord(BaseModel):
    """A persisted notification with its targeting snapshot and final counts."""
    id: str
    title: str
    message: str
    type: NotificationType = NotificationType.PUSH
    target_rule: dict[str, Any] = Field(default_factory=dict)
    data: dict[str, Any] = Field(default_factory=dict)
    image_url: Optional[str] = None
    total_recipients: int = 0
    delivered_count: int = 0
    status: NotificationStatus = NotificationStatus.DRAFT
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    created_by: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_job(self) -> NotificationJob:
        """Rebuild the job from the stored snapshot (scheduled sends)."""
        return NotificationJob.model_validate({
            "title": self.title,
            "body": self.message,
            "image_url": self.image_url,
            "data": self.data,
            "target": self.target_rule or {"kind": "all"},
            "type": self.type,
            "scheduled_at": self.scheduled_at,
        })


# ===================================================================
# Delivery Results
# ===================================================================

class ErrorClass(str, Enum):
    NONE = "none"
    INVALID_TOKEN = "invalid-token"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class DeliveryOutcome(BaseModel):
    """Per-token result of one dispatch."""
    token: str
    success: bool
    error_class: ErrorClass = ErrorClass.NONE
    error_code: Optional[str] = None
    message_id: Optional[str] = None


class DeliveryResult(BaseModel):
    success_count: int = 0
    failure_count: int = 0
    per_token: list[DeliveryOutcome] = Field(default_factory=list)


# ===================================================================
# API Models
# ===================================================================

class SendNotificationRequest(BaseModel):
    """Payload for POST /api/v1/notifications/send."""
    target_rule: TargetRule = Field(default_factory=AllRecipients)
    title: str = Field(default="", description="Required, non-empty.")
    body: str = Field(default="", description="Required, non-empty.")
    data: dict[str, Any] = Field(default_factory=dict)
    image_url: Optional[str] = None
    type: NotificationType = NotificationType.PUSH
    scheduled_at: Optional[datetime] = Field(
        default=None,
        description="Future UTC time to deliver at. Omit to send now.",
    )
    created_by: Optional[str] = None

    def to_job(self) -> NotificationJob:
        return NotificationJob(
            title=self.title,
            body=self.body,
            image_url=self.image_url,
            data=self.data,
            target=self.target_rule,
            type=self.type,
            scheduled_at=self.scheduled_at,
        )


class SendNotificationResponse(BaseModel):
    """Response from POST /api/v1/notifications/send."""
    id: str
    status: NotificationStatus
    total_recipients: int = 0
    delivered_count: int = 0
    sent_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None


class ScheduledProcessRequest(BaseModel):
    """Payload QStash delivers to /api/v1/notifications/process."""
    notification_id: str


class ScheduledProcessResponse(BaseModel):
    status: str = Field(..., description="'processed' or 'skipped'.")
    notification_id: str
    delivered_count: int = 0
    total_recipients: int = 0


class NotificationListResponse(BaseModel):
    """Response for GET /api/v1/notifications."""
    notifications: list[NotificationRecord] = Field(default_factory=list)
    count: int
