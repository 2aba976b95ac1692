"""
Domain records and API models.

Records mirror the documents the monitor reads from and writes to the
datastore. All timestamps are timezone-aware UTC.
"""

import math
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

DAY = timedelta(days=1)


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_ts(dt: datetime | None) -> str | None:
    """Format a UTC datetime as ISO 8601 with Z suffix."""
    if dt is None:
        return None
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


# ============================================================
# ENUMS
# ============================================================


class Role(StrEnum):
    OPERATOR = "operator"
    LEADER = "leader"
    MANAGER = "manager"
    ADMIN = "admin"


class QualityTestStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PartStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REPLACED = "replaced"


class MachineStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


class NotificationType(StrEnum):
    TEST_OVERDUE = "test_overdue"
    PART_EXPIRY = "part_expiry"
    SYSTEM_ALERT = "system_alert"
    QUALITY_ALERT = "quality_alert"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationStatus(StrEnum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


# ============================================================
# FACTORY RECORDS
# ============================================================


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscription(BaseModel):
    endpoint: str = Field(..., min_length=1)
    keys: PushKeys
    expiration_time: int | None = None


class User(BaseModel):
    id: str
    username: str
    name: str = ""
    role: Role = Role.OPERATOR
    last_login: datetime | None = None
    push_subscription: PushSubscription | None = None


class Machine(BaseModel):
    id: str
    name: str
    location: str | None = None
    status: MachineStatus = MachineStatus.ACTIVE
    last_maintenance: datetime | None = None


class QualityTest(BaseModel):
    id: str
    machine_id: str | None = None
    operator_id: str | None = None
    lot_number: str = ""
    status: QualityTestStatus = QualityTestStatus.PENDING
    start_time: datetime | None = None
    # Minutes. None means "use the configured default".
    expected_duration: float | None = None

    def deadline(self, default_minutes: float) -> datetime | None:
        if self.start_time is None:
            return None
        minutes = self.expected_duration or default_minutes
        return ensure_utc(self.start_time) + timedelta(minutes=minutes)


class Part(BaseModel):
    """A teflon sheet installed on a machine, replaced on a fixed schedule."""

    id: str
    machine_id: str | None = None
    batch_number: str
    supplier: str = ""
    replacement_date: datetime | None = None
    expiration_date: datetime
    status: PartStatus = PartStatus.ACTIVE
    last_expiry_notification: datetime | None = None

    def days_until_expiry(self, now: datetime) -> int:
        return math.ceil((ensure_utc(self.expiration_date) - now) / DAY)


class OperationSession(BaseModel):
    id: str
    machine_id: str | None = None
    operator_id: str | None = None
    status: str = "active"
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# NOTIFICATIONS
# ============================================================


class Recipient(BaseModel):
    user_id: str
    role: Role
    read: bool = False
    read_at: datetime | None = None


class RelatedData(BaseModel):
    test_id: str | None = None
    part_id: str | None = None
    machine_id: str | None = None
    operator_id: str | None = None


class OverdueMetadata(BaseModel):
    kind: Literal["test_overdue"] = "test_overdue"
    overdue_minutes: int
    original_deadline: datetime
    machine_name: str | None = None
    severity: Priority


class ExpiryMetadata(BaseModel):
    kind: Literal["part_expiry"] = "part_expiry"
    days_until_expiry: int
    is_expired: bool = False
    machine_name: str | None = None
    severity: Priority


class OperationMetadata(BaseModel):
    kind: Literal["operation_without_test"] = "operation_without_test"
    operation_minutes: int
    alert_type: str = "no_quality_test"
    severity: Priority = Priority.HIGH


class AlertMetadata(BaseModel):
    kind: Literal["alert"] = "alert"
    severity: Priority = Priority.MEDIUM


NotificationMetadata = Annotated[
    OverdueMetadata | ExpiryMetadata | OperationMetadata | AlertMetadata,
    Field(discriminator="kind"),
]


class NotificationRecord(BaseModel):
    id: str
    type: NotificationType
    title: str
    message: str
    priority: Priority = Priority.MEDIUM
    recipients: list[Recipient] = Field(default_factory=list)
    related_data: RelatedData = Field(default_factory=RelatedData)
    status: NotificationStatus = NotificationStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None
    metadata: NotificationMetadata = Field(default_factory=AlertMetadata)

    def recipient(self, user_id: str) -> Recipient | None:
        for entry in self.recipients:
            if entry.user_id == user_id:
                return entry
        return None

    def is_unread_by(self, user_id: str) -> bool:
        entry = self.recipient(user_id)
        return entry is not None and not entry.read

    def to_live_payload(self) -> dict[str, Any]:
        """Payload pushed to connected users over their live sockets."""
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "priority": self.priority,
            "timestamp": format_ts(self.created_at),
            "related_data": self.related_data.model_dump(mode="json"),
        }


# ============================================================
# API MODELS
# ============================================================


class OperationAlertRequest(BaseModel):
    operator_name: str = Field(..., min_length=1, max_length=200)
    machine_name: str = Field(..., min_length=1, max_length=200)
    machine_id: str | None = None
    operator_id: str | None = None
    operation_minutes: int = Field(..., ge=0, le=7 * 24 * 60)


class ManualNotificationRequest(BaseModel):
    type: NotificationType = NotificationType.SYSTEM_ALERT
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    priority: Priority = Priority.MEDIUM
    recipient_roles: list[Role] | None = Field(None, max_length=4)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: NotificationType) -> NotificationType:
        if v in (NotificationType.TEST_OVERDUE, NotificationType.PART_EXPIRY):
            raise ValueError(f"Notification type '{v}' is reserved for automatic alerts")
        return v


class PushSubscriptionRequest(BaseModel):
    subscription: PushSubscription


class LiveFeedEventRequest(BaseModel):
    event_type: str = Field(..., min_length=1, max_length=100)
    data: dict[str, Any] = Field(default_factory=dict)


class FinishTestRequest(BaseModel):
    status: QualityTestStatus = QualityTestStatus.COMPLETED

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: QualityTestStatus) -> QualityTestStatus:
        if v not in (QualityTestStatus.COMPLETED, QualityTestStatus.FAILED):
            raise ValueError("A finished test must be 'completed' or 'failed'")
        return v


class UnreadCount(BaseModel):
    count: int
