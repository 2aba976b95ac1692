"""
Notification records: construction, recipient resolution and read state.

Recipients are resolved by role when a record is created and are never
re-resolved afterwards.
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from .config import Settings
from .models import (
    AlertMetadata,
    ExpiryMetadata,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    OperationMetadata,
    OverdueMetadata,
    Part,
    Priority,
    QualityTest,
    Recipient,
    RelatedData,
    Role,
    utcnow,
)
from .store import Datastore

logger = logging.getLogger(__name__)

OVERDUE_ROLES = (Role.LEADER, Role.MANAGER)
PART_EXPIRY_ROLES = (Role.OPERATOR, Role.LEADER, Role.MANAGER)
OPERATION_ALERT_ROLES = (Role.LEADER, Role.MANAGER)
MANUAL_DEFAULT_ROLES = (Role.OPERATOR, Role.LEADER, Role.MANAGER)


def overdue_priority(overdue_minutes: int, critical_after: int = 60) -> Priority:
    return Priority.CRITICAL if overdue_minutes > critical_after else Priority.HIGH


def part_expiry_priority(days_until_expiry: int, is_expired: bool = False) -> Priority:
    if is_expired or days_until_expiry <= 1:
        return Priority.CRITICAL
    if days_until_expiry <= 3:
        return Priority.HIGH
    return Priority.MEDIUM


def new_notification_id() -> str:
    return f"ntf_{uuid.uuid4().hex[:12]}"


class NotificationStore:
    """Builds and updates notification records on top of the datastore."""

    def __init__(
        self,
        store: Datastore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._settings = settings
        self._clock = clock

    async def _recipients(self, roles: Iterable[Role]) -> list[Recipient]:
        users = await self._store.users_with_roles(roles)
        return [Recipient(user_id=u.id, role=u.role) for u in users]

    def _expires(self, hours: float) -> datetime:
        return self._clock() + timedelta(hours=hours)

    # ------------------------------------------------------------ creation

    async def create_test_overdue(
        self,
        test: QualityTest,
        overdue_minutes: int,
        deadline: datetime,
        machine_name: str | None = None,
    ) -> NotificationRecord:
        priority = overdue_priority(overdue_minutes, self._settings.overdue_critical_minutes)
        machine = machine_name or test.machine_id or "N/A"
        record = NotificationRecord(
            id=new_notification_id(),
            type=NotificationType.TEST_OVERDUE,
            title="Quality test overdue",
            message=f"Test {test.id} on machine {machine} is {overdue_minutes} minutes overdue",
            priority=priority,
            recipients=await self._recipients(OVERDUE_ROLES),
            related_data=RelatedData(
                test_id=test.id, machine_id=test.machine_id, operator_id=test.operator_id
            ),
            created_at=self._clock(),
            expires_at=self._expires(self._settings.overdue_retention_hours),
            metadata=OverdueMetadata(
                overdue_minutes=overdue_minutes,
                original_deadline=deadline,
                machine_name=machine_name,
                severity=priority,
            ),
        )
        return await self._store.insert_notification(record)

    async def create_part_expiry(
        self,
        part: Part,
        days_until_expiry: int,
        is_expired: bool = False,
        machine_name: str | None = None,
    ) -> NotificationRecord:
        is_expired = is_expired or days_until_expiry <= 0
        priority = part_expiry_priority(days_until_expiry, is_expired)
        machine = machine_name or "N/A"
        if is_expired:
            title = "Teflon expired"
            message = f"Teflon {part.batch_number} on machine {machine} has EXPIRED"
        else:
            title = "Teflon close to expiry"
            message = (
                f"Teflon {part.batch_number} on machine {machine} "
                f"expires in {days_until_expiry} days"
            )
        record = NotificationRecord(
            id=new_notification_id(),
            type=NotificationType.PART_EXPIRY,
            title=title,
            message=message,
            priority=priority,
            recipients=await self._recipients(PART_EXPIRY_ROLES),
            related_data=RelatedData(part_id=part.id, machine_id=part.machine_id),
            created_at=self._clock(),
            expires_at=self._expires(self._settings.part_expiry_retention_hours),
            metadata=ExpiryMetadata(
                days_until_expiry=days_until_expiry,
                is_expired=is_expired,
                machine_name=machine_name,
                severity=priority,
            ),
        )
        return await self._store.insert_notification(record)

    async def create_operation_without_test(
        self,
        operator_name: str,
        machine_name: str,
        operation_minutes: int,
        machine_id: str | None = None,
        operator_id: str | None = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=new_notification_id(),
            type=NotificationType.QUALITY_ALERT,
            title="Operation without quality test",
            message=(
                f"Operator {operator_name} on machine {machine_name} has been running for "
                f"{operation_minutes} minutes without a quality test"
            ),
            priority=Priority.HIGH,
            recipients=await self._recipients(OPERATION_ALERT_ROLES),
            related_data=RelatedData(machine_id=machine_id, operator_id=operator_id),
            created_at=self._clock(),
            expires_at=self._expires(self._settings.operation_alert_retention_hours),
            metadata=OperationMetadata(operation_minutes=operation_minutes),
        )
        return await self._store.insert_notification(record)

    async def create_manual(
        self,
        type: NotificationType,
        title: str,
        message: str,
        priority: Priority = Priority.MEDIUM,
        recipient_roles: Iterable[Role] | None = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=new_notification_id(),
            type=type,
            title=title,
            message=message,
            priority=priority,
            recipients=await self._recipients(recipient_roles or MANUAL_DEFAULT_ROLES),
            created_at=self._clock(),
            expires_at=self._expires(self._settings.manual_retention_hours),
            metadata=AlertMetadata(severity=priority),
        )
        return await self._store.insert_notification(record)

    # ------------------------------------------------------------ state changes

    async def mark_as_read(self, notification_id: str, user_id: str) -> NotificationRecord | None:
        """Mark one recipient's entry as read. Other recipients are untouched."""
        record = await self._store.get_notification(notification_id)
        if record is None:
            return None
        entry = record.recipient(user_id)
        if entry is None:
            return None
        if not entry.read:
            entry.read = True
            entry.read_at = self._clock()
            await self._store.save_notification(record)
        return record

    async def mark_all_as_read(self, user_id: str) -> int:
        records = await self._store.notifications_for_user(user_id, unread_only=True, limit=10_000)
        now = self._clock()
        for record in records:
            entry = record.recipient(user_id)
            entry.read = True
            entry.read_at = now
            await self._store.save_notification(record)
        return len(records)

    async def set_status(
        self, notification_id: str, status: NotificationStatus
    ) -> NotificationRecord | None:
        record = await self._store.get_notification(notification_id)
        if record is None:
            return None
        record.status = status
        return await self._store.save_notification(record)

    # ------------------------------------------------------------ queries

    async def for_user(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRecord]:
        return await self._store.notifications_for_user(user_id, unread_only, limit)

    async def unread_count(self, user_id: str) -> int:
        unread = await self._store.notifications_for_user(user_id, unread_only=True, limit=10_000)
        return len(unread)

    async def part_notified_since(self, part_id: str, since: datetime) -> bool:
        return await self._store.notification_exists(NotificationType.PART_EXPIRY, part_id, since)

    async def prune_expired(self) -> int:
        removed = await self._store.delete_expired_notifications(self._clock())
        if removed:
            logger.info("Pruned %d expired notifications", removed)
        return removed
