"""
Datastore collaborator.

The monitor only needs filter/sort/limit queries, inserts and targeted
updates. ``Datastore`` is the contract; ``MemoryStore`` keeps the documents
in process and hands out copies, so callers must save what they change.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from .models import (
    Machine,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    OperationSession,
    Part,
    PartStatus,
    PushSubscription,
    QualityTest,
    QualityTestStatus,
    Role,
    User,
    ensure_utc,
)

logger = logging.getLogger(__name__)


class Datastore(Protocol):
    # Users
    async def get_user(self, user_id: str) -> User | None: ...
    async def list_users(self) -> list[User]: ...
    async def users_with_roles(self, roles: Iterable[Role]) -> list[User]: ...
    async def save_user(self, user: User) -> User: ...
    async def set_push_subscription(
        self, user_id: str, subscription: PushSubscription | None
    ) -> bool: ...

    # Machines and sessions
    async def list_machines(self) -> list[Machine]: ...
    async def get_machine(self, machine_id: str) -> Machine | None: ...
    async def save_machine(self, machine: Machine) -> Machine: ...
    async def recent_sessions(self, limit: int) -> list[OperationSession]: ...
    async def save_session(self, session: OperationSession) -> OperationSession: ...

    # Quality tests
    async def get_test(self, test_id: str) -> QualityTest | None: ...
    async def list_tests(self, status: QualityTestStatus | None = None) -> list[QualityTest]: ...
    async def save_test(self, test: QualityTest) -> QualityTest: ...

    # Parts
    async def get_part(self, part_id: str) -> Part | None: ...
    async def list_parts(self) -> list[Part]: ...
    async def parts_expiring_within(self, days: int, now: datetime) -> list[Part]: ...
    async def expired_parts(self, now: datetime) -> list[Part]: ...
    async def save_part(self, part: Part) -> Part: ...

    # Notifications
    async def insert_notification(self, record: NotificationRecord) -> NotificationRecord: ...
    async def get_notification(self, notification_id: str) -> NotificationRecord | None: ...
    async def save_notification(self, record: NotificationRecord) -> NotificationRecord: ...
    async def notifications_for_user(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRecord]: ...
    async def recent_notifications(self, limit: int) -> list[NotificationRecord]: ...
    async def notification_exists(
        self, type: NotificationType, part_id: str, since: datetime
    ) -> bool: ...
    async def delete_expired_notifications(self, now: datetime) -> int: ...


class MemoryStore:
    """In-process implementation of ``Datastore``."""

    def __init__(self):
        self.users: dict[str, User] = {}
        self.machines: dict[str, Machine] = {}
        self.sessions: dict[str, OperationSession] = {}
        self.tests: dict[str, QualityTest] = {}
        self.parts: dict[str, Part] = {}
        self.notifications: dict[str, NotificationRecord] = {}

    def clear(self):
        for collection in (
            self.users,
            self.machines,
            self.sessions,
            self.tests,
            self.parts,
            self.notifications,
        ):
            collection.clear()

    # -------------------------------------------------- users

    async def get_user(self, user_id: str) -> User | None:
        return _copy(self.users.get(user_id))

    async def list_users(self) -> list[User]:
        return [_copy(u) for u in self.users.values()]

    async def users_with_roles(self, roles: Iterable[Role]) -> list[User]:
        wanted = set(roles)
        return [_copy(u) for u in self.users.values() if u.role in wanted]

    async def save_user(self, user: User) -> User:
        self.users[user.id] = _copy(user)
        return user

    async def set_push_subscription(
        self, user_id: str, subscription: PushSubscription | None
    ) -> bool:
        user = self.users.get(user_id)
        if user is None:
            return False
        user.push_subscription = _copy(subscription)
        return True

    # -------------------------------------------------- machines / sessions

    async def list_machines(self) -> list[Machine]:
        return [_copy(m) for m in self.machines.values()]

    async def get_machine(self, machine_id: str) -> Machine | None:
        return _copy(self.machines.get(machine_id))

    async def save_machine(self, machine: Machine) -> Machine:
        self.machines[machine.id] = _copy(machine)
        return machine

    async def recent_sessions(self, limit: int) -> list[OperationSession]:
        ordered = sorted(self.sessions.values(), key=lambda s: s.created_at, reverse=True)
        return [_copy(s) for s in ordered[:limit]]

    async def save_session(self, session: OperationSession) -> OperationSession:
        self.sessions[session.id] = _copy(session)
        return session

    # -------------------------------------------------- quality tests

    async def get_test(self, test_id: str) -> QualityTest | None:
        return _copy(self.tests.get(test_id))

    async def list_tests(self, status: QualityTestStatus | None = None) -> list[QualityTest]:
        return [
            _copy(t) for t in self.tests.values() if status is None or t.status == status
        ]

    async def save_test(self, test: QualityTest) -> QualityTest:
        self.tests[test.id] = _copy(test)
        return test

    # -------------------------------------------------- parts

    async def get_part(self, part_id: str) -> Part | None:
        return _copy(self.parts.get(part_id))

    async def list_parts(self) -> list[Part]:
        return [_copy(p) for p in self.parts.values()]

    async def parts_expiring_within(self, days: int, now: datetime) -> list[Part]:
        horizon = now + timedelta(days=days)
        return [
            _copy(p)
            for p in self.parts.values()
            if p.status == PartStatus.ACTIVE
            and now <= ensure_utc(p.expiration_date) <= horizon
        ]

    async def expired_parts(self, now: datetime) -> list[Part]:
        return [
            _copy(p)
            for p in self.parts.values()
            if p.status in (PartStatus.ACTIVE, PartStatus.EXPIRED)
            and ensure_utc(p.expiration_date) < now
        ]

    async def save_part(self, part: Part) -> Part:
        self.parts[part.id] = _copy(part)
        return part

    # -------------------------------------------------- notifications

    async def insert_notification(self, record: NotificationRecord) -> NotificationRecord:
        if record.id in self.notifications:
            raise ValueError(f"Duplicate notification id {record.id}")
        self.notifications[record.id] = _copy(record)
        return record

    async def get_notification(self, notification_id: str) -> NotificationRecord | None:
        return _copy(self.notifications.get(notification_id))

    async def save_notification(self, record: NotificationRecord) -> NotificationRecord:
        self.notifications[record.id] = _copy(record)
        return record

    async def notifications_for_user(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRecord]:
        matches = []
        for record in self.notifications.values():
            if record.recipient(user_id) is None:
                continue
            if unread_only and (
                record.status != NotificationStatus.ACTIVE or not record.is_unread_by(user_id)
            ):
                continue
            matches.append(record)
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return [_copy(r) for r in matches[:limit]]

    async def recent_notifications(self, limit: int) -> list[NotificationRecord]:
        ordered = sorted(self.notifications.values(), key=lambda r: r.created_at, reverse=True)
        return [_copy(r) for r in ordered[:limit]]

    async def notification_exists(
        self, type: NotificationType, part_id: str, since: datetime
    ) -> bool:
        return any(
            r.type == type and r.related_data.part_id == part_id and r.created_at >= since
            for r in self.notifications.values()
        )

    async def delete_expired_notifications(self, now: datetime) -> int:
        expired = [
            rid
            for rid, r in self.notifications.items()
            if r.expires_at is not None and ensure_utc(r.expires_at) <= now
        ]
        for rid in expired:
            del self.notifications[rid]
        return len(expired)


def _copy(doc):
    if doc is None:
        return None
    return doc.model_copy(deep=True)


# ============================================================
# SEED DATA
# ============================================================


class SeedData(BaseModel):
    """Factory records loaded at startup from a JSON file."""

    users: list[User] = Field(default_factory=list)
    machines: list[Machine] = Field(default_factory=list)
    sessions: list[OperationSession] = Field(default_factory=list)
    tests: list[QualityTest] = Field(default_factory=list)
    parts: list[Part] = Field(default_factory=list)


async def load_seed(store: Datastore, path: Path) -> dict[str, int]:
    """
    Upsert the records in ``path`` into the datastore.

    Records are keyed by id, so loading the same file twice is harmless.
    """
    seed = SeedData.model_validate_json(Path(path).read_text(encoding="utf-8"))
    for user in seed.users:
        await store.save_user(user)
    for machine in seed.machines:
        await store.save_machine(machine)
    for session in seed.sessions:
        await store.save_session(session)
    for test in seed.tests:
        await store.save_test(test)
    for part in seed.parts:
        await store.save_part(part)

    counts = {name: len(getattr(seed, name)) for name in SeedData.model_fields}
    logger.info("Loaded seed data from %s: %s", path, counts)
    return counts
