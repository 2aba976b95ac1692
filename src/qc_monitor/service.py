"""
Notification service.

Wires the deadline timers, the expiry scanner, the notification store, the
delivery fan-out and the manager live feed together, and owns their
startup and shutdown.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from .channels import LiveFeedChannel, LiveSocketChannel, OfflinePushChannel, PushProvider
from .config import Settings
from .expiry import ExpiryScanner
from .fanout import DeliveryFanOut, DeliveryReport
from .live_feed import LiveFeedBroadcaster
from .models import (
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    OperationAlertRequest,
    Priority,
    PushSubscription,
    QualityTest,
    QualityTestStatus,
    Role,
    utcnow,
)
from .notifications import NotificationStore
from .presence import PresenceRegistry
from .push import WebPushProvider
from .snapshot import build_system_status
from .store import Datastore
from .timers import DeadlineTimerRegistry

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(
        self,
        store: Datastore,
        presence: PresenceRegistry,
        settings: Settings,
        push_provider: PushProvider | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.presence = presence
        self.settings = settings
        self._clock = clock

        self.notifications = NotificationStore(store, settings, clock)
        self.live_feed = LiveFeedBroadcaster(
            self.system_status,
            snapshot_interval=settings.snapshot_interval_seconds,
            heartbeat_interval=settings.heartbeat_interval_seconds,
            queue_size=settings.stream_queue_size,
        )
        self.push_provider = push_provider or WebPushProvider(settings)
        self.fanout = DeliveryFanOut(
            [
                LiveSocketChannel(presence),
                OfflinePushChannel(presence, store, self.push_provider),
                LiveFeedChannel(self.live_feed),
            ]
        )
        self.timers = DeadlineTimerRegistry(
            self.handle_test_overdue,
            default_duration_minutes=settings.default_expected_duration_minutes,
            recheck_seconds=settings.overdue_recheck_seconds,
            clock=clock,
        )
        self.expiry = ExpiryScanner(store, self.notifications, self.deliver, settings, clock)
        self._prune_task: asyncio.Task | None = None

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def start(self):
        """Resume monitoring after a (re)start."""
        try:
            await self.timers.rehydrate(self.store)
        except Exception:
            logger.exception("Failed to resume test monitoring")
        self.expiry.start()
        if self._prune_task is None:
            self._prune_task = asyncio.create_task(self._prune_loop())
        logger.info("Notification service started")

    async def stop(self):
        self.timers.shutdown()
        self.expiry.stop()
        if self._prune_task is not None:
            self._prune_task.cancel()
            self._prune_task = None
        self.live_feed.close_all()
        logger.info("Notification service stopped")

    async def _prune_loop(self):
        while True:
            await asyncio.sleep(self.settings.prune_interval_seconds)
            try:
                await self.notifications.prune_expired()
            except Exception:
                logger.exception("Notification pruning failed")

    async def system_status(self, connections: int) -> dict:
        return await build_system_status(
            self.store,
            connections=connections,
            default_duration_minutes=self.settings.default_expected_duration_minutes,
            online_window_seconds=self.settings.online_window_seconds,
            expiry_window_days=self.settings.expiry_window_days,
            now=self._clock(),
        )

    async def deliver(self, notification: NotificationRecord) -> DeliveryReport:
        return await self.fanout.deliver(notification)

    # ============================================================
    # TEST MONITORING
    # ============================================================

    async def handle_test_overdue(
        self, test: QualityTest, overdue_minutes: int
    ) -> NotificationRecord | None:
        """Raise an overdue alert, unless the test was closed in the meantime."""
        try:
            current = await self.store.get_test(test.id)
            if current is None or current.status != QualityTestStatus.IN_PROGRESS:
                logger.info("Test %s is no longer in progress, dropping overdue alert", test.id)
                self.timers.clear_timer(test.id)
                return None

            deadline = current.deadline(self.settings.default_expected_duration_minutes)
            if deadline is None:
                logger.warning("Test %s lost its start time, dropping overdue alert", test.id)
                return None

            machine_name = None
            if current.machine_id:
                machine = await self.store.get_machine(current.machine_id)
                machine_name = machine.name if machine else None

            logger.info("Test %s is %d minutes overdue", test.id, overdue_minutes)
            notification = await self.notifications.create_test_overdue(
                current, overdue_minutes, deadline, machine_name=machine_name
            )
            await self.deliver(notification)
            return notification
        except Exception:
            logger.exception("Failed to process overdue test %s", test.id)
            return None

    async def on_test_started(self, test_id: str) -> QualityTest | None:
        test = await self.store.get_test(test_id)
        if test is None:
            return None
        if test.status != QualityTestStatus.IN_PROGRESS or test.start_time is None:
            test.status = QualityTestStatus.IN_PROGRESS
            test.start_time = test.start_time or self._clock()
            await self.store.save_test(test)
        await self.timers.start_timer(test)
        return test

    async def on_test_finished(
        self, test_id: str, status: QualityTestStatus = QualityTestStatus.COMPLETED
    ) -> QualityTest | None:
        self.timers.clear_timer(test_id)
        test = await self.store.get_test(test_id)
        if test is None:
            return None
        test.status = status
        await self.store.save_test(test)
        logger.info("Test %s finished (%s), timer removed", test_id, status)
        return test

    # ============================================================
    # ON-DEMAND ALERTS
    # ============================================================

    async def create_operation_without_test_alert(
        self, request: OperationAlertRequest
    ) -> NotificationRecord:
        notification = await self.notifications.create_operation_without_test(
            operator_name=request.operator_name,
            machine_name=request.machine_name,
            operation_minutes=request.operation_minutes,
            machine_id=request.machine_id,
            operator_id=request.operator_id,
        )
        await self.deliver(notification)
        logger.info(
            "Operation without test alert: %s on %s", request.operator_name, request.machine_name
        )
        return notification

    async def create_manual_notification(
        self,
        type: NotificationType,
        title: str,
        message: str,
        priority: Priority = Priority.MEDIUM,
        recipient_roles: list[Role] | None = None,
    ) -> NotificationRecord:
        notification = await self.notifications.create_manual(
            type, title, message, priority=priority, recipient_roles=recipient_roles
        )
        await self.deliver(notification)
        return notification

    # ============================================================
    # READ STATE AND QUERIES
    # ============================================================

    async def mark_notification_as_read(
        self, notification_id: str, user_id: str
    ) -> NotificationRecord | None:
        notification = await self.notifications.mark_as_read(notification_id, user_id)
        if notification is not None and self.presence.is_present(user_id):
            await self.presence.send_to_user(
                user_id,
                "notification_read",
                {"notification_id": notification_id, "user_id": user_id},
            )
        return notification

    async def mark_all_as_read(self, user_id: str) -> int:
        return await self.notifications.mark_all_as_read(user_id)

    async def resolve_notification(self, notification_id: str) -> NotificationRecord | None:
        return await self.notifications.set_status(notification_id, NotificationStatus.RESOLVED)

    async def get_user_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRecord]:
        try:
            return await self.notifications.for_user(user_id, unread_only, limit)
        except Exception:
            logger.exception("Failed to load notifications for user %s", user_id)
            return []

    async def unread_count(self, user_id: str) -> int:
        return await self.notifications.unread_count(user_id)

    async def register_push_subscription(
        self, user_id: str, subscription: PushSubscription
    ) -> bool:
        return await self.store.set_push_subscription(user_id, subscription)

    async def remove_push_subscription(self, user_id: str) -> bool:
        return await self.store.set_push_subscription(user_id, None)
