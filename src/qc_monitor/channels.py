"""
Delivery channels.

Every channel answers ``attempt_deliver`` with an outcome and decides on its
own whether it applies: the live socket only to present users, Web Push only
to absent users with a stored subscription. Broadcast channels are called
once per notification with no recipient.
"""

import logging
from abc import ABC, abstractmethod
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from .models import NotificationRecord, NotificationType, PushSubscription, Recipient, format_ts
from .presence import PresenceRegistry
from .push import PushResult
from .store import Datastore

if TYPE_CHECKING:
    from .live_feed import LiveFeedBroadcaster

logger = logging.getLogger(__name__)

PUSH_ICON = "/icon-192x192.png"
PUSH_BADGE = "/badge-72x72.png"
PUSH_URL = "/notifications"

LIVE_FEED_EVENTS: dict[NotificationType, str] = {
    NotificationType.TEST_OVERDUE: "test_overdue",
    NotificationType.PART_EXPIRY: "part_expired",
    NotificationType.QUALITY_ALERT: "operation_alert",
}
DEFAULT_LIVE_FEED_EVENT = "notification"


class DeliveryOutcome(StrEnum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"
    ENDPOINT_GONE = "endpoint_gone"


class PushProvider(Protocol):
    @property
    def enabled(self) -> bool: ...

    async def dispatch(
        self, subscription: PushSubscription, payload: dict[str, Any]
    ) -> PushResult: ...


def push_payload(notification: NotificationRecord) -> dict[str, Any]:
    return {
        "title": notification.title,
        "body": notification.message,
        "icon": PUSH_ICON,
        "badge": PUSH_BADGE,
        "data": {
            "notification_id": notification.id,
            "type": notification.type,
            "url": PUSH_URL,
        },
    }


def live_feed_event_name(notification_type: NotificationType) -> str:
    return LIVE_FEED_EVENTS.get(notification_type, DEFAULT_LIVE_FEED_EVENT)


class DeliveryChannel(ABC):
    name: str = "channel"
    per_recipient: bool = True

    @abstractmethod
    async def attempt_deliver(
        self, recipient: Recipient | None, notification: NotificationRecord
    ) -> DeliveryOutcome: ...


class LiveSocketChannel(DeliveryChannel):
    name = "live_socket"

    def __init__(self, presence: PresenceRegistry):
        self.presence = presence

    async def attempt_deliver(
        self, recipient: Recipient | None, notification: NotificationRecord
    ) -> DeliveryOutcome:
        if recipient is None or not self.presence.is_present(recipient.user_id):
            return DeliveryOutcome.SKIPPED
        sent = await self.presence.send_to_user(
            recipient.user_id, "notification", notification.to_live_payload()
        )
        return DeliveryOutcome.DELIVERED if sent else DeliveryOutcome.FAILED


class OfflinePushChannel(DeliveryChannel):
    name = "offline_push"

    def __init__(self, presence: PresenceRegistry, store: Datastore, provider: PushProvider):
        self.presence = presence
        self.store = store
        self.provider = provider

    async def attempt_deliver(
        self, recipient: Recipient | None, notification: NotificationRecord
    ) -> DeliveryOutcome:
        if recipient is None or self.presence.is_present(recipient.user_id):
            return DeliveryOutcome.SKIPPED
        if not self.provider.enabled:
            return DeliveryOutcome.SKIPPED

        user = await self.store.get_user(recipient.user_id)
        if user is None or user.push_subscription is None:
            return DeliveryOutcome.SKIPPED

        result = await self.provider.dispatch(user.push_subscription, push_payload(notification))
        if result == PushResult.DELIVERED:
            logger.debug("Push sent to user %s", user.id)
            return DeliveryOutcome.DELIVERED
        if result == PushResult.GONE:
            logger.info("Removing expired push subscription for user %s", user.id)
            await self.store.set_push_subscription(user.id, None)
            return DeliveryOutcome.ENDPOINT_GONE
        return DeliveryOutcome.FAILED


class LiveFeedChannel(DeliveryChannel):
    """Out-of-band event on the manager live feed."""

    name = "live_feed"
    per_recipient = False

    def __init__(self, broadcaster: "LiveFeedBroadcaster"):
        self.broadcaster = broadcaster

    async def attempt_deliver(
        self, recipient: Recipient | None, notification: NotificationRecord
    ) -> DeliveryOutcome:
        data = {
            "type": notification.type,
            "title": notification.title,
            "message": notification.message,
            "priority": notification.priority,
            "timestamp": format_ts(notification.created_at),
            "related_data": notification.related_data.model_dump(mode="json"),
        }
        written = self.broadcaster.notify_event(live_feed_event_name(notification.type), data)
        return DeliveryOutcome.DELIVERED if written else DeliveryOutcome.SKIPPED
