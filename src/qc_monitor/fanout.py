"""Fan a notification out over every delivery channel."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from .channels import DeliveryChannel, DeliveryOutcome
from .models import NotificationRecord, Recipient

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    notification_id: str
    recipients: dict[str, dict[str, DeliveryOutcome]] = field(default_factory=dict)
    broadcast: dict[str, DeliveryOutcome] = field(default_factory=dict)

    def count(self, outcome: DeliveryOutcome) -> int:
        per_recipient = sum(
            1 for outcomes in self.recipients.values() for o in outcomes.values() if o == outcome
        )
        return per_recipient + sum(1 for o in self.broadcast.values() if o == outcome)

    def outcome_for(self, user_id: str, channel: str) -> DeliveryOutcome | None:
        return self.recipients.get(user_id, {}).get(channel)


class DeliveryFanOut:
    """
    Delivers one notification to all of its recipients.

    Recipients are handled concurrently and independently; a failure for one
    recipient or channel is logged and recorded, never raised.
    """

    def __init__(self, channels: Sequence[DeliveryChannel]):
        self.channels = list(channels)

    async def deliver(self, notification: NotificationRecord) -> DeliveryReport:
        report = DeliveryReport(notification_id=notification.id)
        per_recipient = [c for c in self.channels if c.per_recipient]
        broadcast = [c for c in self.channels if not c.per_recipient]

        results = await asyncio.gather(
            *(
                self._deliver_to(recipient, notification, per_recipient)
                for recipient in notification.recipients
            )
        )
        for recipient, outcomes in zip(notification.recipients, results, strict=True):
            report.recipients[recipient.user_id] = outcomes

        for channel in broadcast:
            report.broadcast[channel.name] = await self._attempt(channel, None, notification)

        logger.info(
            "Delivered %s '%s': %d delivered, %d failed, %d endpoints removed",
            notification.type,
            notification.title,
            report.count(DeliveryOutcome.DELIVERED),
            report.count(DeliveryOutcome.FAILED),
            report.count(DeliveryOutcome.ENDPOINT_GONE),
        )
        return report

    async def _deliver_to(
        self,
        recipient: Recipient,
        notification: NotificationRecord,
        channels: Sequence[DeliveryChannel],
    ) -> dict[str, DeliveryOutcome]:
        outcomes = {}
        for channel in channels:
            outcomes[channel.name] = await self._attempt(channel, recipient, notification)
        return outcomes

    async def _attempt(
        self,
        channel: DeliveryChannel,
        recipient: Recipient | None,
        notification: NotificationRecord,
    ) -> DeliveryOutcome:
        try:
            return await channel.attempt_deliver(recipient, notification)
        except Exception:
            logger.exception(
                "%s delivery of %s to %s failed",
                channel.name,
                notification.id,
                recipient.user_id if recipient else "subscribers",
            )
            return DeliveryOutcome.FAILED
