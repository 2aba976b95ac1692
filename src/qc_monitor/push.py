"""Web Push delivery through pywebpush."""

import asyncio
import json
import logging
from enum import StrEnum
from typing import Any

from pywebpush import WebPushException, webpush

from .config import Settings
from .models import PushSubscription

logger = logging.getLogger(__name__)

# Push services answer 404/410 once a subscription has been revoked
GONE_STATUS_CODES = (404, 410)


class PushResult(StrEnum):
    DELIVERED = "delivered"
    GONE = "gone"
    TRANSIENT_ERROR = "transient_error"


class WebPushProvider:
    def __init__(self, settings: Settings):
        self.private_key = settings.vapid_private_key
        self.public_key = settings.vapid_public_key
        self.claims = {"sub": f"mailto:{settings.vapid_email}"}
        self.ttl = settings.push_ttl_seconds

    @property
    def enabled(self) -> bool:
        return bool(self.private_key and self.public_key)

    async def dispatch(self, subscription: PushSubscription, payload: dict[str, Any]) -> PushResult:
        if not self.enabled:
            logger.debug("VAPID keys not configured, push skipped")
            return PushResult.TRANSIENT_ERROR
        # webpush() does blocking HTTP
        return await asyncio.to_thread(self._send, subscription, json.dumps(payload))

    def _send(self, subscription: PushSubscription, data: str) -> PushResult:
        try:
            webpush(
                subscription_info=subscription.model_dump(include={"endpoint", "keys"}),
                data=data,
                vapid_private_key=self.private_key,
                vapid_claims=dict(self.claims),
                ttl=self.ttl,
            )
        except WebPushException as e:
            response = getattr(e, "response", None)
            if response is not None and response.status_code in GONE_STATUS_CODES:
                return PushResult.GONE
            logger.warning("Push to %s failed: %s", subscription.endpoint[:60], e)
            return PushResult.TRANSIENT_ERROR
        return PushResult.DELIVERED
