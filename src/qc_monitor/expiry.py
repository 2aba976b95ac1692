"""
Teflon expiry scanning.

Runs once at startup and then on a fixed interval. Near-expiry parts are
notified at most once per day; parts past their expiration date are moved
to ``expired`` and get a critical alert.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import Settings
from .models import NotificationRecord, Part, PartStatus, ensure_utc, utcnow
from .notifications import NotificationStore
from .store import Datastore

logger = logging.getLogger(__name__)

Deliver = Callable[[NotificationRecord], Awaitable[object]]


def local_midnight(now: datetime) -> datetime:
    """Start of the current day in the server's local timezone."""
    return now.astimezone().replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class ScanSummary:
    checked: int = 0
    notified: int = 0
    skipped: int = 0
    expired: int = 0
    failed: int = 0


class ExpiryScanner:
    def __init__(
        self,
        store: Datastore,
        notifications: NotificationStore,
        deliver: Deliver,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._notifications = notifications
        self._deliver = deliver
        self.window_days = settings.expiry_window_days
        self.renotify_after = timedelta(hours=settings.expiry_renotify_hours)
        self.interval = settings.expiry_scan_interval_seconds
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())

    def stop(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self):
        while True:
            try:
                await self.scan()
            except Exception:
                logger.exception("Teflon expiry scan failed")
            await asyncio.sleep(self.interval)

    async def scan(self) -> ScanSummary:
        now = self._clock()
        summary = ScanSummary()

        expiring = await self._store.parts_expiring_within(self.window_days, now)
        logger.info("Checking %d teflon parts close to expiry", len(expiring))
        for part in expiring:
            summary.checked += 1
            try:
                await self._check_expiring(part, now, summary)
            except Exception:
                summary.failed += 1
                logger.exception("Expiry check failed for part %s", part.id)

        for part in await self._store.expired_parts(now):
            if part.status == PartStatus.EXPIRED:
                continue
            summary.checked += 1
            try:
                await self._mark_expired(part, summary)
            except Exception:
                summary.failed += 1
                logger.exception("Failed to expire part %s", part.id)

        return summary

    async def _already_notified(self, part: Part, now: datetime) -> bool:
        if await self._notifications.part_notified_since(part.id, local_midnight(now)):
            return True
        last = part.last_expiry_notification
        return last is not None and now - ensure_utc(last) <= self.renotify_after

    async def _machine_name(self, part: Part) -> str | None:
        if part.machine_id is None:
            return None
        machine = await self._store.get_machine(part.machine_id)
        return machine.name if machine else None

    async def _check_expiring(self, part: Part, now: datetime, summary: ScanSummary):
        if await self._already_notified(part, now):
            summary.skipped += 1
            return

        days = part.days_until_expiry(now)
        notification = await self._notifications.create_part_expiry(
            part, days, machine_name=await self._machine_name(part)
        )
        part.last_expiry_notification = now
        await self._store.save_part(part)
        summary.notified += 1

        await self._deliver(notification)
        logger.info("Teflon %s expires in %d days, notified", part.batch_number, days)

    async def _mark_expired(self, part: Part, summary: ScanSummary):
        part.status = PartStatus.EXPIRED
        await self._store.save_part(part)
        summary.expired += 1

        notification = await self._notifications.create_part_expiry(
            part, 0, is_expired=True, machine_name=await self._machine_name(part)
        )
        summary.notified += 1

        await self._deliver(notification)
        logger.info("Teflon %s expired, notified", part.batch_number)
