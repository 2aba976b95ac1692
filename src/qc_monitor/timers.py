"""
Deadline timers for in-flight quality tests.

Each test in progress gets one handle holding two asyncio tasks: a one-shot
task that fires at the deadline and a recurring task that re-fires every
few minutes afterwards while the test stays open.
"""

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from datetime import datetime

from .models import QualityTest, QualityTestStatus, utcnow
from .store import Datastore

logger = logging.getLogger(__name__)

OverdueHandler = Callable[[QualityTest, int], Awaitable[None]]

DEFAULT_EXPECTED_DURATION_MINUTES = 30
DEFAULT_RECHECK_SECONDS = 5 * 60


def overdue_minutes(now: datetime, deadline: datetime) -> int:
    """Whole minutes elapsed past the deadline, never negative."""
    return max(0, math.floor((now - deadline).total_seconds() / 60))


def has_valid_start(test: QualityTest) -> bool:
    return isinstance(test.start_time, datetime)


# ============================================================
# TIMER HANDLE
# ============================================================


class TimerHandle:
    """Bookkeeping for one monitored test."""

    def __init__(self, test: QualityTest, deadline: datetime):
        self.test_id = test.id
        self.test = test
        self.deadline = deadline
        self.one_shot: asyncio.Task | None = None
        self.recurring: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return any(t is not None and not t.done() for t in (self.one_shot, self.recurring))

    def cancel(self):
        for task in (self.one_shot, self.recurring):
            if task is not None and not task.done():
                task.cancel()
        self.one_shot = None
        self.recurring = None


# ============================================================
# REGISTRY
# ============================================================


class DeadlineTimerRegistry:
    """Owns every deadline handle; at most one per test id."""

    def __init__(
        self,
        on_overdue: OverdueHandler,
        default_duration_minutes: float = DEFAULT_EXPECTED_DURATION_MINUTES,
        recheck_seconds: float = DEFAULT_RECHECK_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._on_overdue = on_overdue
        self.default_duration_minutes = default_duration_minutes
        self.recheck_seconds = recheck_seconds
        self._clock = clock
        self._handles: dict[str, TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, test_id: str) -> bool:
        return test_id in self._handles

    def get_handle(self, test_id: str) -> TimerHandle | None:
        return self._handles.get(test_id)

    async def start_timer(self, test: QualityTest) -> bool:
        """Start (or restart) monitoring a test. Returns False if it was ignored."""
        if not has_valid_start(test):
            logger.warning(
                "Test %s has no valid start time (%r), not monitoring", test.id, test.start_time
            )
            return False

        self.clear_timer(test.id)

        deadline = test.deadline(self.default_duration_minutes)
        now = self._clock()
        handle = TimerHandle(test, deadline)
        self._handles[test.id] = handle
        logger.info("Monitoring test %s, deadline %s", test.id, deadline.isoformat())

        if now > deadline:
            await self._fire(handle, overdue_minutes(now, deadline))
        else:
            handle.one_shot = asyncio.create_task(self._run_one_shot(handle))

        # The immediate fire may have been superseded by a restart or a clear
        if self._handles.get(test.id) is handle:
            handle.recurring = asyncio.create_task(self._run_recurring(handle))
        return True

    def clear_timer(self, test_id: str) -> bool:
        handle = self._handles.pop(test_id, None)
        if handle is None:
            return False
        handle.cancel()
        logger.debug("Cleared timer for test %s", test_id)
        return True

    async def rehydrate(self, store: Datastore) -> int:
        """Rebuild handles for every test still in progress."""
        tests = await store.list_tests(QualityTestStatus.IN_PROGRESS)
        started = 0
        for test in tests:
            if not has_valid_start(test):
                logger.warning("Test %s has invalid start time, skipping", test.id)
                continue
            try:
                if await self.start_timer(test):
                    started += 1
            except Exception:
                logger.exception("Failed to resume monitoring for test %s", test.id)
        logger.info("Resumed monitoring for %d of %d active tests", started, len(tests))
        return started

    def shutdown(self):
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    async def _run_one_shot(self, handle: TimerHandle):
        delay = (handle.deadline - self._clock()).total_seconds()
        await asyncio.sleep(max(delay, 0))
        await self._fire(handle, 0)

    async def _run_recurring(self, handle: TimerHandle):
        first = max(handle.deadline, self._clock())
        await asyncio.sleep(max((first - self._clock()).total_seconds(), 0) + self.recheck_seconds)
        while True:
            now = self._clock()
            if now > handle.deadline:
                await self._fire(handle, overdue_minutes(now, handle.deadline))
            await asyncio.sleep(self.recheck_seconds)

    async def _fire(self, handle: TimerHandle, minutes: int):
        if self._handles.get(handle.test_id) is not handle:
            return
        # Cancelling the timer must not cut a delivery in half
        await asyncio.shield(self._invoke(handle.test, minutes))

    async def _invoke(self, test: QualityTest, minutes: int):
        try:
            await self._on_overdue(test, minutes)
        except Exception:
            logger.exception("Overdue handling failed for test %s", test.id)
