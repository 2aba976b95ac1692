"""Tests for the deadline timer registry."""

import asyncio
from datetime import timedelta

from conftest import in_progress_test

from qc_monitor.models import QualityTest, QualityTestStatus, utcnow
from qc_monitor.timers import DeadlineTimerRegistry, overdue_minutes

# Expected durations are in minutes: 0.003 min = 0.18 s
SHORT = 0.003


class OffsetClock:
    """Real time plus a manual offset."""

    def __init__(self):
        self.offset = timedelta(0)

    def __call__(self):
        return utcnow() + self.offset


class Recorder:
    def __init__(self, fail=False):
        self.calls: list[tuple[str, int]] = []
        self.fired_at = []
        self.fail = fail

    async def __call__(self, test, minutes):
        self.calls.append((test.id, minutes))
        self.fired_at.append(utcnow())
        if self.fail:
            raise RuntimeError("datastore down")


def make_test(test_id="t1", started_ago=timedelta(0), minutes=SHORT, start=True):
    return QualityTest(
        id=test_id,
        status=QualityTestStatus.IN_PROGRESS,
        start_time=(utcnow() - started_ago) if start else None,
        expected_duration=minutes,
    )


# ============================================================
# HELPERS
# ============================================================


class TestOverdueMinutes:
    def test_rounds_down(self):
        deadline = utcnow()
        assert overdue_minutes(deadline + timedelta(minutes=5, seconds=59), deadline) == 5

    def test_never_negative(self):
        deadline = utcnow()
        assert overdue_minutes(deadline - timedelta(minutes=3), deadline) == 0


# ============================================================
# REGISTRY
# ============================================================


class TestStartTimer:
    async def test_missing_start_time_is_ignored(self):
        handler = Recorder()
        registry = DeadlineTimerRegistry(handler)
        started = await registry.start_timer(make_test(start=False))
        assert started is False
        assert "t1" not in registry
        assert handler.calls == []

    async def test_registers_handle(self):
        registry = DeadlineTimerRegistry(Recorder(), default_duration_minutes=30)
        test = make_test(minutes=None)
        assert await registry.start_timer(test) is True
        handle = registry.get_handle("t1")
        assert handle is not None
        assert handle.deadline == test.start_time + timedelta(minutes=30)
        assert handle.one_shot is not None
        assert handle.recurring is not None
        registry.shutdown()

    async def test_already_overdue_fires_immediately(self):
        now = utcnow()
        handler = Recorder()
        registry = DeadlineTimerRegistry(handler, clock=lambda: now)
        test = QualityTest(
            id="late",
            status=QualityTestStatus.IN_PROGRESS,
            start_time=now - timedelta(minutes=45, seconds=30),
            expected_duration=30,
        )
        await registry.start_timer(test)
        assert handler.calls == [("late", 15)]
        registry.shutdown()

    async def test_fires_at_deadline_not_before(self):
        handler = Recorder()
        registry = DeadlineTimerRegistry(handler, recheck_seconds=60)
        test = make_test()
        deadline = test.start_time + timedelta(minutes=SHORT)
        await registry.start_timer(test)

        await asyncio.sleep(0.05)
        assert handler.calls == []

        await asyncio.sleep(0.3)
        assert handler.calls == [("t1", 0)]
        assert handler.fired_at[0] >= deadline - timedelta(milliseconds=20)
        registry.shutdown()

    async def test_restart_replaces_handle(self):
        handler = Recorder()
        registry = DeadlineTimerRegistry(handler, recheck_seconds=60)
        await registry.start_timer(make_test())
        first = registry.get_handle("t1")
        await registry.start_timer(make_test())

        assert len(registry) == 1
        assert registry.get_handle("t1") is not first
        await asyncio.sleep(0.4)
        assert handler.calls == [("t1", 0)]
        registry.shutdown()


class TestClearTimer:
    async def test_clear_before_deadline_prevents_fire(self):
        handler = Recorder()
        registry = DeadlineTimerRegistry(handler, recheck_seconds=0.1)
        await registry.start_timer(make_test())
        assert registry.clear_timer("t1") is True
        await asyncio.sleep(0.5)
        assert handler.calls == []
        assert "t1" not in registry

    def test_clear_unknown_is_noop(self):
        registry = DeadlineTimerRegistry(Recorder())
        assert registry.clear_timer("nope") is False

    async def test_shutdown_cancels_everything(self):
        registry = DeadlineTimerRegistry(Recorder())
        await registry.start_timer(make_test("a"))
        await registry.start_timer(make_test("b"))
        handles = [registry.get_handle("a"), registry.get_handle("b")]
        registry.shutdown()
        await asyncio.sleep(0)
        assert len(registry) == 0
        assert not any(h.active for h in handles)


class TestRecurringCheck:
    async def test_refires_with_updated_minutes(self):
        clock = OffsetClock()
        handler = Recorder()
        registry = DeadlineTimerRegistry(handler, recheck_seconds=0.5, clock=clock)
        await registry.start_timer(make_test(minutes=0.002))

        await asyncio.sleep(0.3)
        assert handler.calls == [("t1", 0)]

        clock.offset = timedelta(minutes=5)
        await asyncio.sleep(0.55)
        assert handler.calls == [("t1", 0), ("t1", 5)]
        registry.shutdown()

    async def test_handler_errors_do_not_stop_rechecks(self):
        handler = Recorder(fail=True)
        registry = DeadlineTimerRegistry(handler, recheck_seconds=0.1)
        await registry.start_timer(make_test(minutes=0.001))
        await asyncio.sleep(0.45)
        assert len(handler.calls) >= 3
        registry.shutdown()


class TestRehydrate:
    async def test_rebuilds_in_progress_tests(self, store):
        await in_progress_test(store, "open", minutes=30)
        await in_progress_test(store, "done", minutes=30)
        await store.save_test(
            QualityTest(id="nostart", status=QualityTestStatus.IN_PROGRESS, start_time=None)
        )
        finished = await store.get_test("done")
        finished.status = QualityTestStatus.COMPLETED
        await store.save_test(finished)

        registry = DeadlineTimerRegistry(Recorder())
        started = await registry.rehydrate(store)

        assert started == 1
        assert "open" in registry
        assert "done" not in registry
        assert "nostart" not in registry
        registry.shutdown()
