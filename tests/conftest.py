"""Shared fixtures and fakes."""

from datetime import timedelta

import pytest

from qc_monitor.config import Settings
from qc_monitor.models import (
    Machine,
    PushKeys,
    PushSubscription,
    QualityTest,
    QualityTestStatus,
    Role,
    User,
    utcnow,
)
from qc_monitor.presence import PresenceRegistry
from qc_monitor.push import PushResult
from qc_monitor.service import NotificationService
from qc_monitor.store import MemoryStore


class FakePushProvider:
    """Records dispatches; answers per endpoint."""

    def __init__(self, enabled=True):
        self.enabled = enabled
        self.results: dict[str, PushResult] = {}
        self.sent: list[tuple[str, dict]] = []

    async def dispatch(self, subscription, payload):
        self.sent.append((subscription.endpoint, payload))
        result = self.results.get(subscription.endpoint, PushResult.DELIVERED)
        if isinstance(result, Exception):
            raise result
        return result


class FakeWebSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent: list[dict] = []

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    def events(self, kind):
        return [m["data"] for m in self.sent if m["type"] == kind]


def subscription(endpoint="https://push.example.com/sub/1"):
    return PushSubscription(endpoint=endpoint, keys=PushKeys(p256dh="key", auth="secret"))


@pytest.fixture
def settings():
    return Settings(
        overdue_recheck_seconds=0.2,
        snapshot_interval_seconds=0.05,
        heartbeat_interval_seconds=0.05,
        expiry_scan_interval_seconds=3600,
        prune_interval_seconds=3600,
        vapid_public_key=None,
        vapid_private_key=None,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
async def users(store):
    people = [
        User(id="op1", username="olga", name="Olga", role=Role.OPERATOR),
        User(id="lead1", username="leo", name="Leo", role=Role.LEADER),
        User(id="mgr1", username="mia", name="Mia", role=Role.MANAGER),
        User(id="adm1", username="ada", name="Ada", role=Role.ADMIN),
    ]
    for person in people:
        await store.save_user(person)
    return {p.id: p for p in people}


@pytest.fixture
async def machine(store):
    m = Machine(id="m1", name="Sealer 01", location="Line A")
    await store.save_machine(m)
    return m


@pytest.fixture
def presence():
    return PresenceRegistry()


@pytest.fixture
def push_provider():
    return FakePushProvider()


@pytest.fixture
async def service(store, presence, settings, push_provider):
    svc = NotificationService(store, presence, settings, push_provider=push_provider)
    yield svc
    await svc.stop()


async def in_progress_test(
    store, test_id="t1", started_ago=timedelta(0), minutes=2.0, machine_id="m1"
):
    test = QualityTest(
        id=test_id,
        machine_id=machine_id,
        operator_id="op1",
        lot_number="LOT-1",
        status=QualityTestStatus.IN_PROGRESS,
        start_time=utcnow() - started_ago,
        expected_duration=minutes,
    )
    await store.save_test(test)
    return test
