"""Tests for the Web Push provider."""

import pytest
from conftest import subscription
from pywebpush import WebPushException

from qc_monitor import push
from qc_monitor.config import Settings
from qc_monitor.push import PushResult, WebPushProvider


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


@pytest.fixture
def provider():
    return WebPushProvider(
        Settings(_env_file=None, vapid_public_key="public", vapid_private_key="private")
    )


class TestWebPushProvider:
    def test_disabled_without_keys(self):
        assert not WebPushProvider(Settings(_env_file=None)).enabled

    async def test_delivered(self, provider, monkeypatch):
        calls = []
        monkeypatch.setattr(push, "webpush", lambda **kwargs: calls.append(kwargs))

        result = await provider.dispatch(subscription("https://push/1"), {"title": "Hi"})

        assert result == PushResult.DELIVERED
        [call] = calls
        assert call["subscription_info"]["endpoint"] == "https://push/1"
        assert call["subscription_info"]["keys"] == {"p256dh": "key", "auth": "secret"}
        assert call["data"] == '{"title": "Hi"}'
        assert call["vapid_private_key"] == "private"
        assert call["vapid_claims"]["sub"].startswith("mailto:")

    @pytest.mark.parametrize("status", [404, 410])
    async def test_gone(self, provider, monkeypatch, status):
        def reject(**kwargs):
            raise WebPushException("gone", response=FakeResponse(status))

        monkeypatch.setattr(push, "webpush", reject)
        assert await provider.dispatch(subscription(), {}) == PushResult.GONE

    async def test_server_error_is_transient(self, provider, monkeypatch):
        def reject(**kwargs):
            raise WebPushException("unavailable", response=FakeResponse(503))

        monkeypatch.setattr(push, "webpush", reject)
        assert await provider.dispatch(subscription(), {}) == PushResult.TRANSIENT_ERROR
