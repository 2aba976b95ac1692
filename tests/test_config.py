"""Tests for settings and logging setup."""

import json
import logging
from pathlib import Path

import pytest

from qc_monitor.config import Settings
from qc_monitor.logging_setup import _JsonFormatter, configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.default_expected_duration_minutes == 30
        assert settings.overdue_recheck_seconds == 300
        assert settings.expiry_window_days == 7
        assert settings.part_expiry_retention_hours == 168
        assert settings.operation_alert_retention_hours == 12
        assert settings.seed_file is None

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("QC_OVERDUE_RECHECK_SECONDS", "60")
        monkeypatch.setenv("QC_VAPID_PUBLIC_KEY", "public")
        monkeypatch.setenv("QC_SEED_FILE", "/srv/qc/seed.json")
        settings = Settings(_env_file=None)
        assert settings.overdue_recheck_seconds == 60
        assert settings.vapid_public_key == "public"
        assert settings.seed_file == Path("/srv/qc/seed.json")


class TestLogging:
    def test_json_formatter(self):
        record = logging.LogRecord(
            "qc_monitor.timers", logging.WARNING, __file__, 1, "Test %s overdue", ("t1",), None
        )
        payload = json.loads(_JsonFormatter().format(record))
        assert payload["level"] == "WARNING"
        assert payload["name"] == "qc_monitor.timers"
        assert payload["msg"] == "Test t1 overdue"

    def test_configure_sets_level(self, restore_root_logger):
        configure_logging("debug", json_format=True)
        assert restore_root_logger.level == logging.DEBUG
        assert isinstance(restore_root_logger.handlers[0].formatter, _JsonFormatter)

    def test_unknown_level_falls_back_to_info(self, restore_root_logger):
        configure_logging("chatty")
        assert restore_root_logger.level == logging.INFO
