"""
Tests for structured event masking.
"""

import os
import sys

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from stockleague.config import settings
from stockleague.log_config import UserIdFilter, get_logger


class TestUserIdFilter:
    def test_masks_user_ids_outside_development(self, monkeypatch):
        monkeypatch.setattr(settings, "app_env", "production")

        event = UserIdFilter()(None, "info", {"event": "prize_credited", "user_id": 7, "contest_id": 3})

        assert event["user_id"] == "[REDACTED]"
        assert event["contest_id"] == 3, "Contest context is kept"

    def test_development_keeps_ids(self, monkeypatch):
        monkeypatch.setattr(settings, "app_env", "development")

        event = UserIdFilter()(None, "info", {"event": "prize_credited", "user_id": 7})

        assert event["user_id"] == 7

    def test_get_logger_returns_bindable_logger(self):
        assert hasattr(get_logger("stockleague.test").bind(cycle=1), "info")
