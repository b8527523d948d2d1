"""
Monitoring layer test fixtures.
"""
from unittest.mock import MagicMock

import pytest

from orderbook_backend.monitoring.alerting import AlertManager


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_telegram_api():
    """Mock Telegram API client."""
    api = MagicMock()
    api.send_message = MagicMock(return_value={"ok": True})
    return api


@pytest.fixture
def alert_manager(mock_telegram_api, clock):
    """Alert manager with mocked Telegram and a fake clock."""
    return AlertManager(
        telegram_bot_token="test_token",
        telegram_chat_id="test_chat",
        clock=clock,
        _telegram_api=mock_telegram_api,
    )
