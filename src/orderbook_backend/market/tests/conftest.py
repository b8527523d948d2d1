"""
Market layer test fixtures.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from orderbook_backend.storage.models import Trade


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def trade_repo():
    repo = MagicMock()
    repo.get_recent = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def make_trade():
    t0 = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def _make(price=None, age_seconds=0, base="0xbase", quote="0xquote", **kwargs):
        return Trade(
            network="bsc",
            base_address=base,
            quote_address=quote,
            price=Decimal(str(price)) if price is not None else None,
            created_at=t0 - timedelta(seconds=age_seconds),
            **kwargs,
        )

    return _make
