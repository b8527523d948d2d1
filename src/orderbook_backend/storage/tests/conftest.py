"""
Storage layer test fixtures.

Repository tests exercise query construction and row conversion against
an AsyncMock database, so no PostgreSQL instance is needed.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest


@pytest.fixture
def mock_db():
    """Mock database for unit tests."""
    db = AsyncMock()
    db.execute = AsyncMock(return_value="UPDATE 0")
    db.fetch = AsyncMock(return_value=[])
    db.fetchrow = AsyncMock(return_value=None)
    db.fetchval = AsyncMock(return_value=None)

    mock_conn = AsyncMock()
    mock_conn.execute = AsyncMock(return_value="INSERT 0 1")

    class MockTransaction:
        async def __aenter__(self):
            return mock_conn

        async def __aexit__(self, *args):
            pass

    db.transaction = MagicMock(return_value=MockTransaction())
    db.connection = MagicMock(return_value=MockTransaction())
    db._mock_conn = mock_conn
    return db


@pytest.fixture
def now():
    return datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def conditional_row(now):
    """A conditional_orders row as asyncpg would return it."""
    return {
        "network": "bsc",
        "conditional_order_id": "co-1",
        "maker": "0xmaker",
        "base_token": "0xbase",
        "quote_token": "0xquote",
        "pair": "0xbase/0xquote",
        "type": "stop_loss",
        "trigger_price": Decimal("100"),
        "order_template": (
            '{"tokenIn": "0xbase", "tokenOut": "0xquote", "amountIn": "1000", '
            '"amountOutMin": "900", "nonce": 7, "salt": "42", "expiration": 1767225600}'
        ),
        "signature": "0xsig",
        "expiration": now + timedelta(hours=1),
        "status": "pending",
        "triggered_at": None,
        "triggered_price": None,
        "resulting_order_id": None,
        "created_at": now,
        "updated_at": now,
    }


@pytest.fixture
def order_row(now):
    """An orders row for a plain signed order."""
    return {
        "network": "bsc",
        "order_id": "ord-1",
        "order_hash": "0xhash",
        "maker": "0xmaker",
        "token_in": "0xbase",
        "token_out": "0xquote",
        "amount_in": Decimal("1000"),
        "amount_out_min": Decimal("900"),
        "remaining": Decimal("1000"),
        "expiration": None,
        "nonce": Decimal("7"),
        "receiver": "",
        "salt": "42",
        "signature": "0xsig",
        "status": "open",
        "source": "direct",
        "source_conditional_order_id": None,
        "base_address": "0xBase",
        "quote_address": "0xQuote",
        "pair": "0xbase/0xquote",
        "price": Decimal("1.0"),
        "order_json": None,
        "created_at": now,
        "updated_at": now,
        "is_liquidity_order": False,
        "is_sal_order": False,
    }


@pytest.fixture
def sal_row(order_row):
    """An orders row for a SAL order with explicit inventory columns."""
    row = dict(order_row)
    row.update(
        {
            "order_id": "sal-1",
            "is_sal_order": True,
            "sal_initial_price": Decimal("1.0"),
            "sal_current_price": Decimal("1.1"),
            "sal_price_curve": "linear",
            "sal_max_price": Decimal("2.0"),
            "sal_min_price": Decimal("0"),
            "sal_sold_amount": Decimal("250"),
            "sal_total_inventory": Decimal("1000"),
            "sal_price_adjustment_params": None,
        }
    )
    return row
