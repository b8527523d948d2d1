"""
Core layer test fixtures.

Core tests verify engine logic, so the store is replaced by in-memory
fakes. The conditional order fake enforces the pending -> triggered
compare-and-swap the same way the SQL claim does, which is what the
concurrency tests rely on.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from orderbook_backend.storage.models import (
    AdaptiveOrder,
    ConditionalOrder,
    ConditionalOrderStatus,
    Order,
    OrderTemplate,
)


NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# In-memory store fakes
# =============================================================================


def _page_key_of(created_at, conditional_order_id):
    return (created_at or datetime.min.replace(tzinfo=timezone.utc), conditional_order_id)


def _page_key(order):
    return _page_key_of(order.created_at, order.conditional_order_id)


class FakeConditionalRepo:
    """Conditional orders keyed by id, with an atomic claim."""

    def __init__(self, orders=()):
        self.orders = {o.conditional_order_id: o for o in orders}
        self.claim_calls = 0
        self.get_pending_calls = 0
        self.fail_backfill = False

    async def get_pending(self, network, now, limit=100, after=None):
        await asyncio.sleep(0)
        self.get_pending_calls += 1
        rows = sorted(
            (
                o for o in self.orders.values()
                if o.network == network
                and o.status == ConditionalOrderStatus.PENDING
                and not o.is_expired(now)
            ),
            key=_page_key,
        )
        if after is not None:
            rows = [o for o in rows if _page_key(o) > _page_key_of(*after)]
        return [o.model_copy() for o in rows[:limit]]

    async def claim(self, conditional_order_id, network, triggered_price, now):
        self.claim_calls += 1
        # Let other workers interleave before the compare-and-swap
        await asyncio.sleep(0)
        order = self.orders.get(conditional_order_id)
        if (
            order is None
            or order.network != network
            or order.status != ConditionalOrderStatus.PENDING
        ):
            return False
        self.orders[conditional_order_id] = order.model_copy(
            update={
                "status": ConditionalOrderStatus.TRIGGERED,
                "triggered_at": now,
                "triggered_price": triggered_price,
            }
        )
        return True

    async def set_resulting_order_id(self, conditional_order_id, network, order_id, now):
        if self.fail_backfill:
            raise ConnectionError("store unavailable")
        order = self.orders[conditional_order_id]
        self.orders[conditional_order_id] = order.model_copy(
            update={"resulting_order_id": order_id}
        )
        return True

    async def get_orphaned_triggers(self, network, limit=100):
        return [
            o
            for o in self.orders.values()
            if o.network == network
            and o.status == ConditionalOrderStatus.TRIGGERED
            and o.resulting_order_id is None
        ][:limit]


class FakeOrderRepo:
    """Orders with a unique (network, order_hash) constraint."""

    def __init__(self):
        self.orders: dict[tuple[str, str], Order] = {}
        self.insert_error: Optional[Exception] = None
        self.insert_calls = 0

    async def insert(self, order):
        self.insert_calls += 1
        await asyncio.sleep(0)
        if self.insert_error is not None:
            raise self.insert_error
        key = (order.network, order.order_hash)
        if key in self.orders:
            return False
        self.orders[key] = order
        return True


class FakeOracle:
    """Fixed prices per pair key."""

    def __init__(self, prices=None):
        self.prices = dict(prices or {})
        self.current_price_calls = []

    async def latest_prices(self, network, limit=1000):
        return dict(self.prices)

    async def current_price(self, network, base, quote, window=None):
        self.current_price_calls.append((network, base, quote))
        return self.prices.get(f"{base}_{quote}".lower())


# =============================================================================
# Builders
# =============================================================================


def make_conditional(
    conditional_order_id="co-1",
    type="stop_loss",
    trigger_price="100",
    network="bsc",
    expiration=None,
    template=None,
    created_at=NOW,
    **kwargs,
):
    if template is None:
        template = OrderTemplate(
            tokenIn="0xBase",
            tokenOut="0xQuote",
            amountIn=Decimal("1000"),
            amountOutMin=Decimal("900"),
            nonce="7",
            salt=f"salt-{conditional_order_id}",
            expiration=1767225600,
        )
    return ConditionalOrder(
        network=network,
        conditional_order_id=conditional_order_id,
        maker="0xMaker",
        base_token="0xbase",
        quote_token="0xquote",
        pair="0xbase/0xquote",
        type=type,
        trigger_price=Decimal(trigger_price),
        order_template=template,
        signature="0xsig",
        expiration=expiration,
        created_at=created_at,
        updated_at=NOW,
        **kwargs,
    )


def make_adaptive(order_id="liq-1", **overrides):
    data = dict(
        network="bsc",
        order_id=order_id,
        order_hash=f"0x{order_id}",
        maker="0xmaker",
        token_in="0xbase",
        token_out="0xquote",
        amount_in=Decimal("1000"),
        amount_out_min=Decimal("0"),
        remaining=Decimal("750"),
        base_address="0xbase",
        quote_address="0xquote",
        price=Decimal("1.0"),
        is_liquidity_order=True,
        initial_price=Decimal("1.0"),
        curve_type="linear",
        total_inventory=Decimal("1000"),
        sold_amount=Decimal("250"),
        max_price=Decimal("2.0"),
    )
    data.update(overrides)
    return AdaptiveOrder(**data)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def conditional_factory():
    return make_conditional


@pytest.fixture
def adaptive_factory():
    return make_adaptive


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def conditional_repo():
    return FakeConditionalRepo()


@pytest.fixture
def order_repo():
    return FakeOrderRepo()


@pytest.fixture
def oracle():
    return FakeOracle({"0xbase_0xquote": Decimal("95")})


@pytest.fixture
def alert_manager():
    manager = MagicMock()
    manager.alert_orphaned_trigger = MagicMock(return_value=True)
    manager.alert_orphans_found = MagicMock(return_value=True)
    return manager


@pytest.fixture
def mock_db():
    """Mock database whose transaction() yields a shared connection."""
    db = AsyncMock()
    mock_conn = AsyncMock()

    class MockTransaction:
        async def __aenter__(self):
            return mock_conn

        async def __aexit__(self, *args):
            pass

    db.transaction = MagicMock(side_effect=lambda: MockTransaction())
    db._mock_conn = mock_conn
    return db


@pytest.fixture
def expired_at():
    return NOW - timedelta(seconds=1)
