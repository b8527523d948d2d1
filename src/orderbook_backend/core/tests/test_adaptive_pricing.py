"""
Tests for the AdaptivePricingEngine update protocol.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from orderbook_backend.core.adaptive_pricing import AdaptivePricingEngine
from orderbook_backend.storage.models import PriceHistoryEntry


def _point(at, price, sold, order_id="liq-1"):
    return PriceHistoryEntry(
        network="bsc", order_id=order_id, recorded_at=at,
        price=Decimal(price), sold_amount=Decimal(sold),
    )


@pytest.fixture
def repos():
    orders = MagicMock()
    orders.get_open_adaptive = AsyncMock(return_value=[])
    orders.get_adaptive = AsyncMock(return_value=None)
    orders.update_price = AsyncMock(return_value=True)

    # Stored price points; fill_totals aggregates them the way the SQL does
    history = MagicMock()
    history.entries = []

    async def append(entry, conn=None):
        history.entries.append(entry)

    async def fill_totals(network, order_id, conn=None):
        rows = [
            e for e in history.entries
            if e.network == network and e.order_id == order_id and e.sold_amount > 0
        ]
        volume = sum((e.sold_amount for e in rows), Decimal("0"))
        value = sum((e.sold_amount * e.price for e in rows), Decimal("0"))
        return volume, value

    history.append = AsyncMock(side_effect=append)
    history.fill_totals = AsyncMock(side_effect=fill_totals)

    analytics = MagicMock()
    analytics.upsert = AsyncMock()
    return orders, history, analytics


@pytest.fixture
def engine(mock_db, repos, oracle, clock):
    orders, history, analytics = repos
    return AdaptivePricingEngine(mock_db, orders, history, analytics, oracle, clock=clock)


class TestRun:
    @pytest.mark.asyncio
    async def test_no_orders(self, engine, repos):
        assert await engine.run("bsc") == 0
        repos[0].update_price.assert_not_called()

    @pytest.mark.asyncio
    async def test_writes_price_history_and_analytics_in_one_transaction(
        self, engine, repos, mock_db, adaptive_factory, now
    ):
        orders, history, analytics = repos
        order = adaptive_factory()
        orders.get_open_adaptive.return_value = [order]

        assert await engine.run("bsc") == 1

        conn = mock_db._mock_conn
        mock_db.transaction.assert_called_once()
        orders.update_price.assert_awaited_once_with(order, Decimal("1.25"), now, conn=conn)

        entry = history.append.call_args[0][0]
        assert entry.price == Decimal("1.25")
        assert entry.sold_amount == Decimal("250")
        assert history.append.call_args.kwargs["conn"] is conn

        stats = analytics.upsert.call_args[0][0]
        assert stats.total_sold == Decimal("250")
        assert stats.average_fill_price == Decimal("1.25")
        assert analytics.upsert.call_args.kwargs["conn"] is conn
        assert history.fill_totals.call_args.kwargs["conn"] is conn

    @pytest.mark.asyncio
    async def test_average_fill_price_weights_every_price_point(
        self, engine, repos, adaptive_factory, now
    ):
        """(100 @ 1.0) already stored, then (100 @ 1.2) written: average 1.1."""
        orders, history, analytics = repos
        history.entries.append(_point(now, "1.0", "100"))
        orders.get_open_adaptive.return_value = [
            adaptive_factory(total_inventory=Decimal("500"), sold_amount=Decimal("100"))
        ]

        assert await engine.run("bsc") == 1

        assert history.entries[-1].price == Decimal("1.2")
        assert analytics.upsert.call_args[0][0].average_fill_price == Decimal("1.1")

    @pytest.mark.asyncio
    async def test_long_history_includes_newest_point(
        self, engine, repos, adaptive_factory, now
    ):
        orders, history, analytics = repos
        history.entries.extend(_point(now, "1.0", "1") for _ in range(1500))
        orders.get_open_adaptive.return_value = [
            adaptive_factory(total_inventory=Decimal("500"), sold_amount=Decimal("100"))
        ]

        await engine.run("bsc")

        # (1500 * 1.0 + 100 * 1.2) / 1600
        assert analytics.upsert.call_args[0][0].average_fill_price == Decimal("1.0125")

    @pytest.mark.asyncio
    async def test_skips_write_within_epsilon(self, engine, repos, adaptive_factory):
        orders, history, _ = repos
        orders.get_open_adaptive.return_value = [
            adaptive_factory(price=Decimal("1.2500005"))
        ]

        assert await engine.run("bsc") == 0
        orders.update_price.assert_not_called()
        history.append.assert_not_called()

    @pytest.mark.asyncio
    async def test_one_failing_order_does_not_stop_others(
        self, engine, repos, adaptive_factory
    ):
        orders, _, _ = repos
        bad = adaptive_factory("bad", initial_price=None, price=None)
        good = adaptive_factory("good")
        orders.get_open_adaptive.return_value = [bad, good]

        assert await engine.run("bsc") == 1
        assert orders.update_price.call_args[0][0].order_id == "good"

    @pytest.mark.asyncio
    async def test_failed_write_is_not_counted(self, engine, repos, adaptive_factory):
        orders, _, _ = repos
        orders.get_open_adaptive.return_value = [adaptive_factory()]
        orders.update_price.side_effect = RuntimeError("deadlock")

        assert await engine.run("bsc") == 0

    @pytest.mark.asyncio
    async def test_one_oracle_call_per_pair(self, engine, repos, oracle, adaptive_factory):
        orders, _, _ = repos
        orders.get_open_adaptive.return_value = [
            adaptive_factory("a"),
            adaptive_factory("b"),
            adaptive_factory("c", base_address="0xother"),
        ]

        await engine.run("bsc")

        assert len(oracle.current_price_calls) == 2

    @pytest.mark.asyncio
    async def test_market_tracking_uses_oracle(self, engine, repos, oracle, adaptive_factory):
        orders, _, _ = repos
        oracle.prices["0xbase_0xquote"] = Decimal("1.0")
        orders.get_open_adaptive.return_value = [
            adaptive_factory(curve_type="market_tracking", sold_amount=Decimal("500"))
        ]

        await engine.run("bsc")

        assert orders.update_price.call_args[0][1] == Decimal("1.05")


class TestQuote:
    @pytest.mark.asyncio
    async def test_unknown_order(self, engine):
        assert await engine.quote("bsc", "missing") is None

    @pytest.mark.asyncio
    async def test_quote(self, engine, repos, adaptive_factory):
        repos[0].get_adaptive.return_value = adaptive_factory()
        assert await engine.quote("bsc", "liq-1") == Decimal("1.25")
