"""
Adaptive pricing engine.

Re-prices open liquidity and SAL orders as their inventory sells. Each
write (price update, history append, analytics upsert) is a single
transaction so history and analytics never disagree with the posted price.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from orderbook_backend.core.pricing import (
    price_changed,
    recompute_price,
    weighted_average,
)
from orderbook_backend.market.price_oracle import PriceOracle
from orderbook_backend.storage.database import Database
from orderbook_backend.storage.models import (
    AdaptiveOrder,
    AdaptiveOrderAnalytics,
    PriceCurve,
    PriceHistoryEntry,
)
from orderbook_backend.storage.repositories import (
    AnalyticsRepository,
    OrderRepository,
    PriceHistoryRepository,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AdaptivePricingEngine:
    """
    Recomputes adaptive order prices for one network per run.

    Usage:
        engine = AdaptivePricingEngine(db, orders, history, analytics, oracle)
        updated = await engine.run("bsc")
    """

    def __init__(
        self,
        db: Database,
        order_repo: OrderRepository,
        history_repo: PriceHistoryRepository,
        analytics_repo: AnalyticsRepository,
        oracle: PriceOracle,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._db = db
        self._orders = order_repo
        self._history = history_repo
        self._analytics = analytics_repo
        self._oracle = oracle
        self._clock = clock

    async def _market_prices(
        self, network: str, orders: list[AdaptiveOrder]
    ) -> dict[str, Optional[Decimal]]:
        """One oracle lookup per unique pair."""
        prices: dict[str, Optional[Decimal]] = {}
        for order in orders:
            key = order.pair_key
            if key in prices or not order.base_address or not order.quote_address:
                continue
            try:
                prices[key] = await self._oracle.current_price(
                    network, order.base_address, order.quote_address
                )
            except Exception as e:
                logger.warning(f"{network}: market price lookup failed for {key}: {e}")
                prices[key] = None
            if prices[key] is not None:
                logger.debug(f"{network}: market price for {key}: {prices[key]}")
        return prices

    async def run(self, network: str) -> int:
        """Re-price every open adaptive order. Returns the number updated."""
        orders = await self._orders.get_open_adaptive(network)
        if not orders:
            logger.debug(f"{network}: no adaptive orders to re-price")
            return 0

        market_prices = await self._market_prices(network, orders)

        updated = 0
        for order in orders:
            try:
                new_price = recompute_price(order, market_prices.get(order.pair_key))
                if not price_changed(order.price, new_price):
                    continue
                await self._write_price(order, new_price)
            except Exception as e:
                logger.error(f"{network}: failed to re-price order {order.order_id}: {e}")
                continue

            updated += 1
            logger.info(
                f"{network}: re-priced {order.curve_type} order {order.order_id}: "
                f"{order.price} -> {new_price} "
                f"(sold {order.sold_amount}/{order.total_inventory})"
            )

        if updated:
            logger.info(f"{network}: updated prices for {updated} adaptive orders")
        return updated

    async def _write_price(self, order: AdaptiveOrder, new_price: Decimal) -> None:
        now = self._clock()
        entry = PriceHistoryEntry(
            network=order.network,
            order_id=order.order_id,
            recorded_at=now,
            price=new_price,
            sold_amount=order.sold_amount,
        )
        async with self._db.transaction() as conn:
            await self._orders.update_price(order, new_price, now, conn=conn)
            await self._history.append(entry, conn=conn)
            volume, value = await self._history.fill_totals(
                order.network, order.order_id, conn=conn
            )
            await self._analytics.upsert(
                AdaptiveOrderAnalytics(
                    network=order.network,
                    order_id=order.order_id,
                    total_sold=order.sold_amount,
                    average_fill_price=weighted_average(volume, value),
                    updated_at=now,
                ),
                conn=conn,
            )

    async def quote(self, network: str, order_id: str) -> Optional[Decimal]:
        """Current computed price of one adaptive order, or None if unknown."""
        order = await self._orders.get_adaptive(network, order_id)
        if order is None:
            return None
        market_price = None
        if order.curve_type == PriceCurve.MARKET_TRACKING.value and order.base_address and order.quote_address:
            market_price = await self._oracle.current_price(
                network, order.base_address, order.quote_address
            )
        return recompute_price(order, market_price)
