"""
Adaptive order analytics repository.

Handles:
- adaptive_price_history: append-only price points per adaptive order
- adaptive_order_analytics: running totals, one row per (network, order_id)

Write methods accept ``conn`` so the pricing engine can put the price
update, the history append and the analytics upsert in one transaction.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from orderbook_backend.storage.models import AdaptiveOrderAnalytics, PriceHistoryEntry
from orderbook_backend.storage.repositories.base import BaseRepository


class PriceHistoryRepository(BaseRepository[PriceHistoryEntry]):
    """Repository for adaptive order price history."""

    table_name = "adaptive_price_history"
    model_class = PriceHistoryEntry

    async def append(self, entry: PriceHistoryEntry, conn=None) -> None:
        executor = conn or self.db
        query = """
            INSERT INTO adaptive_price_history
            (network, order_id, recorded_at, price, sold_amount)
            VALUES ($1, $2, $3, $4, $5)
        """
        await executor.execute(
            query,
            entry.network,
            entry.order_id,
            entry.recorded_at,
            entry.price,
            entry.sold_amount,
        )

    async def fill_totals(
        self, network: str, order_id: str, conn=None
    ) -> tuple[Decimal, Decimal]:
        """
        (sum(sold_amount), sum(sold_amount * price)) over every price point.

        Aggregated in SQL so the whole history counts however long it gets.
        """
        executor = conn or self.db
        query = """
            SELECT
                COALESCE(SUM(sold_amount), 0) AS volume,
                COALESCE(SUM(sold_amount * price), 0) AS value
            FROM adaptive_price_history
            WHERE network = $1 AND order_id = $2 AND sold_amount > 0
        """
        record = await executor.fetchrow(query, network, order_id)
        if record is None:
            return Decimal("0"), Decimal("0")
        return Decimal(record["volume"]), Decimal(record["value"])


class AnalyticsRepository(BaseRepository[AdaptiveOrderAnalytics]):
    """Repository for adaptive order analytics."""

    table_name = "adaptive_order_analytics"
    model_class = AdaptiveOrderAnalytics

    async def upsert(self, analytics: AdaptiveOrderAnalytics, conn=None) -> None:
        executor = conn or self.db
        query = """
            INSERT INTO adaptive_order_analytics
            (network, order_id, total_sold, average_fill_price, updated_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (network, order_id) DO UPDATE SET
                total_sold = EXCLUDED.total_sold,
                average_fill_price = EXCLUDED.average_fill_price,
                updated_at = EXCLUDED.updated_at
        """
        await executor.execute(
            query,
            analytics.network,
            analytics.order_id,
            analytics.total_sold,
            analytics.average_fill_price,
            analytics.updated_at,
        )

    async def get(self, network: str, order_id: str) -> Optional[AdaptiveOrderAnalytics]:
        query = """
            SELECT * FROM adaptive_order_analytics
            WHERE network = $1 AND order_id = $2
        """
        record = await self.db.fetchrow(query, network, order_id)
        return self._record_to_model(record)
