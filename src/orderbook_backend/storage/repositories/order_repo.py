"""
Order repository for the off-chain order book.

Handles:
- orders: signed orders, including adaptive (liquidity / SAL) orders

Methods that take ``conn`` run on that connection when given, so the
caller can group several writes in one transaction.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from orderbook_backend.storage.models import AdaptiveOrder, Order, OrderStatus
from orderbook_backend.storage.repositories.base import BaseRepository, affected_rows


class OrderRepository(BaseRepository[Order]):
    """Repository for orders."""

    table_name = "orders"
    model_class = Order

    async def insert(self, order: Order) -> bool:
        """
        Insert an order.

        Idempotent on (network, order_hash): returns False when an order with
        the same hash already exists and nothing was written.
        """
        query = """
            INSERT INTO orders
            (network, order_id, order_hash, maker, token_in, token_out,
             amount_in, amount_out_min, remaining, expiration, nonce, receiver,
             salt, signature, status, source, source_conditional_order_id,
             base_address, quote_address, pair, price, order_json,
             created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12,
                    $13, $14, $15, $16, $17, $18, $19, $20, $21, $22::jsonb, $23, $24)
            ON CONFLICT (network, order_hash) DO NOTHING
            RETURNING order_id
        """
        now = datetime.now(timezone.utc)
        inserted = await self.db.fetchval(
            query,
            order.network,
            order.order_id,
            order.order_hash,
            order.maker,
            order.token_in,
            order.token_out,
            order.amount_in,
            order.amount_out_min,
            order.remaining,
            order.expiration,
            order.nonce,
            order.receiver,
            order.salt,
            order.signature,
            order.status.value,
            order.source.value if order.source else None,
            order.source_conditional_order_id,
            order.base_address,
            order.quote_address,
            order.pair,
            order.price,
            json.dumps(order.order_json) if order.order_json is not None else None,
            order.created_at or now,
            order.updated_at or now,
        )
        return inserted is not None

    async def get(self, network: str, order_id: str) -> Optional[Order]:
        query = "SELECT * FROM orders WHERE network = $1 AND order_id = $2"
        record = await self.db.fetchrow(query, network, order_id)
        return self._record_to_model(record)

    async def get_by_hash(self, network: str, order_hash: str) -> Optional[Order]:
        """Get an order by its on-chain order hash."""
        query = "SELECT * FROM orders WHERE network = $1 AND order_hash = $2"
        record = await self.db.fetchrow(query, network, order_hash.lower())
        return self._record_to_model(record)

    async def get_open(
        self, network: str, limit: int = 500, after: Optional[str] = None
    ) -> list[Order]:
        """One page of open orders with an on-chain hash, keyed on order_id."""
        query = """
            SELECT * FROM orders
            WHERE network = $1
              AND status = 'open'
              AND order_hash IS NOT NULL
              AND order_id > $3
            ORDER BY order_id ASC
            LIMIT $2
        """
        records = await self.db.fetch(query, network, limit, after or "")
        return self._records_to_models(records)

    # -------------------------------------------------------------------------
    # Adaptive orders
    # -------------------------------------------------------------------------

    async def get_open_adaptive(self, network: str, limit: int = 500) -> list[AdaptiveOrder]:
        """Open liquidity / SAL orders that still have inventory."""
        query = """
            SELECT * FROM orders
            WHERE network = $1
              AND status = 'open'
              AND remaining > 0
              AND (is_liquidity_order = TRUE OR is_sal_order = TRUE)
            ORDER BY created_at ASC
            LIMIT $2
        """
        records = await self.db.fetch(query, network, limit)
        return self._records_to_models(records, AdaptiveOrder)

    async def get_adaptive(self, network: str, order_id: str) -> Optional[AdaptiveOrder]:
        query = """
            SELECT * FROM orders
            WHERE network = $1 AND order_id = $2
              AND (is_liquidity_order = TRUE OR is_sal_order = TRUE)
        """
        record = await self.db.fetchrow(query, network, order_id)
        return self._record_to_model(record, AdaptiveOrder)

    async def update_price(
        self,
        order: AdaptiveOrder,
        price: Decimal,
        now: datetime,
        conn=None,
    ) -> bool:
        """
        Write a recomputed price.

        SAL orders also carry the price and sold amount in their sal_* columns.
        """
        executor = conn or self.db
        if order.is_sal_order:
            query = """
                UPDATE orders
                SET price = $3, sal_current_price = $3, sal_sold_amount = $4,
                    updated_at = $5
                WHERE network = $1 AND order_id = $2
            """
            status = await executor.execute(
                query, order.network, order.order_id, price, order.sold_amount, now
            )
        else:
            query = """
                UPDATE orders
                SET price = $3, updated_at = $4
                WHERE network = $1 AND order_id = $2
            """
            status = await executor.execute(query, order.network, order.order_id, price, now)
        return affected_rows(status) == 1

    # -------------------------------------------------------------------------
    # Settlement feedback
    # -------------------------------------------------------------------------

    async def apply_fill(
        self, network: str, order_hash: str, amount_in: Decimal
    ) -> Optional[Order]:
        """
        Decrement remaining by a filled amount.

        Remaining never goes below zero; an order reaching zero becomes
        'filled'. Returns the updated order, or None if it is unknown.
        """
        query = """
            UPDATE orders
            SET remaining = GREATEST(remaining - $3, 0),
                status = CASE WHEN remaining - $3 <= 0 THEN 'filled' ELSE status END,
                sal_sold_amount = CASE
                    WHEN is_sal_order = TRUE THEN COALESCE(sal_sold_amount, 0) + $3
                    ELSE sal_sold_amount
                END,
                updated_at = $4
            WHERE network = $1 AND order_hash = $2
            RETURNING *
        """
        record = await self.db.fetchrow(
            query, network, order_hash.lower(), amount_in, datetime.now(timezone.utc)
        )
        return self._record_to_model(record)

    async def set_remaining(
        self,
        network: str,
        order_hash: str,
        remaining: Decimal,
        status: OrderStatus,
    ) -> bool:
        """Overwrite remaining and status (used by chain reconciliation)."""
        query = """
            UPDATE orders
            SET remaining = $3, status = $4, updated_at = $5
            WHERE network = $1 AND order_hash = $2
        """
        result = await self.db.execute(
            query,
            network,
            order_hash.lower(),
            remaining,
            status.value,
            datetime.now(timezone.utc),
        )
        return affected_rows(result) == 1

    async def mark_cancelled(self, network: str, order_hash: str) -> bool:
        """Cancel an open order by hash."""
        query = """
            UPDATE orders
            SET status = 'cancelled', updated_at = $3
            WHERE network = $1 AND order_hash = $2 AND status = 'open'
        """
        result = await self.db.execute(
            query, network, order_hash.lower(), datetime.now(timezone.utc)
        )
        return affected_rows(result) == 1

    async def cancel_below_nonce(self, network: str, maker: str, min_nonce: int) -> int:
        """Cancel a maker's open orders whose nonce is below ``min_nonce``."""
        query = """
            UPDATE orders
            SET status = 'cancelled', updated_at = $4
            WHERE network = $1
              AND maker = $2
              AND status = 'open'
              AND nonce IS NOT NULL
              AND nonce::numeric < $3::numeric
        """
        result = await self.db.execute(
            query, network, maker.lower(), str(min_nonce), datetime.now(timezone.utc)
        )
        return affected_rows(result)
