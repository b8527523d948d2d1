"""
Trade repository.

Handles:
- trades: executed fills, written by the settlement listener and read by
  the price oracle

Inserts are idempotent on (network, tx_hash, log_index) so re-scanning a
block range after a restart never duplicates a trade.
"""
from __future__ import annotations

from typing import Optional

from orderbook_backend.storage.models import Trade
from orderbook_backend.storage.repositories.base import BaseRepository


class TradeRepository(BaseRepository[Trade]):
    """Repository for executed trades."""

    table_name = "trades"
    model_class = Trade

    async def record(self, trade: Trade) -> bool:
        """Insert a trade. Returns False if it was already recorded."""
        query = """
            INSERT INTO trades
            (network, tx_hash, log_index, block_number, order_hash, maker, taker,
             base_address, quote_address, pair, amount_base, amount_quote, price,
             created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            ON CONFLICT (network, tx_hash, log_index) DO NOTHING
            RETURNING id
        """
        inserted = await self.db.fetchval(
            query,
            trade.network,
            trade.tx_hash,
            trade.log_index,
            trade.block_number,
            trade.order_hash,
            trade.maker,
            trade.taker,
            trade.base_address,
            trade.quote_address,
            trade.pair,
            trade.amount_base,
            trade.amount_quote,
            trade.price,
            trade.created_at,
        )
        return inserted is not None

    async def get_recent(
        self,
        network: str,
        limit: int = 1000,
        base: Optional[str] = None,
        quote: Optional[str] = None,
    ) -> list[Trade]:
        """Most recent trades, newest first, optionally for a single pair."""
        if base is not None and quote is not None:
            query = """
                SELECT * FROM trades
                WHERE network = $1
                  AND LOWER(base_address) = $2
                  AND LOWER(quote_address) = $3
                ORDER BY created_at DESC
                LIMIT $4
            """
            records = await self.db.fetch(query, network, base.lower(), quote.lower(), limit)
        else:
            query = """
                SELECT * FROM trades
                WHERE network = $1
                ORDER BY created_at DESC
                LIMIT $2
            """
            records = await self.db.fetch(query, network, limit)
        return self._records_to_models(records)
