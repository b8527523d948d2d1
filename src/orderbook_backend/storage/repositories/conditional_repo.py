"""
Conditional order repository.

Handles:
- conditional_orders: pending stop-loss / take-profit triggers

CRITICAL: claim() is the only synchronization primitive between trigger
workers. It is a conditional UPDATE scoped by (id, network, status='pending')
so PostgreSQL row locking decides the single winner, across threads and
across processes. No application-level lock is involved.
"""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import ValidationError

from orderbook_backend.storage.database import TRANSIENT_DB_ERRORS
from orderbook_backend.storage.models import (
    ConditionalOrder,
    ConditionalOrderStatus,
    ConditionalOrderType,
    OrderTemplate,
)
from orderbook_backend.storage.repositories.base import BaseRepository, affected_rows

logger = logging.getLogger(__name__)


class ConditionalOrderValidationError(ValueError):
    """Raised when a new conditional order is rejected before insert."""


class ConditionalOrderRepository(BaseRepository[ConditionalOrder]):
    """Repository for conditional (triggered) orders."""

    table_name = "conditional_orders"
    model_class = ConditionalOrder

    async def create(
        self,
        network: str,
        maker: str,
        base_token: str,
        quote_token: str,
        order_type: str,
        trigger_price: Any,
        order_template: dict,
        signature: str,
        expiration: Optional[datetime] = None,
    ) -> ConditionalOrder:
        """
        Validate and insert a new pending conditional order.

        Addresses are stored lower-cased; the pair is 'base/quote'.

        Raises:
            ConditionalOrderValidationError: on missing or invalid fields
        """
        maker = (maker or "").lower()
        base_token = (base_token or "").lower()
        quote_token = (quote_token or "").lower()

        required = [network, maker, base_token, quote_token, order_type, order_template, signature]
        if not all(required):
            raise ConditionalOrderValidationError(
                "network, maker, baseToken, quoteToken, type, triggerPrice, "
                "orderTemplate, and signature required"
            )
        if order_type not in {t.value for t in ConditionalOrderType}:
            raise ConditionalOrderValidationError("type must be stop_loss or take_profit")
        try:
            price = Decimal(str(trigger_price))
        except (InvalidOperation, ValueError):
            raise ConditionalOrderValidationError("triggerPrice must be a valid number")
        if not price.is_finite() or price <= 0:
            raise ConditionalOrderValidationError("triggerPrice must be a positive number")

        try:
            template = OrderTemplate.model_validate(order_template)
        except ValidationError as e:
            raise ConditionalOrderValidationError(f"orderTemplate is invalid: {e}") from e
        now = datetime.now(timezone.utc)

        query = """
            INSERT INTO conditional_orders
            (network, conditional_order_id, maker, base_token, quote_token, pair,
             type, trigger_price, order_template, signature, expiration, status,
             created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $12, $13, $13)
            RETURNING *
        """
        record = await self.db.fetchrow(
            query,
            network,
            str(uuid.uuid4()),
            maker,
            base_token,
            quote_token,
            f"{base_token}/{quote_token}",
            order_type,
            price,
            json.dumps(template.to_json()),
            signature,
            expiration,
            ConditionalOrderStatus.PENDING.value,
            now,
        )
        return self._record_to_model(record)

    async def get(self, conditional_order_id: str, network: str) -> Optional[ConditionalOrder]:
        """Get a conditional order by id."""
        query = """
            SELECT * FROM conditional_orders
            WHERE conditional_order_id = $1 AND network = $2
        """
        record = await self.db.fetchrow(query, conditional_order_id, network)
        return self._record_to_model(record)

    async def get_pending(
        self,
        network: str,
        now: datetime,
        limit: int = 100,
        after: Optional[tuple[datetime, str]] = None,
    ) -> list[ConditionalOrder]:
        """
        Get one page of pending, non-expired conditional orders.

        ``now`` comes from the caller's clock so the store filter and the
        in-process check agree. Null expiration never expires.

        Pages are keyed on (created_at, conditional_order_id). Pass the last
        row's key as ``after`` to get the next page.
        """
        if after is None:
            query = """
                SELECT * FROM conditional_orders
                WHERE network = $1
                  AND status = 'pending'
                  AND (expiration IS NULL OR expiration > $2)
                ORDER BY created_at ASC, conditional_order_id ASC
                LIMIT $3
            """
            records = await self.db.fetch(query, network, now, limit)
            return self._records_to_models(records)

        query = """
            SELECT * FROM conditional_orders
            WHERE network = $1
              AND status = 'pending'
              AND (expiration IS NULL OR expiration > $2)
              AND (created_at, conditional_order_id) > ($4, $5)
            ORDER BY created_at ASC, conditional_order_id ASC
            LIMIT $3
        """
        records = await self.db.fetch(query, network, now, limit, after[0], after[1])
        return self._records_to_models(records)

    async def claim(
        self,
        conditional_order_id: str,
        network: str,
        triggered_price: Decimal,
        now: datetime,
    ) -> bool:
        """
        Atomically flip pending -> triggered.

        Returns True only for the caller whose UPDATE matched the row.
        Every other concurrent caller sees zero rows and gets False.

        The UPDATE is never retried: a retry after a lost reply would match
        zero rows and hide a claim that did commit. On a connection error the
        row is re-read instead, and the claim counts as ours when it carries
        our triggered_at and triggered_price.
        """
        query = """
            UPDATE conditional_orders
            SET status = 'triggered',
                triggered_at = $3,
                triggered_price = $4,
                updated_at = $3
            WHERE conditional_order_id = $1
              AND network = $2
              AND status = 'pending'
            RETURNING conditional_order_id
        """
        try:
            async with self.db.connection() as conn:
                result = await conn.fetchval(
                    query, conditional_order_id, network, now, triggered_price
                )
        except TRANSIENT_DB_ERRORS as e:
            logger.warning(
                f"{network}: claim of conditional order {conditional_order_id} "
                f"interrupted ({e}), re-reading row"
            )
            row = await self.get(conditional_order_id, network)
            return (
                row is not None
                and row.status == ConditionalOrderStatus.TRIGGERED
                and row.triggered_at == now
                and row.triggered_price == triggered_price
            )
        return result is not None

    async def set_resulting_order_id(
        self,
        conditional_order_id: str,
        network: str,
        order_id: str,
        now: datetime,
    ) -> bool:
        """Record which order a triggered conditional order produced."""
        query = """
            UPDATE conditional_orders
            SET resulting_order_id = $3, updated_at = $4
            WHERE conditional_order_id = $1 AND network = $2
        """
        status = await self.db.execute(query, conditional_order_id, network, order_id, now)
        return affected_rows(status) == 1

    async def cancel(self, conditional_order_id: str, network: str) -> bool:
        """Cancel a conditional order. Only pending orders can be cancelled."""
        query = """
            UPDATE conditional_orders
            SET status = 'cancelled', updated_at = $3
            WHERE conditional_order_id = $1
              AND network = $2
              AND status = 'pending'
        """
        status = await self.db.execute(
            query, conditional_order_id, network, datetime.now(timezone.utc)
        )
        return affected_rows(status) == 1

    async def list_for_maker(
        self,
        network: str,
        maker: str,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[ConditionalOrder]:
        """List a maker's conditional orders, newest first."""
        if status is not None:
            query = """
                SELECT * FROM conditional_orders
                WHERE network = $1 AND maker = $2 AND status = $3
                ORDER BY created_at DESC
                LIMIT $4
            """
            records = await self.db.fetch(query, network, maker.lower(), status, limit)
        else:
            query = """
                SELECT * FROM conditional_orders
                WHERE network = $1 AND maker = $2
                ORDER BY created_at DESC
                LIMIT $3
            """
            records = await self.db.fetch(query, network, maker.lower(), limit)
        return self._records_to_models(records)

    async def get_orphaned_triggers(
        self, network: str, limit: int = 100
    ) -> list[ConditionalOrder]:
        """
        Triggered conditional orders with no resulting order.

        This is the degraded terminal state left when the claim succeeded
        but the order insert failed. It needs manual remediation.
        """
        query = """
            SELECT c.* FROM conditional_orders c
            WHERE c.network = $1
              AND c.status = 'triggered'
              AND c.resulting_order_id IS NULL
              AND NOT EXISTS (
                  SELECT 1 FROM orders o
                  WHERE o.network = c.network
                    AND o.source_conditional_order_id = c.conditional_order_id
              )
            ORDER BY c.triggered_at ASC
            LIMIT $2
        """
        records = await self.db.fetch(query, network, limit)
        return self._records_to_models(records)
