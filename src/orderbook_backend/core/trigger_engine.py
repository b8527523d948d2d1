"""
Conditional order trigger engine.

Promotes pending stop-loss / take-profit orders into live orders when the
market crosses their trigger price:

    pending --(condition met, claim won)--> triggered --(order inserted)--> done

Critical invariant:
    At most one resulting order per conditional order, no matter how many
    workers or processes run this engine at once. Two mechanisms enforce it:
      1. The claim is a compare-and-swap UPDATE in the store (status must
         still be 'pending'), so exactly one worker proceeds.
      2. The order hash is derived deterministically from the template and
         the store enforces hash uniqueness, so a retried insert is a no-op.

If the claim succeeds but the insert fails, the conditional order stays
'triggered' without a resulting order. It is never re-claimed; it is
logged, alerted and listed by find_orphaned_triggers() for remediation.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Optional

from orderbook_backend.market.price_oracle import PriceOracle
from orderbook_backend.storage.models import (
    ConditionalOrder,
    ConditionalOrderType,
    Order,
    OrderSource,
    OrderStatus,
    OrderTemplate,
)
from orderbook_backend.storage.repositories import (
    ConditionalOrderRepository,
    OrderRepository,
)

if TYPE_CHECKING:
    from orderbook_backend.monitoring.alerting import AlertManager

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def evaluate_trigger(
    order_type: str, price: Decimal, trigger_price: Decimal
) -> Optional[bool]:
    """
    Whether a conditional order fires at ``price``.

    stop_loss fires at or below the trigger, take_profit at or above it.
    Returns None for an unknown type.
    """
    if order_type == ConditionalOrderType.STOP_LOSS.value:
        return price <= trigger_price
    if order_type == ConditionalOrderType.TAKE_PROFIT.value:
        return price >= trigger_price
    return None


def derive_order_hash(
    network: str,
    maker: str,
    nonce: Optional[str],
    token_in: str,
    token_out: str,
    salt: Optional[str],
) -> str:
    """
    Deterministic order hash of the canonical template tuple.

    Addresses are lower-cased and nonce/salt stringified, so the same
    template always produces the same hash.
    """
    canonical = json.dumps(
        {
            "network": network,
            "maker": (maker or "").lower(),
            "nonce": str(nonce or ""),
            "tokenIn": (token_in or "").lower(),
            "tokenOut": (token_out or "").lower(),
            "salt": str(salt or ""),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return "0x" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_order(
    co: ConditionalOrder, template: OrderTemplate, now: datetime
) -> Order:
    """The live order a triggered conditional order turns into."""
    maker = template.maker or co.maker
    order_hash = derive_order_hash(
        co.network, maker, template.nonce, template.token_in, template.token_out, template.salt
    )
    expiration = None
    if template.expiration:
        expiration = datetime.fromtimestamp(template.expiration, tz=timezone.utc)

    return Order(
        network=co.network,
        order_id=order_hash,
        order_hash=order_hash,
        maker=co.maker,
        token_in=template.token_in,
        token_out=template.token_out,
        amount_in=template.amount_in,
        amount_out_min=template.amount_out_min,
        remaining=template.amount_in,
        expiration=expiration,
        nonce=template.nonce,
        receiver=template.receiver or "",
        salt=template.salt,
        signature=co.signature,
        status=OrderStatus.OPEN,
        source=OrderSource.CONDITIONAL,
        source_conditional_order_id=co.conditional_order_id,
        base_address=co.base_token,
        quote_address=co.quote_token,
        pair=co.pair or f"{co.base_token}/{co.quote_token}",
        order_json=template.to_json(),
        created_at=now,
        updated_at=now,
    )


class ConditionalTriggerEngine:
    """
    Evaluates pending conditional orders for one network per run.

    Usage:
        engine = ConditionalTriggerEngine(conditional_repo, order_repo, oracle)
        created_order_ids = await engine.run("bsc")
    """

    def __init__(
        self,
        conditional_repo: ConditionalOrderRepository,
        order_repo: OrderRepository,
        oracle: PriceOracle,
        alert_manager: Optional["AlertManager"] = None,
        clock: Callable[[], datetime] = _utc_now,
        batch_size: int = 100,
    ) -> None:
        self._conditional = conditional_repo
        self._orders = order_repo
        self._oracle = oracle
        self._alerts = alert_manager
        self._clock = clock
        self._batch_size = batch_size

    async def run(self, network: str) -> list[str]:
        """
        One pass over the network's pending conditional orders.

        Returns the ids of orders created in this pass. Errors on a single
        conditional order are logged and never abort the pass.
        """
        now = self._clock()
        prices: Optional[dict[str, Decimal]] = None
        created: list[str] = []
        evaluated = 0
        after = None

        while True:
            page = await self._conditional.get_pending(
                network, now, limit=self._batch_size, after=after
            )
            if not page:
                break
            if prices is None:
                prices = await self._oracle.latest_prices(network)

            for co in page:
                try:
                    order_id = await self._process(network, co, prices, now)
                except Exception as e:
                    logger.error(
                        f"{network}: error processing conditional order "
                        f"{co.conditional_order_id}: {e}"
                    )
                    continue
                if order_id is not None:
                    created.append(order_id)

            evaluated += len(page)
            last = page[-1]
            after = (last.created_at, last.conditional_order_id)

        if not evaluated:
            logger.debug(f"{network}: no pending conditional orders")
            return []
        logger.debug(
            f"{network}: evaluated {evaluated} conditional orders "
            f"against {len(prices or {})} pair prices"
        )

        if created:
            logger.info(f"{network}: {len(created)} conditional orders triggered")
        return created

    async def _process(
        self,
        network: str,
        co: ConditionalOrder,
        prices: dict[str, Decimal],
        now: datetime,
    ) -> Optional[str]:
        # Same clock as the store filter
        if co.is_expired(now):
            return None

        price = prices.get(co.pair_key)
        if price is None:
            logger.debug(
                f"{network}: no price for {co.pair_key}, "
                f"skipping conditional order {co.conditional_order_id}"
            )
            return None

        fires = evaluate_trigger(co.type, price, co.trigger_price)
        if fires is None:
            logger.warning(
                f"{network}: unknown conditional order type '{co.type}' "
                f"on {co.conditional_order_id}, skipped"
            )
            return None
        if not fires:
            return None

        template = co.order_template
        missing = (
            template.missing_fields(maker=co.maker) if template is not None else ["orderTemplate"]
        )
        if missing:
            logger.warning(
                f"{network}: conditional order {co.conditional_order_id} template "
                f"missing {', '.join(missing)}, skipped"
            )
            return None

        logger.info(
            f"{network}: {co.type} condition met for {co.conditional_order_id} "
            f"(price={price}, trigger={co.trigger_price})"
        )

        if not await self._conditional.claim(co.conditional_order_id, network, price, now):
            # Another worker won the claim
            logger.debug(f"{network}: {co.conditional_order_id} already claimed")
            return None

        order = build_order(co, template, now)

        try:
            inserted = await self._orders.insert(order)
        except Exception as e:
            logger.error(
                f"{network}: failed to insert order {order.order_id} for triggered "
                f"conditional order {co.conditional_order_id}: {e}"
            )
            await self._alert_orphan(network, co, order.order_id, str(e))
            return None

        if not inserted:
            logger.info(
                f"{network}: order {order.order_id} for {co.conditional_order_id} "
                f"already exists"
            )

        try:
            await self._conditional.set_resulting_order_id(
                co.conditional_order_id, network, order.order_id, now
            )
        except Exception as e:
            logger.warning(
                f"{network}: failed to set resulting_order_id on "
                f"{co.conditional_order_id}: {e}"
            )

        logger.info(
            f"{network}: conditional order {co.conditional_order_id} triggered, "
            f"created order {order.order_id} (source: conditional)"
        )
        return order.order_id

    async def _alert_orphan(
        self, network: str, co: ConditionalOrder, order_id: str, error: str
    ) -> None:
        if self._alerts is None:
            return
        try:
            await asyncio.to_thread(
                self._alerts.alert_orphaned_trigger,
                network,
                co.conditional_order_id,
                error,
                order_id,
            )
        except Exception as e:
            logger.warning(f"{network}: failed to send orphan alert: {e}")

    async def find_orphaned_triggers(self, network: str) -> list[ConditionalOrder]:
        """Triggered conditional orders that never got a resulting order."""
        orphans = await self._conditional.get_orphaned_triggers(network)
        if orphans:
            logger.warning(
                f"{network}: {len(orphans)} triggered conditional orders without "
                f"resulting order: {', '.join(o.conditional_order_id for o in orphans)}"
            )
            if self._alerts is not None:
                await asyncio.to_thread(self._alerts.alert_orphans_found, network, len(orphans))
        return orphans
