"""
Settlement event listener.

Polls settlement contract logs per network from a block watermark and feeds
them back into the store:

    OrderFilled      -> record a trade, decrement the order's remaining
    OrderCancelled   -> order status 'cancelled'
    MinNonceUpdated  -> cancel the maker's open orders below the new nonce
    Matched          -> logged only (the two OrderFilled events carry the data)

Only confirmed blocks are read. Networks are polled independently: one
failing RPC never holds back the others, and a bad event never stops the
rest of its batch.

Events missed while the process was down are not replayed. A periodic
reconcile pass compares every open order with the contract views instead.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from orderbook_backend.chain.settlement import SETTLEMENT_EVENTS, SettlementContract
from orderbook_backend.market.cache import TTLCache
from orderbook_backend.storage.models import Order, OrderStatus, Trade
from orderbook_backend.storage.repositories import OrderRepository, TradeRepository

logger = logging.getLogger(__name__)


@dataclass
class ListenerConfig:
    """Configuration for the settlement listener."""

    poll_interval_seconds: float = 5.0
    confirmations: int = 3
    max_block_span: int = 2000
    decimals_ttl_seconds: float = 3600.0
    reconcile_page_size: int = 500


def to_hex(value: Any) -> str:
    """Lower-case 0x hex of bytes32 / address values."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def human_price(
    amount_base: Decimal, amount_quote: Decimal, base_decimals: int, quote_decimals: int
) -> Optional[Decimal]:
    """Quote per base in whole-token units."""
    if amount_base <= 0:
        return None
    base = amount_base / (Decimal(10) ** base_decimals)
    quote = amount_quote / (Decimal(10) ** quote_decimals)
    return quote / base


class SettlementListener:
    """
    Feeds settlement events back into the order book.

    Usage:
        listener = SettlementListener(contracts, order_repo, trade_repo)
        await listener.poll_once()      # one pass over every network
    """

    def __init__(
        self,
        contracts: dict[str, SettlementContract],
        order_repo: OrderRepository,
        trade_repo: TradeRepository,
        config: Optional[ListenerConfig] = None,
        start_blocks: Optional[dict[str, int]] = None,
    ) -> None:
        self._contracts = dict(contracts)
        self._orders = order_repo
        self._trades = trade_repo
        self._config = config or ListenerConfig()
        # Next block to scan, per network
        self._watermarks: dict[str, int] = dict(start_blocks or {})
        self._decimals: TTLCache[int] = TTLCache(self._config.decimals_ttl_seconds)
        self._handlers = {
            "OrderFilled": self._on_order_filled,
            "OrderCancelled": self._on_order_cancelled,
            "MinNonceUpdated": self._on_min_nonce_updated,
            "Matched": self._on_matched,
        }

    @property
    def networks(self) -> list[str]:
        return list(self._contracts)

    def watermark(self, network: str) -> Optional[int]:
        return self._watermarks.get(network)

    async def poll_once(self) -> dict[str, int]:
        """Poll every network concurrently. Returns events handled per network."""
        networks = list(self._contracts)
        results = await asyncio.gather(
            *(self.poll_network(n) for n in networks), return_exceptions=True
        )
        handled: dict[str, int] = {}
        for network, result in zip(networks, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(f"{network}: settlement poll failed: {result}")
                handled[network] = 0
            else:
                handled[network] = result
        return handled

    async def poll_network(self, network: str) -> int:
        """
        Scan one bounded block range of one network.

        The watermark only advances after the whole range was fetched; a
        failed fetch is retried from the same block on the next poll.
        """
        contract = self._contracts[network]
        head = await contract.block_number()
        safe_head = head - self._config.confirmations
        if safe_head < 0:
            return 0

        from_block = self._watermarks.get(network)
        if from_block is None:
            # First poll: start from the confirmed head, history is not replayed
            self._watermarks[network] = safe_head + 1
            logger.info(f"{network}: settlement listener starting at block {safe_head + 1}")
            return 0
        if from_block > safe_head:
            return 0

        to_block = min(safe_head, from_block + self._config.max_block_span - 1)

        events = []
        for name in SETTLEMENT_EVENTS:
            for event in await contract.get_events(name, from_block, to_block):
                events.append((name, event))
        events.sort(key=lambda item: (item[1]["blockNumber"], item[1]["logIndex"]))

        handled = 0
        for name, event in events:
            if await self.handle_event(network, name, event):
                handled += 1

        self._watermarks[network] = to_block + 1
        if events:
            logger.info(
                f"{network}: processed {handled}/{len(events)} settlement events "
                f"in blocks [{from_block}, {to_block}]"
            )
        return handled

    async def handle_event(self, network: str, name: str, event: Any) -> bool:
        """Dispatch one decoded log. Errors are logged and contained."""
        handler = self._handlers.get(name)
        if handler is None:
            logger.debug(f"{network}: ignoring event {name}")
            return False
        try:
            await handler(network, event)
            return True
        except Exception as e:
            logger.error(
                f"{network}: failed to handle {name} "
                f"(tx={to_hex(event.get('transactionHash', b''))}, "
                f"logIndex={event.get('logIndex')}): {e}"
            )
            return False

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _token_decimals(self, network: str, token: str) -> int:
        contract = self._contracts[network]
        return await self._decimals.get_or_load(
            (network, token.lower()), lambda: contract.token_decimals(token)
        )

    async def _on_order_filled(self, network: str, event: Any) -> None:
        args = event["args"]
        order_hash = to_hex(args["orderHash"])
        amount_in = Decimal(int(args["amountIn"]))
        amount_out = Decimal(int(args["amountOut"]))
        token_in = to_hex(args["tokenIn"])

        order = await self._orders.get_by_hash(network, order_hash)
        if order is None:
            logger.warning(f"{network}: fill for unknown order {order_hash}, ignored")
            return

        await self._record_trade(network, event, order, token_in, amount_in, amount_out)

        updated = await self._orders.apply_fill(network, order_hash, amount_in)
        if updated is not None:
            logger.info(
                f"{network}: order {updated.order_id} filled {amount_in} "
                f"(remaining={updated.remaining}, status={updated.status.value})"
            )

    async def _record_trade(
        self,
        network: str,
        event: Any,
        order: Order,
        token_in: str,
        amount_in: Decimal,
        amount_out: Decimal,
    ) -> None:
        base = (order.base_address or "").lower()
        quote = (order.quote_address or "").lower()
        if not base or not quote:
            logger.debug(f"{network}: order {order.order_id} has no pair, trade not recorded")
            return

        # Maker selling base receives quote, and the other way round
        if token_in == base:
            amount_base, amount_quote = amount_in, amount_out
        else:
            amount_base, amount_quote = amount_out, amount_in

        base_decimals = await self._token_decimals(network, base)
        quote_decimals = await self._token_decimals(network, quote)
        args = event["args"]

        await self._trades.record(
            Trade(
                network=network,
                tx_hash=to_hex(event["transactionHash"]),
                log_index=int(event["logIndex"]),
                block_number=int(event["blockNumber"]),
                order_hash=order.order_hash,
                maker=to_hex(args["maker"]),
                taker=to_hex(args["taker"]),
                base_address=base,
                quote_address=quote,
                pair=f"{base}/{quote}",
                amount_base=amount_base,
                amount_quote=amount_quote,
                price=human_price(amount_base, amount_quote, base_decimals, quote_decimals),
                created_at=datetime.now(timezone.utc),
            )
        )

    async def _on_order_cancelled(self, network: str, event: Any) -> None:
        order_hash = to_hex(event["args"]["orderHash"])
        if await self._orders.mark_cancelled(network, order_hash):
            logger.info(f"{network}: order {order_hash} cancelled on-chain")

    async def _on_min_nonce_updated(self, network: str, event: Any) -> None:
        args = event["args"]
        maker = to_hex(args["maker"])
        min_nonce = int(args["newMinNonce"])
        cancelled = await self._orders.cancel_below_nonce(network, maker, min_nonce)
        logger.info(
            f"{network}: min nonce of {maker} raised to {min_nonce}, "
            f"{cancelled} orders cancelled"
        )

    async def _on_matched(self, network: str, event: Any) -> None:
        args = event["args"]
        logger.info(
            f"{network}: matched buy={to_hex(args['buyHash'])} "
            f"sell={to_hex(args['sellHash'])} base={args['amountBase']} "
            f"quote={args['amountQuote']}"
        )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def reconcile_order(self, network: str, order: Order) -> Order:
        """
        Bring an order's remaining/status in line with on-chain state.

        Used to repair drift after missed events. Returns the order as it
        now stands in the store.
        """
        contract = self._contracts[network]
        filled = Decimal(int(await contract.filled_amount_in(order.order_hash)))
        cancelled = await contract.is_cancelled(order.order_hash)
        if not cancelled and order.nonce is not None and order.maker:
            # A raised min nonce voids every order below it without per-order events
            cancelled = int(order.nonce) < int(await contract.min_nonce(order.maker))

        remaining = max(order.amount_in - filled, Decimal("0"))
        if cancelled:
            status = OrderStatus.CANCELLED
        elif remaining == 0:
            status = OrderStatus.FILLED
        else:
            status = order.status

        if remaining != order.remaining or status != order.status:
            await self._orders.set_remaining(network, order.order_hash, remaining, status)
            logger.info(
                f"{network}: reconciled order {order.order_id}: remaining "
                f"{order.remaining} -> {remaining}, status {order.status.value} -> {status.value}"
            )
        return order.model_copy(update={"remaining": remaining, "status": status})

    async def reconcile_network(self, network: str) -> int:
        """
        Reconcile every open order of one network. Returns how many changed.

        A failing order is logged and skipped.
        """
        repaired = 0
        after = None
        while True:
            page = await self._orders.get_open(
                network, limit=self._config.reconcile_page_size, after=after
            )
            if not page:
                break
            for order in page:
                try:
                    updated = await self.reconcile_order(network, order)
                except Exception as e:
                    logger.error(f"{network}: failed to reconcile order {order.order_id}: {e}")
                    continue
                if updated.remaining != order.remaining or updated.status != order.status:
                    repaired += 1
            after = page[-1].order_id

        if repaired:
            logger.info(f"{network}: reconcile repaired {repaired} orders")
        return repaired

    async def reconcile_once(self) -> dict[str, int]:
        """Reconcile every network concurrently. Returns orders repaired per network."""
        networks = list(self._contracts)
        results = await asyncio.gather(
            *(self.reconcile_network(n) for n in networks), return_exceptions=True
        )
        repaired: dict[str, int] = {}
        for network, result in zip(networks, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(f"{network}: reconcile failed: {result}")
                repaired[network] = 0
            else:
                repaired[network] = result
        return repaired
