"""
Market price oracle backed by the trades table.

The reference price of a pair is the median of its most recent trades.
With fewer than two usable trades the price is unavailable (None): a
single print is too easy to push around to trigger someone's stop.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional

from orderbook_backend.market.cache import TTLCache
from orderbook_backend.storage.models import Trade, pair_key
from orderbook_backend.storage.repositories import TradeRepository

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 10
MAX_WINDOW = 1000
MIN_TRADES_FOR_PRICE = 2
LATEST_PRICES_LIMIT = 1000

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def clamp_window(window: Optional[int]) -> int:
    """Trade window clamped into [1, MAX_WINDOW]."""
    if window is None:
        return DEFAULT_WINDOW
    return max(1, min(int(window), MAX_WINDOW))


def trade_price(trade: Trade) -> Optional[Decimal]:
    """
    Usable price of a trade, or None.

    The stored price wins when positive; otherwise quote/base amounts are
    used. Zero, negative and missing values are not usable.
    """
    if trade.price is not None and trade.price > 0:
        return trade.price
    if trade.amount_base and trade.amount_quote and trade.amount_base > 0:
        try:
            price = trade.amount_quote / trade.amount_base
        except (InvalidOperation, ZeroDivisionError):
            return None
        return price if price > 0 else None
    return None


def median(values: list[Decimal]) -> Decimal:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def newest_first(trades: Iterable[Trade]) -> list[Trade]:
    """Trades sorted by created_at descending; undated trades go last."""
    return sorted(
        trades,
        key=lambda t: t.created_at or _EPOCH,
        reverse=True,
    )


def latest_price_map(trades: Iterable[Trade]) -> dict[str, Decimal]:
    """
    Most recent usable price per pair key.

    Ordering is enforced here rather than trusted from the caller, so the
    first trade seen for a pair is always the newest one.
    """
    prices: dict[str, Decimal] = {}
    for trade in newest_first(trades):
        if not trade.base_address or not trade.quote_address:
            continue
        key = trade.pair_key
        if key in prices:
            continue
        price = trade_price(trade)
        if price is not None:
            prices[key] = price
    return prices


class PriceOracle:
    """
    Current market prices per (network, pair).

    Usage:
        oracle = PriceOracle(TradeRepository(db))
        price = await oracle.current_price("bsc", base, quote)
        if price is None:
            ...  # unavailable, skip
    """

    def __init__(
        self,
        trade_repo: TradeRepository,
        window: int = DEFAULT_WINDOW,
        cache_ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._trades = trade_repo
        self._window = clamp_window(window)
        self._cache: TTLCache[Decimal] = TTLCache(cache_ttl_seconds, clock=clock)

    async def current_price(
        self,
        network: str,
        base: str,
        quote: str,
        window: Optional[int] = None,
    ) -> Optional[Decimal]:
        """Median of the last ``window`` trades, or None if unavailable."""
        window = clamp_window(window) if window is not None else self._window
        cache_key = (network, pair_key(base, quote), window)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        trades = await self._trades.get_recent(network, limit=window, base=base, quote=quote)
        prices = [p for p in (trade_price(t) for t in trades) if p is not None]

        if len(prices) < MIN_TRADES_FOR_PRICE:
            logger.debug(
                f"{network}: price unavailable for {pair_key(base, quote)} "
                f"({len(prices)} usable trades)"
            )
            return None

        price = median(prices)
        self._cache.set(cache_key, price)
        return price

    async def latest_prices(
        self, network: str, limit: int = LATEST_PRICES_LIMIT
    ) -> dict[str, Decimal]:
        """Latest price per pair key, from the most recent ``limit`` trades."""
        trades = await self._trades.get_recent(network, limit=clamp_window(limit))
        return latest_price_map(trades)

    def invalidate(self) -> None:
        self._cache.clear()
