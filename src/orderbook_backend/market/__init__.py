"""
Market data derived from executed trades.
"""
from orderbook_backend.market.cache import TTLCache, is_expired
from orderbook_backend.market.price_oracle import (
    PriceOracle,
    latest_price_map,
    median,
    trade_price,
)

__all__ = [
    "TTLCache",
    "is_expired",
    "PriceOracle",
    "latest_price_map",
    "median",
    "trade_price",
]
