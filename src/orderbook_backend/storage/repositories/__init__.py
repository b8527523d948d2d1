"""
Repository exports.

All repositories for the order book backend.
"""
from orderbook_backend.storage.repositories.analytics_repo import (
    AnalyticsRepository,
    PriceHistoryRepository,
)
from orderbook_backend.storage.repositories.conditional_repo import (
    ConditionalOrderRepository,
    ConditionalOrderValidationError,
)
from orderbook_backend.storage.repositories.order_repo import OrderRepository
from orderbook_backend.storage.repositories.trade_repo import TradeRepository

__all__ = [
    # Orders
    "OrderRepository",
    # Conditional orders
    "ConditionalOrderRepository",
    "ConditionalOrderValidationError",
    # Trades
    "TradeRepository",
    # Adaptive analytics
    "PriceHistoryRepository",
    "AnalyticsRepository",
]
