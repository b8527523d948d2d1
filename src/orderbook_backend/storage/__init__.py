"""
Storage Layer - Async PostgreSQL database and repositories.

This is the foundation layer that all other components depend on.
Built on asyncpg; rows are validated into pydantic models on read.

Public API:
    Database, DatabaseConfig - Connection pool management

    Models:
        Order, OrderTemplate, ConditionalOrder
        AdaptiveOrder, CurveParams, PriceStep
        PriceHistoryEntry, AdaptiveOrderAnalytics
        Trade

    Repositories:
        OrderRepository, ConditionalOrderRepository, TradeRepository
        PriceHistoryRepository, AnalyticsRepository
"""
from orderbook_backend.storage.database import Database, DatabaseConfig
from orderbook_backend.storage.models import (
    AdaptiveOrder,
    AdaptiveOrderAnalytics,
    ConditionalOrder,
    ConditionalOrderStatus,
    ConditionalOrderType,
    CurveParams,
    Order,
    OrderSource,
    OrderStatus,
    OrderTemplate,
    PriceCurve,
    PriceHistoryEntry,
    PriceStep,
    Trade,
)
from orderbook_backend.storage.repositories import (
    AnalyticsRepository,
    ConditionalOrderRepository,
    ConditionalOrderValidationError,
    OrderRepository,
    PriceHistoryRepository,
    TradeRepository,
)

__all__ = [
    # Database
    "Database",
    "DatabaseConfig",
    # Models
    "AdaptiveOrder",
    "AdaptiveOrderAnalytics",
    "ConditionalOrder",
    "ConditionalOrderStatus",
    "ConditionalOrderType",
    "CurveParams",
    "Order",
    "OrderSource",
    "OrderStatus",
    "OrderTemplate",
    "PriceCurve",
    "PriceHistoryEntry",
    "PriceStep",
    "Trade",
    # Repositories
    "AnalyticsRepository",
    "ConditionalOrderRepository",
    "ConditionalOrderValidationError",
    "OrderRepository",
    "PriceHistoryRepository",
    "TradeRepository",
]
