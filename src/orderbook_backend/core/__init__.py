"""
Core Layer - the engines that move orders through their lifecycle.

Public API:
    ConditionalTriggerEngine - promotes stop-loss / take-profit orders
    AdaptivePricingEngine - re-prices liquidity and SAL orders
    TickScheduler, SchedulerConfig - periodic per-network driver

    Pure helpers:
        evaluate_trigger(), derive_order_hash()
        compute_price(), recompute_price(), validate_adaptive_params()
        average_fill_price()
"""
from orderbook_backend.core.adaptive_pricing import AdaptivePricingEngine
from orderbook_backend.core.pricing import (
    PRICE_DECIMALS,
    PRICE_EPSILON,
    average_fill_price,
    compute_price,
    format_price,
    recompute_price,
    validate_adaptive_params,
)
from orderbook_backend.core.scheduler import NetworkTickResult, SchedulerConfig, TickScheduler
from orderbook_backend.core.trigger_engine import (
    ConditionalTriggerEngine,
    derive_order_hash,
    evaluate_trigger,
)

__all__ = [
    # Engines
    "AdaptivePricingEngine",
    "ConditionalTriggerEngine",
    # Scheduling
    "NetworkTickResult",
    "SchedulerConfig",
    "TickScheduler",
    # Pricing
    "PRICE_DECIMALS",
    "PRICE_EPSILON",
    "average_fill_price",
    "compute_price",
    "format_price",
    "recompute_price",
    "validate_adaptive_params",
    # Triggers
    "derive_order_hash",
    "evaluate_trigger",
]
