"""
Order book backend.

Keeps the off-chain order book in step with on-chain settlement:
conditional (stop-loss / take-profit) orders are promoted into live orders
when the market crosses their trigger, adaptive liquidity orders are
re-priced as their inventory sells, and settlement events are fed back
into the store.
"""

__version__ = "0.1.0"
