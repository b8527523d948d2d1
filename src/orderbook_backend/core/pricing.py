"""
Adaptive pricing curves.

Pure functions only: no I/O, no clock. Given the same inputs they always
return the same Decimal, which is what lets the pricing engine skip writes
when nothing moved.

Curves (r = sold ratio in [0, 1]):
    linear           initial + (max - initial) * r      (max configured)
                     initial * (1 + slope * r)          (no max)
    exponential      initial * (1 + k * r^exponent * multiplier)
                     k = max / initial - 1, or slope when no max
    stepwise         initial * multiplier of the highest threshold <= r
    market_tracking  linear, clamped into market * [1 - dev, 1 + dev]

Unknown curve names fall back to linear. The result is finally clamped into
[min_price, max_price] wherever those are configured, and rounded to
PRICE_DECIMALS fractional digits.
"""
from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal, localcontext
from typing import Iterable, Optional

from orderbook_backend.storage.models import AdaptiveOrder, CurveParams, PriceCurve

PRICE_DECIMALS = 18
PRICE_QUANTUM = Decimal(1).scaleb(-PRICE_DECIMALS)
# Smallest price move worth a write
PRICE_EPSILON = Decimal("0.000001")

_CALC_PRECISION = 60
_ZERO = Decimal("0")
_ONE = Decimal("1")

KNOWN_CURVES = frozenset(c.value for c in PriceCurve)


def quantize_price(price: Decimal) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _CALC_PRECISION
        return price.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_EVEN)


def format_price(price: Decimal) -> str:
    """Fixed-point string with PRICE_DECIMALS fractional digits."""
    return f"{quantize_price(price):f}"


def price_changed(stored: Optional[Decimal], new: Decimal) -> bool:
    """True when the move from ``stored`` to ``new`` exceeds PRICE_EPSILON."""
    if stored is None:
        return True
    return abs(new - stored) > PRICE_EPSILON


def sold_ratio(sold: Optional[Decimal], total: Optional[Decimal]) -> Optional[Decimal]:
    """
    Fraction of inventory sold, clamped to [0, 1].

    None when the total is unset or zero; callers then keep the initial price.
    """
    if total is None or total <= 0:
        return None
    sold = sold or _ZERO
    with localcontext() as ctx:
        ctx.prec = _CALC_PRECISION
        ratio = sold / total
    return min(max(ratio, _ZERO), _ONE)


def _linear(initial: Decimal, params: CurveParams, r: Decimal, max_price: Optional[Decimal]) -> Decimal:
    if max_price is not None:
        return initial + (max_price - initial) * r
    return initial * (_ONE + params.slope * r)


def _exponential(
    initial: Decimal, params: CurveParams, r: Decimal, max_price: Optional[Decimal]
) -> Decimal:
    k = (max_price / initial - _ONE) if max_price is not None else params.slope
    growth = _ZERO if r == 0 else r ** params.exponent
    return initial * (_ONE + k * growth * params.multiplier)


def _stepwise(initial: Decimal, params: CurveParams, r: Decimal) -> Decimal:
    multiplier = _ONE
    for step in sorted(params.steps, key=lambda s: s.threshold):
        if r >= step.threshold:
            multiplier = step.multiplier
        else:
            break
    return initial * multiplier


def _clamp(price: Decimal, low: Optional[Decimal], high: Optional[Decimal]) -> Decimal:
    if low is not None and price < low:
        price = low
    if high is not None and price > high:
        price = high
    return price


def compute_price(
    initial_price: Decimal,
    curve: str,
    params: Optional[CurveParams],
    ratio: Decimal,
    market_price: Optional[Decimal] = None,
    min_price: Optional[Decimal] = None,
    max_price: Optional[Decimal] = None,
) -> Decimal:
    """
    Price of an adaptive order at sold ratio ``ratio``.

    Args:
        initial_price: Price at r = 0 (must be positive)
        curve: Curve name; unknown names are treated as linear
        params: Curve parameters (defaults when None)
        ratio: Sold ratio, clamped to [0, 1]
        market_price: Reference price for market_tracking
        min_price: Lower bound, None when not configured
        max_price: Upper bound, None when not configured

    Returns:
        Price rounded to PRICE_DECIMALS digits
    """
    if initial_price is None or initial_price <= 0:
        raise ValueError("initial price must be positive")
    params = params or CurveParams()
    r = min(max(ratio, _ZERO), _ONE)

    with localcontext() as ctx:
        ctx.prec = _CALC_PRECISION

        if curve == PriceCurve.EXPONENTIAL.value:
            price = _exponential(initial_price, params, r, max_price)
        elif curve == PriceCurve.STEPWISE.value:
            price = _stepwise(initial_price, params, r)
        elif curve == PriceCurve.MARKET_TRACKING.value:
            price = _linear(initial_price, params, r, max_price)
            if market_price is not None and market_price > 0:
                band = params.max_deviation
                price = _clamp(
                    price, market_price * (_ONE - band), market_price * (_ONE + band)
                )
        else:
            price = _linear(initial_price, params, r, max_price)

        price = _clamp(price, min_price, max_price)

    return quantize_price(price)


def recompute_price(order: AdaptiveOrder, market_price: Optional[Decimal] = None) -> Decimal:
    """
    Current price of an adaptive order.

    Raises:
        ValueError: if the order has no usable initial price
    """
    initial = order.initial_price if order.initial_price is not None else order.price
    if initial is None or initial <= 0:
        raise ValueError(f"order {order.order_id} has no initial price")

    ratio = sold_ratio(order.sold_amount, order.total_inventory)
    if ratio is None:
        return quantize_price(initial)

    return compute_price(
        initial,
        order.curve_type,
        order.curve_params,
        ratio,
        market_price=market_price,
        min_price=order.min_price,
        max_price=order.max_price,
    )


def validate_adaptive_params(
    total_amount: Optional[Decimal],
    initial_price: Optional[Decimal],
    curve_type: Optional[str],
    max_price: Optional[Decimal] = None,
    min_price: Optional[Decimal] = None,
    params: Optional[CurveParams] = None,
) -> list[str]:
    """Problems with an adaptive order's parameters. Empty when valid."""
    errors = []

    if total_amount is None or total_amount <= 0:
        errors.append("Total amount must be greater than 0")

    if initial_price is None or initial_price <= 0:
        errors.append("Initial price must be greater than 0")
    elif max_price is not None and max_price < initial_price:
        errors.append("Max price must be greater than initial price")

    if min_price is not None and max_price is not None and min_price > max_price:
        errors.append("Min price must not exceed max price")

    if curve_type not in KNOWN_CURVES:
        errors.append("Invalid curve type")

    if params is not None:
        thresholds = [s.threshold for s in params.steps]
        if thresholds != sorted(thresholds):
            errors.append("Step thresholds must be in ascending order")
        if any(s.multiplier <= 0 for s in params.steps):
            errors.append("Step multipliers must be positive")
        if any(s.threshold < 0 or s.threshold > 1 for s in params.steps):
            errors.append("Step thresholds must be within [0, 1]")
        if params.exponent <= 0:
            errors.append("Exponent must be positive")
        if not (_ZERO <= params.max_deviation < _ONE):
            errors.append("Max deviation must be in [0, 1)")

    return errors


def weighted_average(volume: Optional[Decimal], value: Optional[Decimal]) -> Decimal:
    """``value / volume`` rounded to PRICE_DECIMALS. Zero when there is no volume."""
    if not volume or volume <= 0 or value is None:
        return _ZERO
    with localcontext() as ctx:
        ctx.prec = _CALC_PRECISION
        return quantize_price(value / volume)


def average_fill_price(fills: Iterable[tuple[Decimal, Decimal]]) -> Decimal:
    """
    Volume-weighted average price of (amount, price) fills:
    sum(amount * price) / sum(amount).

    Zero when there is no volume.
    """
    volume = _ZERO
    value = _ZERO
    with localcontext() as ctx:
        ctx.prec = _CALC_PRECISION
        for amount, price in fills:
            if amount is None or price is None or amount <= 0:
                continue
            volume += amount
            value += amount * price
    return weighted_average(volume, value)
