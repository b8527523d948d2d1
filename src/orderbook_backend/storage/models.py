"""
Pydantic models for the order book tables.

Rows are validated and normalized here, immediately after reading, so the
engines never see raw asyncpg records.

IMPORTANT: All prices and token amounts use Decimal. Token amounts are
integral (uint256 base units); prices are fractional.
"""
from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _parse_json(value: Any) -> Any:
    """JSON/JSONB columns arrive as text unless a codec is registered."""
    if isinstance(value, (str, bytes)):
        if not value:
            return None
        return json.loads(value)
    return value


def _fill(row: dict, key: str, value: Any) -> None:
    """Set key only when the row has no usable value for it."""
    if row.get(key) is None:
        row[key] = value


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")


def _uint_str(value: Any) -> Optional[str]:
    """Canonical string for uint256-like values (nonce, salt)."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        value = int(value)
    return str(value)


# =============================================================================
# ENUMS
# =============================================================================


class OrderStatus(str, Enum):
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class OrderSource(str, Enum):
    DIRECT = "direct"
    CONDITIONAL = "conditional"


class ConditionalOrderType(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class ConditionalOrderStatus(str, Enum):
    PENDING = "pending"
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PriceCurve(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    STEPWISE = "stepwise"
    MARKET_TRACKING = "market_tracking"


def pair_key(base: Optional[str], quote: Optional[str]) -> str:
    """Lower-cased pair key used by price maps."""
    return f"{base or ''}_{quote or ''}".lower()


# =============================================================================
# ORDERS
# =============================================================================


class OrderTemplate(BaseModel):
    """Unsigned order fields stored on a conditional order."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    maker: Optional[str] = None
    token_in: Optional[str] = Field(default=None, alias="tokenIn")
    token_out: Optional[str] = Field(default=None, alias="tokenOut")
    amount_in: Decimal = Field(default=Decimal("0"), alias="amountIn")
    amount_out_min: Decimal = Field(default=Decimal("0"), alias="amountOutMin")
    expiration: Optional[int] = None  # unix seconds
    nonce: Optional[str] = None
    receiver: Optional[str] = None
    salt: Optional[str] = None

    @field_validator("nonce", "salt", mode="before")
    @classmethod
    def _canonical_uint(cls, v: Any) -> Optional[str]:
        return _uint_str(v)

    @field_validator("amount_in", "amount_out_min", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Any:
        if v is None or v == "":
            return Decimal("0")
        return _to_decimal(v)

    @field_validator("expiration", mode="before")
    @classmethod
    def _expiration(cls, v: Any) -> Any:
        if v is None or v == "" or v == 0 or v == "0":
            return None
        return int(v)

    def missing_fields(self, maker: Optional[str] = None) -> list[str]:
        """Names of required fields that are empty."""
        missing = []
        if not (self.maker or maker):
            missing.append("maker")
        if not self.token_in:
            missing.append("tokenIn")
        if not self.token_out:
            missing.append("tokenOut")
        return missing

    def to_json(self) -> dict:
        """Template as stored in the order_json column (camelCase keys)."""
        data = self.model_dump(by_alias=True, mode="json", exclude_none=True)
        return data


class Order(BaseModel):
    """A signed, fillable order in the off-chain book."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    network: str
    order_id: str
    order_hash: str
    maker: str
    token_in: str
    token_out: str
    amount_in: Decimal
    amount_out_min: Decimal
    remaining: Decimal
    expiration: Optional[datetime] = None
    nonce: Optional[str] = None
    receiver: Optional[str] = None
    salt: Optional[str] = None
    signature: str = ""
    status: OrderStatus = OrderStatus.OPEN
    source: Optional[OrderSource] = OrderSource.DIRECT
    source_conditional_order_id: Optional[str] = None
    base_address: Optional[str] = None
    quote_address: Optional[str] = None
    pair: Optional[str] = None
    price: Optional[Decimal] = None
    order_json: Optional[dict] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("nonce", "salt", mode="before")
    @classmethod
    def _canonical_uint(cls, v: Any) -> Optional[str]:
        return _uint_str(v)

    @field_validator("order_json", mode="before")
    @classmethod
    def _json(cls, v: Any) -> Any:
        return _parse_json(v)

    @property
    def pair_key(self) -> str:
        return pair_key(self.base_address, self.quote_address)


# =============================================================================
# CONDITIONAL ORDERS
# =============================================================================


class ConditionalOrder(BaseModel):
    """Pending stop-loss / take-profit trigger with a pre-signed template."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    network: str
    conditional_order_id: str
    maker: str
    base_token: str
    quote_token: str
    pair: Optional[str] = None
    type: str  # 'stop_loss' | 'take_profit'; anything else is skipped
    trigger_price: Decimal
    order_template: Optional[OrderTemplate] = None
    signature: str = ""
    expiration: Optional[datetime] = None
    status: ConditionalOrderStatus = ConditionalOrderStatus.PENDING
    triggered_at: Optional[datetime] = None
    triggered_price: Optional[Decimal] = None
    resulting_order_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("order_template", mode="before")
    @classmethod
    def _template(cls, v: Any) -> Any:
        return _parse_json(v)

    @property
    def pair_key(self) -> str:
        return pair_key(self.base_token, self.quote_token)

    def is_expired(self, now: datetime) -> bool:
        """Null expiration never expires."""
        return self.expiration is not None and self.expiration <= now


# =============================================================================
# ADAPTIVE (LIQUIDITY / SAL) ORDERS
# =============================================================================


class PriceStep(BaseModel):
    """One band of a stepwise curve."""

    threshold: Decimal
    multiplier: Decimal


DEFAULT_STEPS = (
    PriceStep(threshold=Decimal("0.25"), multiplier=Decimal("1.0")),
    PriceStep(threshold=Decimal("0.50"), multiplier=Decimal("1.2")),
    PriceStep(threshold=Decimal("0.75"), multiplier=Decimal("1.5")),
    PriceStep(threshold=Decimal("1.0"), multiplier=Decimal("2.0")),
)


class CurveParams(BaseModel):
    """Curve configuration. Missing or empty values take the defaults."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    slope: Decimal = Decimal("0.01")
    exponent: Decimal = Decimal("2")
    multiplier: Decimal = Decimal("1")
    steps: tuple[PriceStep, ...] = DEFAULT_STEPS
    max_deviation: Decimal = Field(default=Decimal("0.05"), alias="maxDeviation")

    @model_validator(mode="before")
    @classmethod
    def _drop_empty(cls, data: Any) -> Any:
        data = _parse_json(data)
        if data is None:
            return {}
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None and v not in ("", [])}
        return data


class AdaptiveOrder(Order):
    """
    Order whose posted price moves with the inventory sold.

    Two row shapes are normalized here:
        - liquidity orders: initial_price, price_curve_type, price_curve_params;
          inventory derived from amount_in and remaining
        - SAL orders: sal_* columns with explicit inventory and bounds
    """

    is_liquidity_order: bool = False
    is_sal_order: bool = False
    initial_price: Optional[Decimal] = None
    curve_type: str = PriceCurve.LINEAR.value
    curve_params: CurveParams = Field(default_factory=CurveParams)
    total_inventory: Optional[Decimal] = None
    sold_amount: Decimal = Decimal("0")
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_columns(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        row = dict(data)

        if row.get("is_sal_order"):
            _fill(row, "initial_price", row.get("sal_initial_price"))
            if row.get("sal_current_price") is not None:
                row["price"] = row["sal_current_price"]
            _fill(row, "curve_type", row.get("sal_price_curve"))
            _fill(row, "curve_params", row.get("sal_price_adjustment_params"))
            _fill(row, "total_inventory", row.get("sal_total_inventory"))
            _fill(row, "sold_amount", row.get("sal_sold_amount"))
            _fill(row, "min_price", row.get("sal_min_price"))
            _fill(row, "max_price", row.get("sal_max_price"))
        else:
            _fill(row, "curve_type", row.get("price_curve_type"))
            _fill(row, "curve_params", row.get("price_curve_params"))
            if row.get("total_inventory") is None and row.get("amount_in") is not None:
                amount_in = _to_decimal(row["amount_in"])
                remaining = _to_decimal(row.get("remaining") or 0)
                row["total_inventory"] = amount_in
                row["sold_amount"] = max(amount_in - remaining, Decimal("0"))

        if not row.get("curve_type"):
            row["curve_type"] = PriceCurve.LINEAR.value
        if row.get("curve_params") is None:
            row["curve_params"] = {}
        if row.get("sold_amount") in (None, ""):
            row["sold_amount"] = Decimal("0")
        for bound in ("min_price", "max_price"):
            # Zero bound means "not configured"
            if row.get(bound) in ("", 0, "0") or row.get(bound) == Decimal("0"):
                row[bound] = None
        return row


class PriceHistoryEntry(BaseModel):
    """Append-only price point of an adaptive order."""

    id: Optional[int] = None
    network: str
    order_id: str
    recorded_at: datetime
    price: Decimal
    sold_amount: Decimal


class AdaptiveOrderAnalytics(BaseModel):
    """Running analytics for an adaptive order."""

    network: str
    order_id: str
    total_sold: Decimal = Decimal("0")
    average_fill_price: Decimal = Decimal("0")
    updated_at: Optional[datetime] = None


# =============================================================================
# TRADES
# =============================================================================


class Trade(BaseModel):
    """Executed fill, as read by the price oracle."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: Optional[int] = None
    network: str
    tx_hash: Optional[str] = None
    log_index: Optional[int] = None
    block_number: Optional[int] = None
    order_hash: Optional[str] = None
    maker: Optional[str] = None
    taker: Optional[str] = None
    base_address: Optional[str] = None
    quote_address: Optional[str] = None
    pair: Optional[str] = None
    amount_base: Optional[Decimal] = None
    amount_quote: Optional[Decimal] = None
    price: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    @property
    def pair_key(self) -> str:
        return pair_key(self.base_address, self.quote_address)
