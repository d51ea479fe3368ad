"""Domain types shared by the holdings, snapshot and tax services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, getcontext
from enum import Enum
from typing import Any

getcontext().prec = 28

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")


def to_decimal(value: Any, *, field_name: str = "value") -> Decimal:
    """Coerce ``value`` to a finite Decimal.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.1")``. Anything
    that is not a finite number raises ``ValueError``.
    """

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"{field_name} must be numeric, got bool")
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"{field_name} is not a valid decimal: {value!r}") from exc
    else:
        raise ValueError(f"{field_name} must be numeric, got {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"{field_name} must be finite, got {value!r}")
    return result


def _optional_decimal(value: Any, field_name: str) -> Decimal | None:
    if value is None:
        return None
    return to_decimal(value, field_name=field_name)


def as_date(value: Any, *, field_name: str = "date") -> date:
    """Return ``value`` as a plain date, truncating datetimes."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise ValueError(f"Invalid {field_name} provided: {value!r}")


class TransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    DIVIDEND = "dividend"
    INTEREST = "interest"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    SPLIT = "split"
    SPINOFF = "spinoff"
    MERGER = "merger"
    FEE = "fee"
    TAX = "tax"
    REINVESTMENT = "reinvestment"


ACQUISITION_TYPES = frozenset(
    {TransactionType.BUY, TransactionType.TRANSFER_IN, TransactionType.REINVESTMENT}
)
DISPOSAL_TYPES = frozenset({TransactionType.SELL, TransactionType.TRANSFER_OUT})


class LotType(str, Enum):
    STANDARD = "standard"
    ESPP = "espp"
    RSU = "rsu"


class CostMode(str, Enum):
    FIFO = "FIFO"
    AVERAGE_COST = "AVERAGE_COST"


class LotSelection(str, Enum):
    """Order in which open lots are consumed by a disposal."""

    FIFO = "fifo"
    LIFO = "lifo"
    HIFO = "hifo"


class HoldingPeriod(str, Enum):
    SHORT = "short"
    LONG = "long"


@dataclass(frozen=True)
class Transaction:
    """Immutable ledger entry."""

    id: str
    portfolio_id: str
    asset_id: str
    type: TransactionType
    date: date
    quantity: Decimal
    price: Decimal = ZERO
    total_amount: Decimal = ZERO
    fees: Decimal = ZERO
    currency: str = "USD"
    notes: str | None = None
    grant_date: date | None = None
    vesting_date: date | None = None
    discount_percent: Decimal | None = None
    shares_withheld: Decimal | None = None
    ordinary_income_amount: Decimal | None = None

    def __post_init__(self) -> None:
        try:
            tx_type = TransactionType(self.type)
        except ValueError as exc:
            raise ValueError(f"Unsupported transaction type: {self.type!r}") from exc
        object.__setattr__(self, "type", tx_type)
        object.__setattr__(self, "date", as_date(self.date, field_name="transaction date"))
        for name in ("quantity", "price", "total_amount", "fees"):
            object.__setattr__(self, name, to_decimal(getattr(self, name), field_name=name))
        for name in ("discount_percent", "shares_withheld", "ordinary_income_amount"):
            object.__setattr__(self, name, _optional_decimal(getattr(self, name), name))
        for name in ("grant_date", "vesting_date"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, as_date(value, field_name=name))


@dataclass
class TaxLot:
    """A single acquisition batch whose remaining quantity is tracked on its own."""

    id: str
    quantity: Decimal
    purchase_price: Decimal
    purchase_date: date
    sold_quantity: Decimal = ZERO
    lot_type: LotType = LotType.STANDARD
    grant_date: date | None = None
    vesting_date: date | None = None
    bargain_element: Decimal | None = None
    notes: str | None = None

    @property
    def remaining_quantity(self) -> Decimal:
        return self.quantity - self.sold_quantity


@dataclass
class Holding:
    """Aggregate position for one (portfolio, asset) pair."""

    id: str
    portfolio_id: str
    asset_id: str
    quantity: Decimal
    cost_basis: Decimal
    average_cost: Decimal
    current_value: Decimal = ZERO
    unrealized_gain: Decimal = ZERO
    unrealized_gain_percent: Decimal = ZERO
    lots: list[TaxLot] = field(default_factory=list)
    last_updated: datetime = field(default_factory=datetime.utcnow)
    ownership_percentage: Decimal | None = None


@dataclass(frozen=True)
class PerformanceSnapshot:
    """One valuation record for a portfolio on a calendar day."""

    id: str
    portfolio_id: str
    date: date
    total_value: Decimal
    total_cost: Decimal
    day_change: Decimal
    day_change_percent: Decimal
    cumulative_return: Decimal
    twr_return: Decimal
    holding_count: int
    has_interpolated_prices: bool
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class TaxSettings:
    short_term_rate: Decimal
    long_term_rate: Decimal
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self) -> None:
        for name in ("short_term_rate", "long_term_rate"):
            rate = to_decimal(getattr(self, name), field_name=name)
            if rate < 0 or rate > 1:
                raise ValueError(f"{name} must be between 0 and 1, got {rate}")
            object.__setattr__(self, name, rate)


@dataclass(frozen=True)
class CashFlowEvent:
    """External cash flow; positive for contributions (buys), negative for withdrawals (sells)."""

    date: date
    amount: Decimal


@dataclass(frozen=True)
class PriceLookupResult:
    price: Decimal
    is_interpolated: bool


__all__ = [
    "ZERO",
    "ONE",
    "HUNDRED",
    "to_decimal",
    "as_date",
    "TransactionType",
    "ACQUISITION_TYPES",
    "DISPOSAL_TYPES",
    "LotSelection",
    "LotType",
    "CostMode",
    "HoldingPeriod",
    "Transaction",
    "TaxLot",
    "Holding",
    "PerformanceSnapshot",
    "TaxSettings",
    "CashFlowEvent",
    "PriceLookupResult",
]
