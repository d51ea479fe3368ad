"""Unrealized capital-gains tax estimation over FIFO tax lots.

Gains and losses are accumulated into four separate buckets (short/long term
x gain/loss) and never netted: only gains attract tax, at the short- or
long-term rate of the ``TaxSettings`` supplied by the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

from . import holding_period
from .espp import DispositionReason, check_disposition_status
from .holdings import order_open_lots
from .types import (
    HUNDRED,
    ZERO,
    Holding,
    HoldingPeriod,
    LotSelection,
    LotType,
    TaxLot,
    TaxSettings,
    as_date,
    to_decimal,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def round_currency(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class LotAnalysis:
    lot_id: str
    asset_symbol: str
    purchase_date: date
    quantity: Decimal
    cost_basis: Decimal
    current_value: Decimal
    unrealized_gain: Decimal
    holding_period: HoldingPeriod
    holding_days: int
    lot_type: LotType = LotType.STANDARD
    grant_date: date | None = None
    bargain_element: Decimal | None = None
    adjusted_cost_basis: Decimal | None = None
    # ESPP only: outcome of selling on the reference date.
    disposition: DispositionReason | None = None

    @property
    def is_qualifying_disposition(self) -> bool | None:
        if self.disposition is None:
            return None
        return self.disposition == DispositionReason.QUALIFYING

    @property
    def taxable_gain(self) -> Decimal:
        """Capital gain after excluding the ESPP bargain element already taxed as income."""

        if self.adjusted_cost_basis is not None:
            return self.current_value - self.adjusted_cost_basis
        return self.unrealized_gain


@dataclass
class TaxEstimate:
    total_unrealized_gain: Decimal = ZERO
    total_unrealized_loss: Decimal = ZERO
    short_term_gains: Decimal = ZERO
    short_term_losses: Decimal = ZERO
    long_term_gains: Decimal = ZERO
    long_term_losses: Decimal = ZERO
    estimated_st_tax: Decimal = ZERO
    estimated_lt_tax: Decimal = ZERO
    lots: list[LotAnalysis] = field(default_factory=list)
    skipped_asset_ids: list[str] = field(default_factory=list)

    @property
    def net_unrealized_gain(self) -> Decimal:
        return self.total_unrealized_gain - self.total_unrealized_loss

    @property
    def total_estimated_tax(self) -> Decimal:
        return self.estimated_st_tax + self.estimated_lt_tax


# A single-holding estimate has the same shape as the portfolio one.
HoldingTaxEstimate = TaxEstimate
PortfolioTaxEstimate = TaxEstimate


@dataclass
class AgingLot:
    holding_id: str
    asset_id: str
    asset_symbol: str
    lot_id: str
    remaining_quantity: Decimal
    purchase_date: date
    days_until_long_term: int
    current_price: Decimal
    current_value: Decimal
    unrealized_gain: Decimal
    unrealized_gain_percent: Decimal


def analyze_lot(
    lot: TaxLot,
    symbol: str,
    current_price: Decimal,
    reference_date: date | None = None,
) -> LotAnalysis:
    """Value the remaining quantity of ``lot`` and classify its holding period."""

    price = to_decimal(current_price, field_name="current price")
    reference = as_date(reference_date, field_name="reference date") if reference_date else date.today()
    quantity = lot.remaining_quantity
    cost_basis = lot.purchase_price * quantity
    current_value = price * quantity
    analysis = LotAnalysis(
        lot_id=lot.id,
        asset_symbol=symbol,
        purchase_date=lot.purchase_date,
        quantity=quantity,
        cost_basis=cost_basis,
        current_value=current_value,
        unrealized_gain=current_value - cost_basis,
        holding_period=holding_period.classify(lot.purchase_date, reference),
        holding_days=holding_period.days_held(lot.purchase_date, reference),
        lot_type=lot.lot_type,
    )
    if lot.lot_type == LotType.ESPP:
        analysis.grant_date = lot.grant_date
        if lot.grant_date is not None:
            analysis.disposition = check_disposition_status(lot.grant_date, lot.purchase_date, reference).reason
        if lot.bargain_element is not None:
            analysis.bargain_element = lot.bargain_element
            analysis.adjusted_cost_basis = cost_basis + lot.bargain_element * quantity
    return analysis


def _accumulate(estimate: TaxEstimate, analysis: LotAnalysis) -> None:
    economic = analysis.unrealized_gain
    if economic > 0:
        estimate.total_unrealized_gain += economic
    elif economic < 0:
        estimate.total_unrealized_loss += -economic

    taxable = analysis.taxable_gain
    short = analysis.holding_period == HoldingPeriod.SHORT
    if taxable > 0:
        if short:
            estimate.short_term_gains += taxable
        else:
            estimate.long_term_gains += taxable
    elif taxable < 0:
        if short:
            estimate.short_term_losses += -taxable
        else:
            estimate.long_term_losses += -taxable


def estimate_tax_liability(
    holdings: Iterable[Holding],
    current_prices: Mapping[str, Decimal],
    tax_settings: TaxSettings,
    asset_symbols: Mapping[str, str] | None = None,
    reference_date: date | None = None,
) -> PortfolioTaxEstimate:
    """Estimate tax on unrealized gains across ``holdings``.

    Holdings without a price in ``current_prices`` and lots with nothing
    remaining are skipped.
    """

    reference = as_date(reference_date, field_name="reference date") if reference_date else date.today()
    estimate = TaxEstimate()
    for holding in holdings:
        price = current_prices.get(holding.asset_id)
        if price is None:
            logger.warning("Skipping %s in tax estimate: no current price", holding.asset_id)
            estimate.skipped_asset_ids.append(holding.asset_id)
            continue
        symbol = (asset_symbols or {}).get(holding.asset_id, holding.asset_id)
        for lot in holding.lots:
            if lot.remaining_quantity <= 0:
                continue
            analysis = analyze_lot(lot, symbol, price, reference)
            estimate.lots.append(analysis)
            _accumulate(estimate, analysis)

    estimate.estimated_st_tax = round_currency(estimate.short_term_gains * tax_settings.short_term_rate)
    estimate.estimated_lt_tax = round_currency(estimate.long_term_gains * tax_settings.long_term_rate)
    return estimate


def estimate_for_holding(
    holding: Holding,
    current_price: Decimal,
    tax_settings: TaxSettings,
    reference_date: date | None = None,
    symbol: str | None = None,
) -> HoldingTaxEstimate:
    symbols = {holding.asset_id: symbol} if symbol else None
    return estimate_tax_liability(
        [holding],
        {holding.asset_id: to_decimal(current_price, field_name="current price")},
        tax_settings,
        asset_symbols=symbols,
        reference_date=reference_date,
    )


def detect_aging_lots(
    holdings: Iterable[Holding],
    current_prices: Mapping[str, Decimal],
    lookback_days: int = 30,
    reference_date: date | None = None,
    asset_symbols: Mapping[str, str] | None = None,
) -> list[AgingLot]:
    """Short-term lots that turn long-term within ``lookback_days``, soonest first."""

    if lookback_days < 0:
        raise ValueError("lookback_days must be >= 0")
    reference = as_date(reference_date, field_name="reference date") if reference_date else date.today()
    aging: list[AgingLot] = []
    for holding in holdings:
        price = current_prices.get(holding.asset_id)
        if price is None:
            continue
        price = to_decimal(price, field_name="current price")
        for lot in holding.lots:
            if lot.remaining_quantity <= 0:
                continue
            if holding_period.classify(lot.purchase_date, reference) != HoldingPeriod.SHORT:
                continue
            remaining_days = holding_period.days_until_long_term(lot.purchase_date, reference)
            if remaining_days > lookback_days:
                continue
            cost_basis = lot.purchase_price * lot.remaining_quantity
            current_value = price * lot.remaining_quantity
            gain = current_value - cost_basis
            aging.append(
                AgingLot(
                    holding_id=holding.id,
                    asset_id=holding.asset_id,
                    asset_symbol=(asset_symbols or {}).get(holding.asset_id, holding.asset_id),
                    lot_id=lot.id,
                    remaining_quantity=lot.remaining_quantity,
                    purchase_date=lot.purchase_date,
                    days_until_long_term=remaining_days,
                    current_price=price,
                    current_value=current_value,
                    unrealized_gain=gain,
                    unrealized_gain_percent=gain / cost_basis * HUNDRED if cost_basis > 0 else ZERO,
                )
            )
    aging.sort(key=lambda a: (a.days_until_long_term, a.lot_id))
    return aging


@dataclass
class SaleAllocation:
    lot_id: str
    quantity: Decimal
    cost_basis: Decimal
    proceeds: Decimal
    purchase_date: date
    realized_gain: Decimal
    holding_period: HoldingPeriod
    holding_days: int


@dataclass
class TaxLossOpportunity:
    holding_id: str
    asset_id: str
    asset_symbol: str
    short_term_loss: Decimal
    long_term_loss: Decimal
    lot_ids: list[str] = field(default_factory=list)

    @property
    def unrealized_loss(self) -> Decimal:
        return self.short_term_loss + self.long_term_loss


def calculate_sale_allocations(
    lots: Iterable[TaxLot],
    sale_quantity: Decimal,
    sale_price: Decimal,
    sale_date: date | None = None,
    selection: LotSelection = LotSelection.FIFO,
) -> list[SaleAllocation]:
    """Split a prospective sale across open lots without touching them.

    Quantity beyond what the lots hold is left unallocated and logged.
    """

    quantity = to_decimal(sale_quantity, field_name="sale quantity")
    if quantity <= 0:
        raise ValueError("sale quantity must be positive")
    price = to_decimal(sale_price, field_name="sale price")
    sold_on = as_date(sale_date, field_name="sale date") if sale_date else date.today()

    allocations: list[SaleAllocation] = []
    remaining = quantity
    for lot in order_open_lots(lots, selection):
        if remaining <= 0:
            break
        taken = min(lot.remaining_quantity, remaining)
        cost_basis = taken * lot.purchase_price
        proceeds = taken * price
        allocations.append(
            SaleAllocation(
                lot_id=lot.id,
                quantity=taken,
                cost_basis=cost_basis,
                proceeds=proceeds,
                purchase_date=lot.purchase_date,
                realized_gain=proceeds - cost_basis,
                holding_period=holding_period.classify(lot.purchase_date, sold_on),
                holding_days=holding_period.days_held(lot.purchase_date, sold_on),
            )
        )
        remaining -= taken
    if remaining > 0:
        logger.warning("Sale of %s exceeds open lots by %s", quantity, remaining)
    return allocations


def find_tax_loss_harvesting_opportunities(
    holdings: Iterable[Holding],
    current_prices: Mapping[str, Decimal],
    minimum_loss: Decimal = Decimal("100"),
    reference_date: date | None = None,
    asset_symbols: Mapping[str, str] | None = None,
) -> list[TaxLossOpportunity]:
    """Holdings whose losing lots add up to at least ``minimum_loss``, largest loss first.

    Losses are reported as positive amounts; gaining lots of the same holding
    are ignored.
    """

    threshold = to_decimal(minimum_loss, field_name="minimum loss")
    reference = as_date(reference_date, field_name="reference date") if reference_date else date.today()
    opportunities: list[TaxLossOpportunity] = []
    for holding in holdings:
        price = current_prices.get(holding.asset_id)
        if price is None:
            continue
        symbol = (asset_symbols or {}).get(holding.asset_id, holding.asset_id)
        opportunity = TaxLossOpportunity(
            holding_id=holding.id,
            asset_id=holding.asset_id,
            asset_symbol=symbol,
            short_term_loss=ZERO,
            long_term_loss=ZERO,
        )
        for lot in holding.lots:
            if lot.remaining_quantity <= 0:
                continue
            analysis = analyze_lot(lot, symbol, price, reference)
            if analysis.unrealized_gain >= 0:
                continue
            if analysis.holding_period == HoldingPeriod.SHORT:
                opportunity.short_term_loss += -analysis.unrealized_gain
            else:
                opportunity.long_term_loss += -analysis.unrealized_gain
            opportunity.lot_ids.append(lot.id)
        if opportunity.lot_ids and opportunity.unrealized_loss >= threshold:
            opportunities.append(opportunity)
    opportunities.sort(key=lambda o: (-o.unrealized_loss, o.asset_id))
    return opportunities


__all__ = [
    "AgingLot",
    "HoldingTaxEstimate",
    "LotAnalysis",
    "PortfolioTaxEstimate",
    "SaleAllocation",
    "TaxEstimate",
    "TaxLossOpportunity",
    "analyze_lot",
    "calculate_sale_allocations",
    "detect_aging_lots",
    "estimate_for_holding",
    "estimate_tax_liability",
    "find_tax_loss_harvesting_opportunities",
    "round_currency",
]
