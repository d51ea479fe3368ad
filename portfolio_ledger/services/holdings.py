"""Holdings and cost-basis calculator.

Holdings are derived data: every recalculation replays the full transaction
history for a (portfolio, asset) pair and replaces the stored record, so
out-of-order edits and deletes always converge to the same result.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping, Sequence

from .repositories import HoldingRepository, TransactionLedger
from .types import (
    ACQUISITION_TYPES,
    DISPOSAL_TYPES,
    HUNDRED,
    ONE,
    ZERO,
    CostMode,
    Holding,
    LotSelection,
    LotType,
    TaxLot,
    Transaction,
    TransactionType,
    to_decimal,
)

logger = logging.getLogger(__name__)

_UNSUPPORTED_CORPORATE_ACTIONS = frozenset({TransactionType.SPINOFF, TransactionType.MERGER})


def _same_day_rank(tx: Transaction) -> int:
    # Splits take effect at the open, acquisitions settle before disposals.
    if tx.type == TransactionType.SPLIT:
        return 0
    if tx.type in ACQUISITION_TYPES:
        return 1
    if tx.type in DISPOSAL_TYPES:
        return 3
    return 2


def sort_transactions(transactions: Iterable[Transaction]) -> list[Transaction]:
    """Order transactions by date, then by type rank and id within a day.

    The ledger does not guarantee an order for same-day entries, so the
    tiebreak keeps replays identical however the rows come back.
    """

    return sorted(transactions, key=lambda tx: (tx.date, _same_day_rank(tx), tx.id))


def order_open_lots(lots: Iterable[TaxLot], selection: LotSelection = LotSelection.FIFO) -> list[TaxLot]:
    """Lots with quantity remaining, in the order a disposal consumes them."""

    open_lots = [lot for lot in lots if lot.remaining_quantity > 0]
    selection = LotSelection(selection)
    if selection == LotSelection.LIFO:
        return sorted(open_lots, key=lambda lot: lot.purchase_date, reverse=True)
    if selection == LotSelection.HIFO:
        return sorted(open_lots, key=lambda lot: lot.purchase_price, reverse=True)
    return sorted(open_lots, key=lambda lot: lot.purchase_date)


@dataclass
class Position:
    """Running quantity and cost basis for one asset."""

    quantity: Decimal = ZERO
    cost_basis: Decimal = ZERO

    @property
    def average_cost(self) -> Decimal:
        if self.quantity == 0:
            return ZERO
        return self.cost_basis / self.quantity

    def apply(self, tx: Transaction) -> None:
        if tx.type in ACQUISITION_TYPES:
            self.quantity += tx.quantity
            self.cost_basis += tx.total_amount
        elif tx.type in DISPOSAL_TYPES:
            ratio = tx.quantity / self.quantity if self.quantity != 0 else ZERO
            self.cost_basis -= self.cost_basis * ratio
            self.quantity -= tx.quantity
            if self.quantity < 0:
                logger.warning(
                    "Disposal of %s %s on %s exceeds held quantity; clamping to zero",
                    tx.quantity,
                    tx.asset_id,
                    tx.date,
                )
                self.quantity = ZERO
            if self.cost_basis < 0:
                self.cost_basis = ZERO
        elif tx.type == TransactionType.SPLIT:
            _validate_split_ratio(tx)
            self.quantity *= tx.quantity
        elif tx.type in (TransactionType.FEE, TransactionType.TAX):
            self.cost_basis = max(ZERO, self.cost_basis - tx.total_amount)
        elif tx.type in _UNSUPPORTED_CORPORATE_ACTIONS:
            logger.info(
                "Ignoring %s transaction %s for %s: corporate actions are not modelled",
                tx.type.value,
                tx.id,
                tx.asset_id,
            )
        # dividend and interest are income and leave the position untouched


@dataclass
class HoldingCalculation:
    quantity: Decimal
    cost_basis: Decimal
    average_cost: Decimal
    lots: list[TaxLot] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.quantity == 0


def _validate_split_ratio(tx: Transaction) -> None:
    if tx.quantity <= 0:
        raise ValueError(f"Split ratio must be positive, got {tx.quantity} on transaction {tx.id}")


def _lot_type(tx: Transaction) -> LotType:
    if tx.grant_date is not None and tx.discount_percent:
        return LotType.ESPP
    if tx.vesting_date is not None and tx.shares_withheld:
        return LotType.RSU
    return LotType.STANDARD


def _unit_price(tx: Transaction) -> Decimal:
    if tx.price != 0:
        return tx.price
    if tx.quantity != 0:
        return tx.total_amount / tx.quantity
    return ZERO


def _bargain_element(tx: Transaction, unit_price: Decimal) -> Decimal | None:
    """Per-share discount already taxed as ordinary income."""

    if tx.ordinary_income_amount is not None and tx.quantity != 0:
        return tx.ordinary_income_amount / tx.quantity
    if tx.discount_percent is not None and tx.discount_percent < ONE:
        fair_market_value = unit_price / (ONE - tx.discount_percent)
        return fair_market_value - unit_price
    return None


def _open_lot(tx: Transaction) -> TaxLot:
    unit_price = _unit_price(tx)
    lot_type = _lot_type(tx)
    return TaxLot(
        id=tx.id,
        quantity=tx.quantity,
        purchase_price=unit_price,
        purchase_date=tx.date,
        lot_type=lot_type,
        grant_date=tx.grant_date,
        vesting_date=tx.vesting_date,
        bargain_element=_bargain_element(tx, unit_price) if lot_type == LotType.ESPP else None,
        notes=tx.notes,
    )


def build_tax_lots(transactions: Iterable[Transaction]) -> list[TaxLot]:
    """Build FIFO tax lots for a single asset.

    Acquisitions open a lot keyed by the transaction id; disposals consume
    the oldest open lots first. Splits rescale every lot so the cost of each
    lot is preserved.
    """

    lots: list[TaxLot] = []
    for tx in sort_transactions(transactions):
        if tx.type in ACQUISITION_TYPES:
            if tx.quantity > 0:
                lots.append(_open_lot(tx))
        elif tx.type in DISPOSAL_TYPES:
            remaining = tx.quantity
            for lot in order_open_lots(lots):
                if remaining <= 0:
                    break
                consumed = min(lot.remaining_quantity, remaining)
                lot.sold_quantity += consumed
                remaining -= consumed
            if remaining > 0:
                logger.warning(
                    "Transaction %s sells %s more %s than the open lots hold",
                    tx.id,
                    remaining,
                    tx.asset_id,
                )
        elif tx.type == TransactionType.SPLIT:
            _validate_split_ratio(tx)
            for lot in lots:
                lot.quantity *= tx.quantity
                lot.sold_quantity *= tx.quantity
                lot.purchase_price /= tx.quantity
                if lot.bargain_element is not None:
                    lot.bargain_element /= tx.quantity
    return lots


def calculate_holding(
    transactions: Iterable[Transaction],
    cost_mode: CostMode = CostMode.AVERAGE_COST,
) -> HoldingCalculation:
    """Fold one asset's transactions into quantity, cost basis and tax lots."""

    ordered = sort_transactions(transactions)
    position = Position()
    for tx in ordered:
        position.apply(tx)
    lots = build_tax_lots(ordered)

    cost_basis = position.cost_basis
    if CostMode(cost_mode) == CostMode.FIFO:
        cost_basis = sum((lot.purchase_price * lot.remaining_quantity for lot in lots), ZERO)

    average_cost = cost_basis / position.quantity if position.quantity != 0 else ZERO
    return HoldingCalculation(
        quantity=position.quantity,
        cost_basis=cost_basis,
        average_cost=average_cost,
        lots=lots,
    )


def apply_market_value(holding: Holding, price: Decimal) -> Holding:
    """Refresh current value and unrealized gain of ``holding`` in place."""

    price = to_decimal(price, field_name="price")
    value = holding.quantity * price
    if holding.ownership_percentage is not None:
        value = value * holding.ownership_percentage / HUNDRED
    holding.current_value = value
    holding.unrealized_gain = value - holding.cost_basis
    holding.unrealized_gain_percent = (
        holding.unrealized_gain / holding.cost_basis * HUNDRED if holding.cost_basis != 0 else ZERO
    )
    return holding


class HoldingsService:
    """Recalculates and persists holdings from the transaction ledger."""

    def __init__(
        self,
        ledger: TransactionLedger,
        holdings: HoldingRepository,
        *,
        cost_mode: CostMode = CostMode.AVERAGE_COST,
    ):
        self.ledger = ledger
        self.holdings = holdings
        self.cost_mode = CostMode(cost_mode)

    async def recalculate(
        self,
        portfolio_id: str,
        asset_id: str,
        transactions: Sequence[Transaction] | None = None,
        *,
        current_price: Decimal | None = None,
    ) -> Holding | None:
        """Replace the stored holding for the pair; returns ``None`` when it was deleted."""

        if transactions is None:
            transactions = await self.ledger.get_by_portfolio_and_asset(portfolio_id, asset_id)
        relevant = [
            tx for tx in transactions if tx.portfolio_id == portfolio_id and tx.asset_id == asset_id
        ]
        calculation = calculate_holding(relevant, self.cost_mode)
        existing = await self.holdings.get_by_portfolio_and_asset(portfolio_id, asset_id)

        if calculation.is_empty:
            if existing is not None:
                await self.holdings.delete(existing.id)
                logger.debug("Deleted empty holding %s for %s/%s", existing.id, portfolio_id, asset_id)
            return None

        holding = Holding(
            id=existing.id if existing is not None else uuid.uuid4().hex,
            portfolio_id=portfolio_id,
            asset_id=asset_id,
            quantity=calculation.quantity,
            cost_basis=calculation.cost_basis,
            average_cost=calculation.average_cost,
            lots=calculation.lots,
            last_updated=datetime.utcnow(),
            ownership_percentage=existing.ownership_percentage if existing is not None else None,
        )
        if current_price is not None:
            apply_market_value(holding, current_price)
        elif existing is not None and existing.quantity != 0 and existing.current_value != 0:
            # Keep the last known price until the next market refresh.
            apply_market_value(holding, _implied_price(existing))
        await self.holdings.upsert(holding)
        return holding

    async def recalculate_portfolio(self, portfolio_id: str) -> list[Holding]:
        """Recalculate every asset in the portfolio and drop holdings with no transactions left."""

        transactions = await self.ledger.get_by_portfolio(portfolio_id)
        by_asset: dict[str, list[Transaction]] = {}
        for tx in transactions:
            by_asset.setdefault(tx.asset_id, []).append(tx)

        results: list[Holding] = []
        for asset_id in sorted(by_asset):
            holding = await self.recalculate(portfolio_id, asset_id, by_asset[asset_id])
            if holding is not None:
                results.append(holding)

        for stale in await self.holdings.list_by_portfolio(portfolio_id):
            if stale.asset_id not in by_asset:
                await self.holdings.delete(stale.id)
                logger.info("Removed orphaned holding %s (%s)", stale.id, stale.asset_id)
        return results

    async def update_market_values(
        self,
        portfolio_id: str,
        prices: Mapping[str, Decimal],
    ) -> list[Holding]:
        """Apply current prices to the stored holdings of a portfolio."""

        updated: list[Holding] = []
        for holding in await self.holdings.list_by_portfolio(portfolio_id):
            price = prices.get(holding.asset_id)
            if price is None:
                logger.debug("No current price for %s; leaving market value unchanged", holding.asset_id)
                continue
            apply_market_value(holding, price)
            holding.last_updated = datetime.utcnow()
            await self.holdings.upsert(holding)
            updated.append(holding)
        return updated


def _implied_price(holding: Holding) -> Decimal:
    value = holding.current_value
    if holding.ownership_percentage:
        value = value * HUNDRED / holding.ownership_percentage
    return value / holding.quantity


__all__ = [
    "Position",
    "HoldingCalculation",
    "HoldingsService",
    "apply_market_value",
    "build_tax_lots",
    "calculate_holding",
    "order_open_lots",
    "sort_transactions",
]
