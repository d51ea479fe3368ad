"""SQLAlchemy implementations of the persistence boundaries.

The repositories wrap one ``AsyncSession`` and commit after every write so
snapshots computed before a failure stay persisted. The price history opens
short-lived sessions instead.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import AsyncContextManager, Callable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import HoldingRecord, LedgerTransaction, PriceBar, SnapshotRecord, TaxLotRecord
from .prices import PricePoint
from .types import Holding, LotType, PerformanceSnapshot, TaxLot, Transaction, TransactionType, to_decimal


def _to_transaction(row: LedgerTransaction) -> Transaction:
    return Transaction(
        id=row.id,
        portfolio_id=row.portfolio_id,
        asset_id=row.asset_id,
        type=TransactionType(row.type),
        date=row.date,
        quantity=row.quantity,
        price=row.price,
        total_amount=row.total_amount,
        fees=row.fees,
        currency=row.currency,
        notes=row.notes,
        grant_date=row.grant_date,
        vesting_date=row.vesting_date,
        discount_percent=row.discount_percent,
        shares_withheld=row.shares_withheld,
        ordinary_income_amount=row.ordinary_income_amount,
    )


def _to_lot(row: TaxLotRecord) -> TaxLot:
    return TaxLot(
        id=row.lot_id,
        quantity=row.quantity,
        purchase_price=row.purchase_price,
        purchase_date=row.purchase_date,
        sold_quantity=row.sold_quantity,
        lot_type=LotType(row.lot_type),
        grant_date=row.grant_date,
        vesting_date=row.vesting_date,
        bargain_element=row.bargain_element,
        notes=row.notes,
    )


def _to_holding(row: HoldingRecord) -> Holding:
    return Holding(
        id=row.id,
        portfolio_id=row.portfolio_id,
        asset_id=row.asset_id,
        quantity=row.quantity,
        cost_basis=row.cost_basis,
        average_cost=row.average_cost,
        current_value=row.current_value,
        unrealized_gain=row.unrealized_gain,
        unrealized_gain_percent=row.unrealized_gain_percent,
        lots=[_to_lot(lot) for lot in row.lots],
        last_updated=row.last_updated,
        ownership_percentage=row.ownership_percentage,
    )


def _to_snapshot(row: SnapshotRecord) -> PerformanceSnapshot:
    return PerformanceSnapshot(
        id=row.id,
        portfolio_id=row.portfolio_id,
        date=row.date,
        total_value=row.total_value,
        total_cost=row.total_cost,
        day_change=row.day_change,
        day_change_percent=row.day_change_percent,
        cumulative_return=row.cumulative_return,
        twr_return=row.twr_return,
        holding_count=row.holding_count,
        has_interpolated_prices=row.has_interpolated_prices,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlTransactionLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, transaction: Transaction) -> None:
        self.session.add(
            LedgerTransaction(
                id=transaction.id,
                portfolio_id=transaction.portfolio_id,
                asset_id=transaction.asset_id,
                type=transaction.type.value,
                date=transaction.date,
                quantity=transaction.quantity,
                price=transaction.price,
                total_amount=transaction.total_amount,
                fees=transaction.fees,
                currency=transaction.currency,
                notes=transaction.notes,
                grant_date=transaction.grant_date,
                vesting_date=transaction.vesting_date,
                discount_percent=transaction.discount_percent,
                shares_withheld=transaction.shares_withheld,
                ordinary_income_amount=transaction.ordinary_income_amount,
            )
        )
        await self.session.commit()

    async def get_by_portfolio(self, portfolio_id: str) -> list[Transaction]:
        result = await self.session.execute(
            select(LedgerTransaction)
            .where(LedgerTransaction.portfolio_id == portfolio_id)
            .order_by(LedgerTransaction.date, LedgerTransaction.id)
        )
        return [_to_transaction(row) for row in result.scalars()]

    async def get_by_portfolio_and_asset(self, portfolio_id: str, asset_id: str) -> list[Transaction]:
        result = await self.session.execute(
            select(LedgerTransaction).where(
                LedgerTransaction.portfolio_id == portfolio_id,
                LedgerTransaction.asset_id == asset_id,
            )
            .order_by(LedgerTransaction.date, LedgerTransaction.id)
        )
        return [_to_transaction(row) for row in result.scalars()]


class SqlHoldingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(self, holding: Holding) -> None:
        row = await self.session.get(HoldingRecord, holding.id)
        if row is None:
            row = HoldingRecord(id=holding.id, portfolio_id=holding.portfolio_id, asset_id=holding.asset_id)
            self.session.add(row)
        row.quantity = holding.quantity
        row.cost_basis = holding.cost_basis
        row.average_cost = holding.average_cost
        row.current_value = holding.current_value
        row.unrealized_gain = holding.unrealized_gain
        row.unrealized_gain_percent = holding.unrealized_gain_percent
        row.ownership_percentage = holding.ownership_percentage
        row.last_updated = holding.last_updated
        row.lots = [
            TaxLotRecord(
                lot_id=lot.id,
                quantity=lot.quantity,
                sold_quantity=lot.sold_quantity,
                purchase_price=lot.purchase_price,
                purchase_date=lot.purchase_date,
                lot_type=LotType(lot.lot_type).value,
                grant_date=lot.grant_date,
                vesting_date=lot.vesting_date,
                bargain_element=lot.bargain_element,
                notes=lot.notes,
            )
            for lot in holding.lots
        ]
        await self.session.commit()

    async def delete(self, holding_id: str) -> None:
        row = await self.session.get(HoldingRecord, holding_id)
        if row is not None:
            await self.session.delete(row)
            await self.session.commit()

    async def get_by_portfolio_and_asset(self, portfolio_id: str, asset_id: str) -> Holding | None:
        result = await self.session.execute(
            select(HoldingRecord).where(
                HoldingRecord.portfolio_id == portfolio_id,
                HoldingRecord.asset_id == asset_id,
            )
        )
        row = result.scalar_one_or_none()
        return _to_holding(row) if row is not None else None

    async def list_by_portfolio(self, portfolio_id: str) -> list[Holding]:
        result = await self.session.execute(
            select(HoldingRecord)
            .where(HoldingRecord.portfolio_id == portfolio_id)
            .order_by(HoldingRecord.asset_id)
        )
        return [_to_holding(row) for row in result.scalars()]


class SqlSnapshotRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(self, snapshot: PerformanceSnapshot) -> PerformanceSnapshot:
        result = await self.session.execute(
            select(SnapshotRecord).where(
                SnapshotRecord.portfolio_id == snapshot.portfolio_id,
                SnapshotRecord.date == snapshot.date,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = SnapshotRecord(
                id=snapshot.id,
                portfolio_id=snapshot.portfolio_id,
                date=snapshot.date,
                created_at=snapshot.created_at,
            )
            self.session.add(row)
        row.total_value = snapshot.total_value
        row.total_cost = snapshot.total_cost
        row.day_change = snapshot.day_change
        row.day_change_percent = snapshot.day_change_percent
        row.cumulative_return = snapshot.cumulative_return
        row.twr_return = snapshot.twr_return
        row.holding_count = snapshot.holding_count
        row.has_interpolated_prices = snapshot.has_interpolated_prices
        row.updated_at = datetime.utcnow()
        await self.session.commit()
        return _to_snapshot(row)

    async def get_range(self, portfolio_id: str, start: date, end: date) -> list[PerformanceSnapshot]:
        result = await self.session.execute(
            select(SnapshotRecord)
            .where(
                SnapshotRecord.portfolio_id == portfolio_id,
                SnapshotRecord.date >= start,
                SnapshotRecord.date <= end,
            )
            .order_by(SnapshotRecord.date)
        )
        return [_to_snapshot(row) for row in result.scalars()]

    async def get_latest(self, portfolio_id: str) -> PerformanceSnapshot | None:
        result = await self.session.execute(
            select(SnapshotRecord)
            .where(SnapshotRecord.portfolio_id == portfolio_id)
            .order_by(SnapshotRecord.date.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _to_snapshot(row) if row is not None else None

    async def get_latest_before(self, portfolio_id: str, before: date) -> PerformanceSnapshot | None:
        result = await self.session.execute(
            select(SnapshotRecord)
            .where(SnapshotRecord.portfolio_id == portfolio_id, SnapshotRecord.date < before)
            .order_by(SnapshotRecord.date.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _to_snapshot(row) if row is not None else None

    async def delete_range(self, portfolio_id: str, start: date, end: date) -> int:
        result = await self.session.execute(
            delete(SnapshotRecord).where(
                SnapshotRecord.portfolio_id == portfolio_id,
                SnapshotRecord.date >= start,
                SnapshotRecord.date <= end,
            )
        )
        await self.session.commit()
        return result.rowcount or 0

    async def delete_all_for_portfolio(self, portfolio_id: str) -> int:
        result = await self.session.execute(
            delete(SnapshotRecord).where(SnapshotRecord.portfolio_id == portfolio_id)
        )
        await self.session.commit()
        return result.rowcount or 0


class SqlPriceHistory:
    """Price observations stored in the ``price_bar`` table.

    Lookups for one day run concurrently, so each query opens its own session
    from ``session_factory`` instead of sharing the request session.
    """

    def __init__(self, session_factory: Callable[[], AsyncContextManager[AsyncSession]]):
        self.session_factory = session_factory

    async def add(self, asset_id: str, day: date, close: Decimal | str | int) -> None:
        async with self.session_factory() as session:
            session.add(PriceBar(asset_id=asset_id, date=day, close=to_decimal(close, field_name="close")))
            await session.commit()

    async def nearest_observations(
        self, asset_id: str, day: date
    ) -> tuple[PricePoint | None, PricePoint | None]:
        async with self.session_factory() as session:
            before = await session.execute(
                select(PriceBar.date, PriceBar.close)
                .where(PriceBar.asset_id == asset_id, PriceBar.date <= day)
                .order_by(PriceBar.date.desc())
                .limit(1)
            )
            before_row = before.first()
            after = await session.execute(
                select(PriceBar.date, PriceBar.close)
                .where(PriceBar.asset_id == asset_id, PriceBar.date > day)
                .order_by(PriceBar.date)
                .limit(1)
            )
            after_row = after.first()
        return (
            PricePoint(before_row.date, before_row.close) if before_row is not None else None,
            PricePoint(after_row.date, after_row.close) if after_row is not None else None,
        )


__all__ = [
    "SqlHoldingRepository",
    "SqlPriceHistory",
    "SqlSnapshotRepository",
    "SqlTransactionLedger",
]
