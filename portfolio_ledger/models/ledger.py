"""Transaction ledger, holding and tax-lot tables."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..db.base import Base
from ..db.types import DecimalString


class LedgerTransaction(Base):
    __tablename__ = "ledger_transaction"
    __table_args__ = (
        Index("ix_ledger_transaction_portfolio_date", "portfolio_id", "date"),
        Index("ix_ledger_transaction_portfolio_asset", "portfolio_id", "asset_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    portfolio_id: Mapped[str] = mapped_column(String(64))
    asset_id: Mapped[str] = mapped_column(String(64))
    type: Mapped[str] = mapped_column(String(16))
    date: Mapped[date] = mapped_column(Date)
    quantity: Mapped[Decimal] = mapped_column(DecimalString)
    price: Mapped[Decimal] = mapped_column(DecimalString, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(DecimalString, default=Decimal("0"))
    fees: Mapped[Decimal] = mapped_column(DecimalString, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)
    grant_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    vesting_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    discount_percent: Mapped[Decimal | None] = mapped_column(DecimalString, nullable=True)
    shares_withheld: Mapped[Decimal | None] = mapped_column(DecimalString, nullable=True)
    ordinary_income_amount: Mapped[Decimal | None] = mapped_column(DecimalString, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class HoldingRecord(Base):
    __tablename__ = "holding"
    __table_args__ = (UniqueConstraint("portfolio_id", "asset_id", name="uq_holding_portfolio_asset"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    portfolio_id: Mapped[str] = mapped_column(String(64), index=True)
    asset_id: Mapped[str] = mapped_column(String(64))
    quantity: Mapped[Decimal] = mapped_column(DecimalString)
    cost_basis: Mapped[Decimal] = mapped_column(DecimalString)
    average_cost: Mapped[Decimal] = mapped_column(DecimalString)
    current_value: Mapped[Decimal] = mapped_column(DecimalString, default=Decimal("0"))
    unrealized_gain: Mapped[Decimal] = mapped_column(DecimalString, default=Decimal("0"))
    unrealized_gain_percent: Mapped[Decimal] = mapped_column(DecimalString, default=Decimal("0"))
    ownership_percentage: Mapped[Decimal | None] = mapped_column(DecimalString, nullable=True)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    lots: Mapped[list["TaxLotRecord"]] = relationship(
        back_populates="holding",
        cascade="all, delete-orphan",
        order_by="TaxLotRecord.purchase_date",
        lazy="selectin",
    )


class TaxLotRecord(Base):
    __tablename__ = "tax_lot"
    __table_args__ = (Index("ix_tax_lot_holding", "holding_id"),)

    pk: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    holding_id: Mapped[str] = mapped_column(ForeignKey("holding.id", ondelete="CASCADE"))
    lot_id: Mapped[str] = mapped_column(String(64))
    quantity: Mapped[Decimal] = mapped_column(DecimalString)
    sold_quantity: Mapped[Decimal] = mapped_column(DecimalString, default=Decimal("0"))
    purchase_price: Mapped[Decimal] = mapped_column(DecimalString)
    purchase_date: Mapped[date] = mapped_column(Date)
    lot_type: Mapped[str] = mapped_column(String(16), default="standard")
    grant_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    vesting_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    bargain_element: Mapped[Decimal | None] = mapped_column(DecimalString, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)

    holding: Mapped[HoldingRecord] = relationship(back_populates="lots")


__all__ = ["LedgerTransaction", "HoldingRecord", "TaxLotRecord"]
