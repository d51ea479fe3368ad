"""Performance snapshot and price history tables."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..db.base import Base
from ..db.types import DecimalString


class SnapshotRecord(Base):
    __tablename__ = "performance_snapshot"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "date", name="uq_performance_snapshot_portfolio_date"),
        Index("ix_performance_snapshot_portfolio_date", "portfolio_id", "date"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    portfolio_id: Mapped[str] = mapped_column(String(64))
    date: Mapped[date] = mapped_column(Date)
    total_value: Mapped[Decimal] = mapped_column(DecimalString)
    total_cost: Mapped[Decimal] = mapped_column(DecimalString)
    day_change: Mapped[Decimal] = mapped_column(DecimalString)
    day_change_percent: Mapped[Decimal] = mapped_column(DecimalString)
    cumulative_return: Mapped[Decimal] = mapped_column(DecimalString)
    twr_return: Mapped[Decimal] = mapped_column(DecimalString)
    holding_count: Mapped[int] = mapped_column(Integer)
    has_interpolated_prices: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class PriceBar(Base):
    __tablename__ = "price_bar"
    __table_args__ = (
        UniqueConstraint("asset_id", "date", name="uq_price_bar_asset_date"),
        Index("ix_price_bar_asset_date", "asset_id", "date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    asset_id: Mapped[str] = mapped_column(String(64))
    date: Mapped[date] = mapped_column(Date)
    close: Mapped[Decimal] = mapped_column(DecimalString)
    currency: Mapped[str] = mapped_column(String(3), default="USD")


__all__ = ["SnapshotRecord", "PriceBar"]
