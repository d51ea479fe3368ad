"""Pydantic schemas for the portfolio ledger API.

Decimal fields serialise as strings in JSON so no precision is lost on the
wire.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..services.espp import DispositionReason
from ..services.events import SnapshotTriggerType
from ..services.types import HoldingPeriod, LotSelection, LotType


class _FromAttributes(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class TaxLotSchema(_FromAttributes):
    id: str
    quantity: Decimal
    sold_quantity: Decimal
    remaining_quantity: Decimal
    purchase_price: Decimal
    purchase_date: dt.date
    lot_type: LotType
    grant_date: dt.date | None = None
    vesting_date: dt.date | None = None
    bargain_element: Decimal | None = None


class HoldingSchema(_FromAttributes):
    id: str
    portfolio_id: str
    asset_id: str
    quantity: Decimal
    cost_basis: Decimal
    average_cost: Decimal
    current_value: Decimal
    unrealized_gain: Decimal
    unrealized_gain_percent: Decimal
    ownership_percentage: Decimal | None = None
    last_updated: dt.datetime
    lots: list[TaxLotSchema] = Field(default_factory=list)


class MarketValueUpdateRequest(BaseModel):
    prices: dict[str, Decimal] = Field(..., description="Current price per asset id", examples=[{"AAPL": "189.12"}])


class SnapshotSchema(_FromAttributes):
    id: str
    portfolio_id: str
    date: dt.date
    total_value: Decimal
    total_cost: Decimal
    day_change: Decimal
    day_change_percent: Decimal
    cumulative_return: Decimal
    twr_return: Decimal
    holding_count: int
    has_interpolated_prices: bool
    created_at: dt.datetime
    updated_at: dt.datetime


class ComputeSnapshotsRequest(BaseModel):
    from_date: dt.date
    to_date: dt.date | None = Field(default=None, description="Defaults to today")

    @model_validator(mode="after")
    def _check_range(self) -> "ComputeSnapshotsRequest":
        if self.to_date is not None and self.to_date < self.from_date:
            raise ValueError("to_date cannot be before from_date")
        return self


class SnapshotTriggerRequest(BaseModel):
    type: SnapshotTriggerType
    date: dt.date | None = None
    old_date: dt.date | None = None
    new_date: dt.date | None = None


class ComputeResultSchema(BaseModel):
    portfolio_id: str
    computed: int
    first_date: dt.date | None = None
    last_date: dt.date | None = None


class PerformanceSummarySchema(_FromAttributes):
    start_date: dt.date | None = None
    end_date: dt.date | None = None
    start_value: Decimal | None = None
    end_value: Decimal | None = None
    high_date: dt.date | None = None
    high_value: Decimal | None = None
    low_date: dt.date | None = None
    low_value: Decimal | None = None
    best_day_date: dt.date | None = None
    best_day_percent: Decimal | None = None
    worst_day_date: dt.date | None = None
    worst_day_percent: Decimal | None = None
    max_drawdown_pct: Decimal | None = None
    twr_return: Decimal
    annualized_return: Decimal
    volatility: Decimal
    snapshot_count: int
    has_interpolated_prices: bool


class TaxEstimateRequest(BaseModel):
    prices: dict[str, Decimal] = Field(..., description="Current price per asset id")
    short_term_rate: Decimal | None = Field(default=None, ge=0, le=1)
    long_term_rate: Decimal | None = Field(default=None, ge=0, le=1)
    reference_date: dt.date | None = None
    asset_symbols: dict[str, str] | None = None


class LotAnalysisSchema(_FromAttributes):
    lot_id: str
    asset_symbol: str
    purchase_date: dt.date
    quantity: Decimal
    cost_basis: Decimal
    current_value: Decimal
    unrealized_gain: Decimal
    taxable_gain: Decimal
    holding_period: HoldingPeriod
    holding_days: int
    lot_type: LotType
    grant_date: dt.date | None = None
    bargain_element: Decimal | None = None
    adjusted_cost_basis: Decimal | None = None
    disposition: DispositionReason | None = None
    is_qualifying_disposition: bool | None = None


class TaxEstimateSchema(_FromAttributes):
    total_unrealized_gain: Decimal
    total_unrealized_loss: Decimal
    net_unrealized_gain: Decimal
    short_term_gains: Decimal
    short_term_losses: Decimal
    long_term_gains: Decimal
    long_term_losses: Decimal
    estimated_st_tax: Decimal
    estimated_lt_tax: Decimal
    total_estimated_tax: Decimal
    lots: list[LotAnalysisSchema] = Field(default_factory=list)
    skipped_asset_ids: list[str] = Field(default_factory=list)


class AgingLotSchema(_FromAttributes):
    holding_id: str
    asset_id: str
    asset_symbol: str
    lot_id: str
    remaining_quantity: Decimal
    purchase_date: dt.date
    days_until_long_term: int
    current_price: Decimal
    current_value: Decimal
    unrealized_gain: Decimal
    unrealized_gain_percent: Decimal


class AgingLotsRequest(BaseModel):
    prices: dict[str, Decimal]
    lookback_days: int | None = Field(default=None, ge=0)
    reference_date: dt.date | None = None
    asset_symbols: dict[str, str] | None = None


class SaleAllocationRequest(BaseModel):
    asset_id: str
    quantity: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., ge=0)
    sale_date: dt.date | None = Field(default=None, description="Defaults to today")
    lot_selection: LotSelection = LotSelection.FIFO


class SaleAllocationSchema(_FromAttributes):
    lot_id: str
    quantity: Decimal
    cost_basis: Decimal
    proceeds: Decimal
    purchase_date: dt.date
    realized_gain: Decimal
    holding_period: HoldingPeriod
    holding_days: int


class TaxLossHarvestingRequest(BaseModel):
    prices: dict[str, Decimal]
    minimum_loss: Decimal | None = Field(default=None, ge=0)
    reference_date: dt.date | None = None
    asset_symbols: dict[str, str] | None = None


class TaxLossOpportunitySchema(_FromAttributes):
    holding_id: str
    asset_id: str
    asset_symbol: str
    unrealized_loss: Decimal
    short_term_loss: Decimal
    long_term_loss: Decimal
    lot_ids: list[str] = Field(default_factory=list)
