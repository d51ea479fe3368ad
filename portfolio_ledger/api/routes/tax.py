"""Tax liability estimation endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ...core.config import LedgerSettings
from ...schemas import (
    AgingLotSchema,
    AgingLotsRequest,
    SaleAllocationRequest,
    SaleAllocationSchema,
    TaxEstimateRequest,
    TaxEstimateSchema,
    TaxLossHarvestingRequest,
    TaxLossOpportunitySchema,
)
from ...services.sql_repositories import SqlHoldingRepository
from ...services.tax_lots import (
    calculate_sale_allocations,
    detect_aging_lots,
    estimate_tax_liability,
    find_tax_loss_harvesting_opportunities,
)
from ...services.types import TaxSettings
from ..dependencies import InternalAuth, default_tax_settings, get_app_settings, get_holding_repository

router = APIRouter(dependencies=[InternalAuth])


@router.post("/portfolios/{portfolio_id}/tax/estimate", response_model=TaxEstimateSchema)
async def estimate_tax(
    portfolio_id: str,
    payload: TaxEstimateRequest,
    holdings: SqlHoldingRepository = Depends(get_holding_repository),
    settings: LedgerSettings = Depends(get_app_settings),
) -> TaxEstimateSchema:
    defaults = default_tax_settings(settings)
    try:
        tax_settings = TaxSettings(
            short_term_rate=payload.short_term_rate if payload.short_term_rate is not None else defaults.short_term_rate,
            long_term_rate=payload.long_term_rate if payload.long_term_rate is not None else defaults.long_term_rate,
        )
        estimate = estimate_tax_liability(
            await holdings.list_by_portfolio(portfolio_id),
            payload.prices,
            tax_settings,
            asset_symbols=payload.asset_symbols,
            reference_date=payload.reference_date,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return TaxEstimateSchema.model_validate(estimate)


@router.post("/portfolios/{portfolio_id}/tax/aging-lots", response_model=list[AgingLotSchema])
async def aging_lots(
    portfolio_id: str,
    payload: AgingLotsRequest,
    holdings: SqlHoldingRepository = Depends(get_holding_repository),
    settings: LedgerSettings = Depends(get_app_settings),
) -> list[AgingLotSchema]:
    lookback = payload.lookback_days if payload.lookback_days is not None else settings.aging_lot_lookback_days
    try:
        lots = detect_aging_lots(
            await holdings.list_by_portfolio(portfolio_id),
            payload.prices,
            lookback_days=lookback,
            reference_date=payload.reference_date,
            asset_symbols=payload.asset_symbols,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [AgingLotSchema.model_validate(lot) for lot in lots]


@router.post("/portfolios/{portfolio_id}/tax/sale-allocations", response_model=list[SaleAllocationSchema])
async def sale_allocations(
    portfolio_id: str,
    payload: SaleAllocationRequest,
    holdings: SqlHoldingRepository = Depends(get_holding_repository),
) -> list[SaleAllocationSchema]:
    holding = await holdings.get_by_portfolio_and_asset(portfolio_id, payload.asset_id)
    if holding is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Holding not found")
    try:
        allocations = calculate_sale_allocations(
            holding.lots,
            payload.quantity,
            payload.price,
            sale_date=payload.sale_date,
            selection=payload.lot_selection,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [SaleAllocationSchema.model_validate(allocation) for allocation in allocations]


@router.post(
    "/portfolios/{portfolio_id}/tax/harvesting-opportunities",
    response_model=list[TaxLossOpportunitySchema],
)
async def harvesting_opportunities(
    portfolio_id: str,
    payload: TaxLossHarvestingRequest,
    holdings: SqlHoldingRepository = Depends(get_holding_repository),
    settings: LedgerSettings = Depends(get_app_settings),
) -> list[TaxLossOpportunitySchema]:
    minimum = payload.minimum_loss if payload.minimum_loss is not None else settings.tax_loss_minimum
    try:
        opportunities = find_tax_loss_harvesting_opportunities(
            await holdings.list_by_portfolio(portfolio_id),
            payload.prices,
            minimum_loss=minimum,
            reference_date=payload.reference_date,
            asset_symbols=payload.asset_symbols,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [TaxLossOpportunitySchema.model_validate(opportunity) for opportunity in opportunities]
