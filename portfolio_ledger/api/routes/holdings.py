"""Holdings recalculation and listing endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ...schemas import HoldingSchema, MarketValueUpdateRequest
from ...services.holdings import HoldingsService
from ...services.sql_repositories import SqlHoldingRepository
from ..dependencies import InternalAuth, get_holding_repository, get_holdings_service

router = APIRouter(dependencies=[InternalAuth])


@router.get("/portfolios/{portfolio_id}/holdings", response_model=list[HoldingSchema])
async def list_holdings(
    portfolio_id: str,
    holdings: SqlHoldingRepository = Depends(get_holding_repository),
) -> list[HoldingSchema]:
    return [HoldingSchema.model_validate(h) for h in await holdings.list_by_portfolio(portfolio_id)]


@router.get("/portfolios/{portfolio_id}/holdings/{asset_id}", response_model=HoldingSchema)
async def get_holding(
    portfolio_id: str,
    asset_id: str,
    holdings: SqlHoldingRepository = Depends(get_holding_repository),
) -> HoldingSchema:
    holding = await holdings.get_by_portfolio_and_asset(portfolio_id, asset_id)
    if holding is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Holding not found")
    return HoldingSchema.model_validate(holding)


@router.post(
    "/portfolios/{portfolio_id}/holdings/{asset_id}/recalculate",
    response_model=HoldingSchema,
    responses={204: {"description": "Holding removed because no quantity remains"}},
)
async def recalculate_holding(
    portfolio_id: str,
    asset_id: str,
    service: HoldingsService = Depends(get_holdings_service),
):
    try:
        holding = await service.recalculate(portfolio_id, asset_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if holding is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return HoldingSchema.model_validate(holding)


@router.post("/portfolios/{portfolio_id}/holdings/recalculate", response_model=list[HoldingSchema])
async def recalculate_portfolio(
    portfolio_id: str,
    service: HoldingsService = Depends(get_holdings_service),
) -> list[HoldingSchema]:
    try:
        holdings = await service.recalculate_portfolio(portfolio_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [HoldingSchema.model_validate(h) for h in holdings]


@router.post("/portfolios/{portfolio_id}/holdings/market-values", response_model=list[HoldingSchema])
async def update_market_values(
    portfolio_id: str,
    payload: MarketValueUpdateRequest,
    service: HoldingsService = Depends(get_holdings_service),
) -> list[HoldingSchema]:
    holdings = await service.update_market_values(portfolio_id, payload.prices)
    return [HoldingSchema.model_validate(h) for h in holdings]
