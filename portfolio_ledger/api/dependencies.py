"""Shared FastAPI dependencies for the portfolio ledger service."""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import LedgerSettings, get_settings
from ..db.session import get_database, get_session
from ..services.holdings import HoldingsService
from ..services.prices import HistoricalPriceLookup, PriceLookup
from ..services.snapshots import PortfolioLocks, SnapshotService
from ..services.sql_repositories import (
    SqlHoldingRepository,
    SqlPriceHistory,
    SqlSnapshotRepository,
    SqlTransactionLedger,
)
from ..services.types import CostMode, TaxSettings

# One lock per portfolio for the whole process; services are built per request.
_snapshot_locks = PortfolioLocks()


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async for session in get_session():  # pragma: no cover - FastAPI dependency wrapper
        yield session


def get_app_settings() -> LedgerSettings:
    return get_settings()


def verify_internal_token(
    x_internal_token: str | None = Header(default=None),
    settings: LedgerSettings = Depends(get_app_settings),
) -> None:
    if settings.internal_auth_token is None:
        return
    if x_internal_token != settings.internal_auth_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")


InternalAuth = Depends(verify_internal_token)


def get_holdings_service(
    session: AsyncSession = Depends(get_db_session),
    settings: LedgerSettings = Depends(get_app_settings),
) -> HoldingsService:
    return HoldingsService(
        SqlTransactionLedger(session),
        SqlHoldingRepository(session),
        cost_mode=CostMode(settings.cost_mode),
    )


def get_price_lookup(settings: LedgerSettings = Depends(get_app_settings)) -> PriceLookup:
    return HistoricalPriceLookup(
        SqlPriceHistory(get_database().session),
        interpolation_threshold_days=settings.price_interpolation_threshold_days,
    )


def get_snapshot_service(
    session: AsyncSession = Depends(get_db_session),
    settings: LedgerSettings = Depends(get_app_settings),
    prices: PriceLookup = Depends(get_price_lookup),
) -> SnapshotService:
    return SnapshotService(
        SqlTransactionLedger(session),
        SqlSnapshotRepository(session),
        prices,
        cost_mode=CostMode(settings.cost_mode),
        holdings=SqlHoldingRepository(session),
        concurrency_policy=settings.snapshot_concurrency_policy,
        weekly_aggregation_min_days=settings.weekly_aggregation_min_days,
        monthly_aggregation_min_days=settings.monthly_aggregation_min_days,
        locks=_snapshot_locks,
    )


def get_holding_repository(session: AsyncSession = Depends(get_db_session)) -> SqlHoldingRepository:
    return SqlHoldingRepository(session)


def default_tax_settings(settings: LedgerSettings) -> TaxSettings:
    return TaxSettings(
        short_term_rate=settings.default_short_term_rate,
        long_term_rate=settings.default_long_term_rate,
    )


__all__ = [
    "InternalAuth",
    "default_tax_settings",
    "get_app_settings",
    "get_db_session",
    "get_holding_repository",
    "get_holdings_service",
    "get_price_lookup",
    "get_snapshot_service",
]
