"""Rebuild daily performance snapshots for a portfolio."""

from __future__ import annotations

import argparse
import asyncio
from datetime import date

from portfolio_ledger.core.config import get_settings
from portfolio_ledger.core.logging import setup_logging
from portfolio_ledger.db.init import init_database
from portfolio_ledger.db.session import Database
from portfolio_ledger.services.holdings import HoldingsService
from portfolio_ledger.services.prices import HistoricalPriceLookup
from portfolio_ledger.services.snapshots import SnapshotService
from portfolio_ledger.services.sql_repositories import (
    SqlHoldingRepository,
    SqlPriceHistory,
    SqlSnapshotRepository,
    SqlTransactionLedger,
)
from portfolio_ledger.services.types import CostMode


async def _run(portfolio_id: str, from_date: date | None, to_date: date | None, with_holdings: bool) -> None:
    settings = get_settings()
    database = Database(settings.database_url)
    await init_database(database)
    try:
        async with database.session() as session:
            ledger = SqlTransactionLedger(session)
            if with_holdings:
                holdings = HoldingsService(
                    ledger, SqlHoldingRepository(session), cost_mode=CostMode(settings.cost_mode)
                )
                refreshed = await holdings.recalculate_portfolio(portfolio_id)
                print(f"Recalculated {len(refreshed)} holdings for {portfolio_id}")

            service = SnapshotService(
                ledger,
                SqlSnapshotRepository(session),
                HistoricalPriceLookup(
                    SqlPriceHistory(database.session),
                    interpolation_threshold_days=settings.price_interpolation_threshold_days,
                ),
                concurrency_policy=settings.snapshot_concurrency_policy,
                cost_mode=CostMode(settings.cost_mode),
                holdings=SqlHoldingRepository(session),
            )
            if from_date is None:
                snapshots = await service.recompute_all(portfolio_id)
            else:
                snapshots = await service.compute_snapshots(portfolio_id, from_date, to_date)
            interpolated = sum(1 for s in snapshots if s.has_interpolated_prices)
            print(f"Computed {len(snapshots)} snapshots for {portfolio_id} ({interpolated} with interpolated prices)")
    finally:
        await database.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Recompute daily performance snapshots for a portfolio")
    parser.add_argument("--portfolio", required=True)
    parser.add_argument("--from-date", type=date.fromisoformat, default=None, help="Incremental start (YYYY-MM-DD)")
    parser.add_argument("--to-date", type=date.fromisoformat, default=None)
    parser.add_argument("--with-holdings", action="store_true", help="Recalculate holdings first")
    args = parser.parse_args()
    setup_logging(get_settings().log_level)
    asyncio.run(_run(args.portfolio, args.from_date, args.to_date, args.with_holdings))


if __name__ == "__main__":
    main()
