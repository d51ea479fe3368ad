from __future__ import annotations

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from portfolio_ledger.services import twr
from portfolio_ledger.services.events import SnapshotTrigger
from portfolio_ledger.services.holdings import calculate_holding
from portfolio_ledger.services.prices import HistoricalPriceLookup, InMemoryPriceHistory
from portfolio_ledger.services.repositories import (
    InMemoryHoldingRepository,
    InMemorySnapshotRepository,
    InMemoryTransactionLedger,
)
from portfolio_ledger.services.snapshots import (
    PortfolioLocks,
    SnapshotInProgressError,
    SnapshotService,
    aggregate_snapshots,
    cash_flow_events,
    summarize,
)
from portfolio_ledger.services.types import CostMode, Holding, PerformanceSnapshot, Transaction, TransactionType


def _tx(tx_id, tx_type, day, quantity, total, asset_id="AAPL"):
    return Transaction(
        id=tx_id,
        portfolio_id="p1",
        asset_id=asset_id,
        type=tx_type,
        date=day,
        quantity=Decimal(str(quantity)),
        total_amount=Decimal(total),
    )


def _snapshot(day, value, twr_return="0", day_change_percent="0", interpolated=False):
    return PerformanceSnapshot(
        id=f"s-{day.isoformat()}",
        portfolio_id="p1",
        date=day,
        total_value=Decimal(value),
        total_cost=Decimal("100"),
        day_change=Decimal("0"),
        day_change_percent=Decimal(day_change_percent),
        cumulative_return=Decimal("0"),
        twr_return=Decimal(twr_return),
        holding_count=1,
        has_interpolated_prices=interpolated,
    )


def build_ledger() -> InMemoryTransactionLedger:
    return InMemoryTransactionLedger(
        [
            _tx("t1", TransactionType.BUY, date(2024, 1, 2), 10, "1000"),
            _tx("t2", TransactionType.BUY, date(2024, 1, 4), 10, "1100"),
        ]
    )


def build_prices(**kwargs) -> HistoricalPriceLookup:
    history = InMemoryPriceHistory(
        {
            "AAPL": {
                date(2024, 1, 2): "100",
                date(2024, 1, 3): "110",
                date(2024, 1, 4): "110",
                date(2024, 1, 5): "121",
            }
        }
    )
    return HistoricalPriceLookup(history, **kwargs)


def build_service(ledger=None, repo=None, prices=None, **kwargs) -> SnapshotService:
    return SnapshotService(
        ledger if ledger is not None else build_ledger(),
        repo if repo is not None else InMemorySnapshotRepository(),
        prices if prices is not None else build_prices(),
        **kwargs,
    )


class GatedLookup:
    """Blocks every price lookup until ``gate`` is set."""

    def __init__(self, delegate):
        self.delegate = delegate
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def get_price_at_date(self, asset_id, day):
        self.started.set()
        await self.gate.wait()
        return await self.delegate.get_price_at_date(asset_id, day)


class CancellingSnapshotRepository(InMemorySnapshotRepository):
    """Cancels the computing task right after storing the ``stop_after`` day."""

    def __init__(self, stop_after):
        super().__init__()
        self.stop_after = stop_after

    async def upsert(self, snapshot):
        stored = await super().upsert(snapshot)
        if snapshot.date == self.stop_after:
            asyncio.current_task().cancel()
        return stored


def test_cash_flows_count_buys_and_sells_only():
    flows = cash_flow_events(
        [
            _tx("t1", TransactionType.BUY, date(2024, 1, 2), 10, "1000"),
            _tx("t2", TransactionType.SELL, date(2024, 1, 2), 5, "600"),
            _tx("t3", TransactionType.DIVIDEND, date(2024, 1, 3), 0, "12"),
            _tx("t4", TransactionType.TRANSFER_IN, date(2024, 1, 3), 1, "100"),
        ]
    )
    assert list(flows) == [date(2024, 1, 2)]
    assert [cf.amount for cf in flows[date(2024, 1, 2)]] == [Decimal("1000"), Decimal("-600")]


async def test_one_snapshot_per_held_day():
    service = build_service()
    results = await service.compute_snapshots("p1", date(2024, 1, 1), date(2024, 1, 5))

    assert [s.date for s in results] == [date(2024, 1, d) for d in range(2, 6)]
    assert [s.total_value for s in results] == [Decimal("1000"), Decimal("1100"), Decimal("2200"), Decimal("2420")]
    assert [s.total_cost for s in results] == [Decimal("1000"), Decimal("1000"), Decimal("2100"), Decimal("2100")]
    assert all(s.holding_count == 1 for s in results)
    assert not any(s.has_interpolated_prices for s in results)


async def test_twr_chains_daily_returns_and_ignores_contributions():
    service = build_service()
    results = await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5))
    by_day = {s.date: s for s in results}

    assert by_day[date(2024, 1, 2)].twr_return == 0
    assert by_day[date(2024, 1, 2)].day_change == 0
    assert by_day[date(2024, 1, 3)].twr_return == Decimal("0.1")
    assert by_day[date(2024, 1, 3)].day_change_percent == Decimal("10")
    # the 1100 bought on the 4th is a contribution, not performance
    assert by_day[date(2024, 1, 4)].day_change == Decimal("1100")
    assert by_day[date(2024, 1, 4)].twr_return == Decimal("0.1")
    assert by_day[date(2024, 1, 5)].twr_return == Decimal("0.21")
    assert by_day[date(2024, 1, 5)].cumulative_return == Decimal("320") / Decimal("2100")


async def test_recomputation_upserts_without_duplicates():
    repo = InMemorySnapshotRepository()
    service = build_service(repo=repo)
    first = await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5))
    second = await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5))

    stored = await repo.get_range("p1", date(2024, 1, 1), date(2024, 1, 31))
    assert len(stored) == 4
    assert [s.id for s in second] == [s.id for s in first]
    assert [s.twr_return for s in second] == [s.twr_return for s in first]


async def test_incremental_recompute_seeds_from_previous_day():
    repo = InMemorySnapshotRepository()
    service = build_service(repo=repo)
    full = await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5))

    partial = await service.compute_snapshots("p1", date(2024, 1, 4), date(2024, 1, 5))

    assert [s.date for s in partial] == [date(2024, 1, 4), date(2024, 1, 5)]
    assert partial[-1].twr_return == full[-1].twr_return
    assert partial[0].day_change == full[2].day_change


async def test_days_without_holdings_are_skipped():
    ledger = InMemoryTransactionLedger(
        [
            _tx("t1", TransactionType.BUY, date(2024, 1, 2), 10, "1000"),
            _tx("t2", TransactionType.SELL, date(2024, 1, 3), 10, "1100"),
            _tx("t3", TransactionType.BUY, date(2024, 1, 5), 10, "1210"),
        ]
    )
    service = build_service(ledger=ledger)
    results = await service.compute_snapshots("p1", date(2024, 1, 1), date(2024, 1, 5))

    assert [s.date for s in results] == [date(2024, 1, 2), date(2024, 1, 5)]
    reopened = results[-1]
    assert reopened.day_change == 0
    assert reopened.day_change_percent == 0


async def test_interpolated_prices_are_flagged():
    history = InMemoryPriceHistory({"AAPL": {date(2024, 1, 2): "100", date(2024, 1, 10): "120"}})
    ledger = InMemoryTransactionLedger([_tx("t1", TransactionType.BUY, date(2024, 1, 2), 10, "1000")])
    service = build_service(ledger=ledger, prices=HistoricalPriceLookup(history))

    results = await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 8))
    flagged = [s.date for s in results if s.has_interpolated_prices]

    assert len(results) == 7
    assert flagged == [date(2024, 1, 6)]
    assert results[4].total_value == Decimal("1000")
    assert results[-1].total_value == Decimal("1200")


async def test_snapshots_before_first_transaction_are_removed():
    ledger = build_ledger()
    repo = InMemorySnapshotRepository()
    service = build_service(ledger=ledger, repo=repo)
    await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5))

    ledger.remove("t1")
    results = await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5))

    assert results[0].date == date(2024, 1, 4)
    remaining = await repo.get_range("p1", date(2024, 1, 1), date(2024, 1, 5))
    assert [s.date for s in remaining] == [date(2024, 1, 4), date(2024, 1, 5)]
    assert remaining[0].twr_return == 0


async def test_no_transactions_clears_snapshots():
    ledger = build_ledger()
    repo = InMemorySnapshotRepository()
    service = build_service(ledger=ledger, repo=repo)
    await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5))

    ledger.remove("t1")
    ledger.remove("t2")
    assert await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5)) == []
    assert await repo.get_latest("p1") is None


async def test_triggers_route_to_incremental_or_full_rebuild():
    start = date.today() - timedelta(days=5)
    ledger = InMemoryTransactionLedger([_tx("t1", TransactionType.BUY, start, 10, "1000")])
    history = InMemoryPriceHistory({"AAPL": {start + timedelta(days=i): "100" for i in range(6)}})
    repo = InMemorySnapshotRepository()
    service = build_service(ledger=ledger, repo=repo, prices=HistoricalPriceLookup(history))

    await service.handle_trigger(SnapshotTrigger.transaction_added("p1", start))
    assert repo.upsert_count == 6

    await service.handle_trigger(
        SnapshotTrigger.transaction_modified("p1", start + timedelta(days=3), start + timedelta(days=1))
    )
    assert repo.upsert_count == 6 + 5

    await service.handle_trigger(SnapshotTrigger.manual_refresh("p1"))
    assert repo.upsert_count == 6 + 5 + 6
    assert len(await repo.get_range("p1", start, date.today())) == 6


def test_trigger_requires_dates():
    with pytest.raises(ValueError):
        SnapshotTrigger("TRANSACTION_ADDED", "p1")
    with pytest.raises(ValueError):
        SnapshotTrigger("TRANSACTION_MODIFIED", "p1", old_date=date(2024, 1, 1))
    assert SnapshotTrigger.manual_refresh("p1").recompute_from is None


async def test_reject_policy_refuses_concurrent_computation():
    lookup = GatedLookup(build_prices())
    locks = PortfolioLocks()
    service = build_service(prices=lookup, concurrency_policy="reject", locks=locks)
    other = build_service(prices=lookup, concurrency_policy="reject", locks=locks)

    running = asyncio.create_task(service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5)))
    await lookup.started.wait()
    assert service.is_computing("p1")

    with pytest.raises(SnapshotInProgressError):
        await other.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5))

    lookup.gate.set()
    results = await running
    assert len(results) == 4
    assert not service.is_computing("p1")


async def test_queue_policy_serialises_computations():
    lookup = GatedLookup(build_prices())
    repo = InMemorySnapshotRepository()
    locks = PortfolioLocks()
    service = build_service(repo=repo, prices=lookup, locks=locks)

    first = asyncio.create_task(service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5)))
    await lookup.started.wait()
    second = asyncio.create_task(service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5)))
    await asyncio.sleep(0)
    assert not second.done()

    lookup.gate.set()
    first_results, second_results = await asyncio.gather(first, second)

    assert len(first_results) == len(second_results) == 4
    assert repo.upsert_count == 8
    assert len(locks) == 0


def test_unknown_concurrency_policy_rejected():
    with pytest.raises(ValueError):
        build_service(concurrency_policy="drop")


async def test_get_snapshots_validates_range():
    service = build_service()
    with pytest.raises(ValueError):
        await service.get_snapshots("p1", date(2024, 2, 1), date(2024, 1, 1))


async def test_needs_computation_tracks_staleness():
    service = build_service()
    assert await service.needs_computation("p1", today=date(2024, 1, 6))

    await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5))
    assert not await service.needs_computation("p1", today=date(2024, 1, 6))
    assert await service.needs_computation("p1", today=date(2024, 1, 7))

    empty = build_service(ledger=InMemoryTransactionLedger())
    assert not await empty.needs_computation("p1")


def test_short_ranges_are_not_aggregated():
    start = date(2024, 1, 1)
    snapshots = [_snapshot(start + timedelta(days=i), "100") for i in range(61)]
    assert aggregate_snapshots(snapshots, start, start + timedelta(days=60)) == snapshots

    sparse = snapshots[::4]
    assert aggregate_snapshots(sparse, start, start + timedelta(days=200)) == sparse


def test_medium_ranges_keep_last_snapshot_per_iso_week():
    start = date(2024, 1, 1)
    snapshots = [_snapshot(start + timedelta(days=i), "100") for i in range(201)]
    result = aggregate_snapshots(snapshots, start, start + timedelta(days=200))

    assert len(result) == 29
    assert all(s.date.isoweekday() == 7 for s in result[:-1])
    assert result[-1].date == start + timedelta(days=200)


def test_long_ranges_keep_last_snapshot_per_month():
    start = date(2023, 1, 1)
    end = start + timedelta(days=399)
    snapshots = [_snapshot(start + timedelta(days=i), "100") for i in range(400)]
    result = aggregate_snapshots(snapshots, start, end)

    # January 2023 and January 2024 are separate buckets
    assert len(result) == 14
    assert result[0].date == date(2023, 1, 31)
    assert result[12].date == date(2024, 1, 31)
    assert result[-1].date == end


def test_summary_statistics():
    snapshots = [
        _snapshot(date(2024, 1, 1), "100", twr_return="0.10"),
        _snapshot(date(2024, 1, 2), "120", twr_return="0.32", day_change_percent="20"),
        _snapshot(date(2024, 1, 3), "90", twr_return="-0.01", day_change_percent="-25", interpolated=True),
        _snapshot(date(2024, 1, 4), "130", twr_return="0.43", day_change_percent="44.4"),
    ]
    summary = summarize(list(reversed(snapshots)))

    assert summary.start_date == date(2024, 1, 1)
    assert summary.end_date == date(2024, 1, 4)
    assert summary.high_value == Decimal("130")
    assert summary.low_date == date(2024, 1, 3)
    assert summary.best_day_date == date(2024, 1, 4)
    assert summary.worst_day_percent == Decimal("-25")
    assert summary.max_drawdown_pct == Decimal("-0.25")
    assert summary.twr_return == Decimal("1.43") / Decimal("1.10") - 1
    assert summary.annualized_return == summary.twr_return
    assert summary.has_interpolated_prices
    assert summary.snapshot_count == 4


def test_summary_of_empty_series():
    summary = summarize([])
    assert summary.snapshot_count == 0
    assert summary.twr_return == 0


async def test_fifo_cost_mode_matches_holding_basis():
    ledger = InMemoryTransactionLedger(
        [
            _tx("t1", TransactionType.BUY, date(2024, 1, 1), 100, "10000"),
            _tx("t2", TransactionType.BUY, date(2024, 1, 2), 100, "20000"),
            _tx("t3", TransactionType.SELL, date(2024, 1, 3), 100, "25000"),
        ]
    )
    prices = HistoricalPriceLookup(InMemoryPriceHistory({"AAPL": {date(2024, 1, 1): "100"}}))

    fifo = build_service(ledger=ledger, prices=prices, cost_mode=CostMode.FIFO)
    *_, last = await fifo.compute_snapshots("p1", date(2024, 1, 1), date(2024, 1, 3))
    holding_basis = calculate_holding(await ledger.get_by_portfolio("p1"), CostMode.FIFO).cost_basis
    assert last.total_cost == holding_basis == Decimal("20000")

    average = build_service(ledger=ledger, prices=prices)
    *_, last = await average.compute_snapshots("p1", date(2024, 1, 1), date(2024, 1, 3))
    assert last.total_cost == Decimal("15000")


async def test_cancelled_computation_keeps_finished_days():
    repo = CancellingSnapshotRepository(stop_after=date(2024, 1, 3))
    locks = PortfolioLocks()
    service = build_service(repo=repo, locks=locks)

    task = asyncio.create_task(service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 5)))
    with pytest.raises(asyncio.CancelledError):
        await task

    stored = await repo.get_range("p1", date(2024, 1, 1), date(2024, 1, 31))
    assert [s.date for s in stored] == [date(2024, 1, 2), date(2024, 1, 3)]
    assert not service.is_computing("p1")
    assert len(locks) == 0

    # The lock is free for the next run.
    results = await service.compute_snapshots("p1", date(2024, 1, 4), date(2024, 1, 5))
    assert [s.date for s in results] == [date(2024, 1, 4), date(2024, 1, 5)]


async def test_fractional_ownership_scales_daily_value():
    holdings = InMemoryHoldingRepository()
    await holdings.upsert(
        Holding(
            id="h1",
            portfolio_id="p1",
            asset_id="AAPL",
            quantity=Decimal("10"),
            cost_basis=Decimal("1000"),
            average_cost=Decimal("100"),
            ownership_percentage=Decimal("50"),
        )
    )

    full = await build_service().compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 3))
    half = await build_service(holdings=holdings).compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 3))

    assert [s.total_value for s in full] == [Decimal("1000"), Decimal("1100")]
    assert [s.total_value for s in half] == [Decimal("500"), Decimal("550")]


async def test_lock_registry_forgets_idle_portfolios():
    locks = PortfolioLocks()
    service = build_service(locks=locks)

    await service.compute_snapshots("p1", date(2024, 1, 2), date(2024, 1, 3))
    await service.delete_snapshots("p1")

    assert "p1" not in locks
    assert len(locks) == 0


def test_summary_volatility_uses_unlinked_daily_returns():
    summary = summarize(
        [
            _snapshot(date(2024, 1, 1), "100", twr_return="0"),
            _snapshot(date(2024, 1, 2), "110", twr_return="0.1"),
            _snapshot(date(2024, 1, 3), "110", twr_return="0.1"),
        ]
    )
    assert summary.volatility == twr.annualized_volatility([Decimal("0.1"), Decimal("0")])
    assert summary.volatility > 0
    assert summarize([]).volatility == 0


async def test_trigger_missing_dates_raise_value_error():
    modified = SnapshotTrigger.transaction_modified("p1", date(2024, 1, 2), date(2024, 1, 3))
    object.__setattr__(modified, "old_date", None)
    with pytest.raises(ValueError):
        modified.recompute_from

    added = SnapshotTrigger.transaction_added("p1", date(2024, 1, 2))
    object.__setattr__(added, "date", None)
    with pytest.raises(ValueError):
        await build_service().handle_trigger(added)
