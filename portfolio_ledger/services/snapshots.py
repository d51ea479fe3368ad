"""Daily performance snapshot computation.

For each calendar day the portfolio's positions are replayed from the
transaction ledger, valued through the price lookup and stored as one
``PerformanceSnapshot`` per (portfolio, day). TWR-to-date chains each day's
Modified Dietz return onto the previous day's cumulative TWR, so days are
processed strictly in order; prices within a day are fetched concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import AsyncIterator, Dict, Literal, Sequence

from opentelemetry import metrics, trace

from . import twr
from .events import SnapshotTrigger, SnapshotTriggerType
from .holdings import Position, calculate_holding, sort_transactions
from .prices import CachingPriceLookup, PriceCache, PriceLookup
from .repositories import HoldingRepository, SnapshotRepository, TransactionLedger
from .types import (
    HUNDRED,
    ONE,
    ZERO,
    CashFlowEvent,
    CostMode,
    PerformanceSnapshot,
    Transaction,
    TransactionType,
    as_date,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)
meter = metrics.get_meter(__name__)

snapshots_written = meter.create_counter(
    "ledger.snapshots.written", unit="{snapshot}", description="Snapshots upserted by computations"
)
interpolated_snapshots = meter.create_counter(
    "ledger.snapshots.interpolated",
    unit="{snapshot}",
    description="Snapshots valued with at least one interpolated price",
)
computation_duration = meter.create_histogram(
    "ledger.snapshots.duration", unit="s", description="Wall time of one snapshot computation"
)
rejected_computations = meter.create_counter(
    "ledger.snapshots.rejected", unit="{computation}", description="Computations refused under the reject policy"
)

ConcurrencyPolicy = Literal["queue", "reject"]

AGGREGATION_MAX_POINTS = 90
STALE_AFTER_DAYS = 1


class SnapshotInProgressError(RuntimeError):
    """Raised under the ``reject`` policy when a computation is already running."""

    def __init__(self, portfolio_id: str):
        super().__init__(f"Snapshot computation already running for portfolio {portfolio_id}")
        self.portfolio_id = portfolio_id


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class PortfolioLocks:
    """Process-wide per-portfolio locks.

    An entry lives only while some task holds or waits for it, so the
    registry does not grow with every portfolio ever computed.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, portfolio_id: object) -> bool:
        return portfolio_id in self._entries

    def is_locked(self, portfolio_id: str) -> bool:
        entry = self._entries.get(portfolio_id)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def hold(self, portfolio_id: str) -> AsyncIterator[None]:
        entry = self._entries.setdefault(portfolio_id, _LockEntry())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(portfolio_id) is entry:
                del self._entries[portfolio_id]


@dataclass
class PerformanceSummary:
    start_date: date | None = None
    end_date: date | None = None
    start_value: Decimal | None = None
    end_value: Decimal | None = None
    high_date: date | None = None
    high_value: Decimal | None = None
    low_date: date | None = None
    low_value: Decimal | None = None
    best_day_date: date | None = None
    best_day_percent: Decimal | None = None
    worst_day_date: date | None = None
    worst_day_percent: Decimal | None = None
    max_drawdown_pct: Decimal | None = None
    twr_return: Decimal = ZERO
    annualized_return: Decimal = ZERO
    volatility: Decimal = ZERO
    snapshot_count: int = 0
    has_interpolated_prices: bool = False


def cash_flow_events(transactions: Sequence[Transaction]) -> Dict[date, list[CashFlowEvent]]:
    """External flows keyed by day: buys contribute, sells withdraw."""

    flows: Dict[date, list[CashFlowEvent]] = {}
    for tx in transactions:
        if tx.type == TransactionType.BUY:
            amount = tx.total_amount
        elif tx.type == TransactionType.SELL:
            amount = -tx.total_amount
        else:
            continue
        flows.setdefault(tx.date, []).append(CashFlowEvent(date=tx.date, amount=amount))
    return flows


def _owned_value(value: Decimal, ownership_percentage: Decimal | None) -> Decimal:
    if ownership_percentage is None:
        return value
    return value * ownership_percentage / HUNDRED


def _iter_days(start: date, end: date):
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def aggregate_snapshots(
    snapshots: Sequence[PerformanceSnapshot],
    start: date,
    end: date,
    *,
    weekly_min_days: int = 90,
    monthly_min_days: int = 365,
) -> list[PerformanceSnapshot]:
    """Downsample to the last snapshot per ISO week or calendar month."""

    ordered = sorted(snapshots, key=lambda s: s.date)
    days = (end - start).days
    if days <= weekly_min_days or len(ordered) <= AGGREGATION_MAX_POINTS:
        return ordered

    if days <= monthly_min_days:
        def bucket(day: date) -> tuple[int, int]:
            iso = day.isocalendar()
            return iso[0], iso[1]
    else:
        def bucket(day: date) -> tuple[int, int]:
            return day.year, day.month

    last_per_bucket: Dict[tuple[int, int], PerformanceSnapshot] = {}
    for snapshot in ordered:
        last_per_bucket[bucket(snapshot.date)] = snapshot
    return sorted(last_per_bucket.values(), key=lambda s: s.date)


def summarize(snapshots: Sequence[PerformanceSnapshot]) -> PerformanceSummary:
    """Period statistics over a snapshot series."""

    ordered = sorted(snapshots, key=lambda s: s.date)
    if not ordered:
        return PerformanceSummary()

    first, last = ordered[0], ordered[-1]
    summary = PerformanceSummary(
        start_date=first.date,
        end_date=last.date,
        start_value=first.total_value,
        end_value=last.total_value,
        snapshot_count=len(ordered),
        has_interpolated_prices=any(s.has_interpolated_prices for s in ordered),
    )

    high = max(ordered, key=lambda s: s.total_value)
    low = min(ordered, key=lambda s: s.total_value)
    summary.high_date, summary.high_value = high.date, high.total_value
    summary.low_date, summary.low_value = low.date, low.total_value

    movers = ordered[1:]
    if movers:
        best = max(movers, key=lambda s: s.day_change_percent)
        worst = min(movers, key=lambda s: s.day_change_percent)
        summary.best_day_date, summary.best_day_percent = best.date, best.day_change_percent
        summary.worst_day_date, summary.worst_day_percent = worst.date, worst.day_change_percent

    peak = None
    max_drawdown = ZERO
    for snapshot in ordered:
        if peak is None or snapshot.total_value > peak:
            peak = snapshot.total_value
        if peak:
            drawdown = (snapshot.total_value - peak) / peak
            if drawdown < max_drawdown:
                max_drawdown = drawdown
    summary.max_drawdown_pct = max_drawdown

    # The first snapshot's TWR is the baseline for the window.
    baseline = 1 + first.twr_return
    if baseline != 0:
        summary.twr_return = (1 + last.twr_return) / baseline - 1
    summary.annualized_return = twr.annualize_return(summary.twr_return, (last.date - first.date).days)
    summary.volatility = twr.annualized_volatility(_daily_returns(ordered))
    return summary


def _daily_returns(ordered: Sequence[PerformanceSnapshot]) -> list[Decimal]:
    """Flow-neutral return between consecutive snapshots, unlinked from the TWR chain."""

    returns: list[Decimal] = []
    for prev, current in zip(ordered, ordered[1:]):
        base = ONE + prev.twr_return
        if base != 0:
            returns.append((ONE + current.twr_return) / base - ONE)
    return returns


class SnapshotService:
    """Computes and serves daily performance snapshots for portfolios."""

    def __init__(
        self,
        ledger: TransactionLedger,
        snapshots: SnapshotRepository,
        prices: PriceLookup,
        *,
        concurrency_policy: ConcurrencyPolicy = "queue",
        weekly_aggregation_min_days: int = 90,
        monthly_aggregation_min_days: int = 365,
        cost_mode: CostMode = CostMode.AVERAGE_COST,
        holdings: HoldingRepository | None = None,
        locks: PortfolioLocks | None = None,
    ):
        if concurrency_policy not in ("queue", "reject"):
            raise ValueError(f"Unknown concurrency policy: {concurrency_policy!r}")
        self.ledger = ledger
        self.snapshots = snapshots
        self.prices = prices
        self.concurrency_policy = concurrency_policy
        self.weekly_aggregation_min_days = weekly_aggregation_min_days
        self.monthly_aggregation_min_days = monthly_aggregation_min_days
        self.cost_mode = CostMode(cost_mode)
        # Stored holdings only supply ownership percentages for valuation.
        self.holdings = holdings
        # Shared across instances when callers build one service per request.
        self._locks = locks if locks is not None else PortfolioLocks()

    def is_computing(self, portfolio_id: str) -> bool:
        return self._locks.is_locked(portfolio_id)

    @asynccontextmanager
    async def _exclusive(self, portfolio_id: str) -> AsyncIterator[None]:
        if self._locks.is_locked(portfolio_id):
            if self.concurrency_policy == "reject":
                rejected_computations.add(1)
                raise SnapshotInProgressError(portfolio_id)
            logger.debug("Queueing snapshot computation for %s behind running job", portfolio_id)
        async with self._locks.hold(portfolio_id):
            yield

    async def compute_snapshots(
        self,
        portfolio_id: str,
        from_date: date,
        to_date: date | None = None,
    ) -> list[PerformanceSnapshot]:
        """Compute and upsert one snapshot per held day in ``[from_date, to_date]``."""

        from_day = as_date(from_date, field_name="from date")
        to_day = as_date(to_date, field_name="to date") if to_date is not None else date.today()
        async with self._exclusive(portfolio_id):
            return await self._compute(portfolio_id, from_day, to_day)

    async def recompute_all(self, portfolio_id: str) -> list[PerformanceSnapshot]:
        """Delete every snapshot and rebuild from the earliest transaction to today."""

        async with self._exclusive(portfolio_id):
            removed = await self.snapshots.delete_all_for_portfolio(portfolio_id)
            logger.info("Deleted %s snapshots for %s before full recompute", removed, portfolio_id)
            transactions = await self.ledger.get_by_portfolio(portfolio_id)
            if not transactions:
                return []
            earliest = min(tx.date for tx in transactions)
            return await self._compute(portfolio_id, earliest, date.today())

    async def _compute(self, portfolio_id: str, from_day: date, to_day: date) -> list[PerformanceSnapshot]:
        with tracer.start_as_current_span("snapshots.compute") as span:
            span.set_attribute("portfolio.id", portfolio_id)
            span.set_attribute("snapshots.from", from_day.isoformat())
            span.set_attribute("snapshots.to", to_day.isoformat())

            transactions = sort_transactions(await self.ledger.get_by_portfolio(portfolio_id))
            if not transactions:
                removed = await self.snapshots.delete_all_for_portfolio(portfolio_id)
                logger.info("Portfolio %s has no transactions; removed %s snapshots", portfolio_id, removed)
                return []

            effective_from = max(from_day, transactions[0].date)
            if from_day < effective_from:
                await self.snapshots.delete_range(portfolio_id, from_day, effective_from - timedelta(days=1))
            if effective_from > to_day:
                return []

            ownership = await self._ownership(portfolio_id)
            cache = PriceCache()
            lookup = CachingPriceLookup(self.prices, cache)
            started = time.perf_counter()
            try:
                results = await self._fold_days(
                    portfolio_id, transactions, effective_from, to_day, lookup, ownership
                )
            finally:
                computation_duration.record(time.perf_counter() - started)
                span.set_attribute("prices.cache_hits", cache.hits)
                cache.clear()

            interpolated = sum(1 for s in results if s.has_interpolated_prices)
            snapshots_written.add(len(results))
            if interpolated:
                interpolated_snapshots.add(interpolated)
            span.set_attribute("snapshots.count", len(results))
            span.set_attribute("snapshots.interpolated", interpolated)
            logger.info(
                "Computed %s snapshots for %s between %s and %s",
                len(results),
                portfolio_id,
                effective_from,
                to_day,
            )
            return results

    async def _ownership(self, portfolio_id: str) -> Dict[str, Decimal]:
        if self.holdings is None:
            return {}
        return {
            holding.asset_id: holding.ownership_percentage
            for holding in await self.holdings.list_by_portfolio(portfolio_id)
            if holding.ownership_percentage is not None
        }

    def _total_cost(
        self,
        positions: Dict[str, Position],
        applied: Dict[str, list[Transaction]],
        lot_costs: Dict[str, Decimal],
    ) -> Decimal:
        if self.cost_mode != CostMode.FIFO:
            return sum((pos.cost_basis for pos in positions.values()), ZERO)
        # Lot-based basis per asset, rebuilt only for assets that traded since the last day.
        for asset_id, asset_transactions in applied.items():
            if asset_id not in lot_costs:
                lot_costs[asset_id] = calculate_holding(asset_transactions, CostMode.FIFO).cost_basis
        return sum(lot_costs.values(), ZERO)

    async def _fold_days(
        self,
        portfolio_id: str,
        transactions: list[Transaction],
        start: date,
        end: date,
        lookup: PriceLookup,
        ownership: Dict[str, Decimal],
    ) -> list[PerformanceSnapshot]:
        previous = await self.snapshots.get_latest_before(portfolio_id, start)
        has_history = previous is not None
        previous_twr = previous.twr_return if previous is not None else ZERO
        previous_value = (
            previous.total_value
            if previous is not None and previous.date == start - timedelta(days=1)
            else ZERO
        )

        flows_by_day = cash_flow_events(transactions)
        positions: Dict[str, Position] = {}
        applied: Dict[str, list[Transaction]] = {}
        lot_costs: Dict[str, Decimal] = {}
        cursor = 0
        results: list[PerformanceSnapshot] = []

        for day in _iter_days(start, end):
            while cursor < len(transactions) and transactions[cursor].date <= day:
                tx = transactions[cursor]
                positions.setdefault(tx.asset_id, Position()).apply(tx)
                applied.setdefault(tx.asset_id, []).append(tx)
                lot_costs.pop(tx.asset_id, None)
                cursor += 1

            held = {asset_id: pos.quantity for asset_id, pos in positions.items() if pos.quantity > 0}
            if not held:
                await self.snapshots.delete_range(portfolio_id, day, day)
                previous_value = ZERO
                await asyncio.sleep(0)
                continue

            asset_ids = sorted(held)
            quotes = await asyncio.gather(*(lookup.get_price_at_date(asset_id, day) for asset_id in asset_ids))
            total_value = sum(
                (_owned_value(held[a] * q.price, ownership.get(a)) for a, q in zip(asset_ids, quotes)),
                ZERO,
            )
            interpolated = any(q.is_interpolated for q in quotes)
            total_cost = self._total_cost(positions, applied, lot_costs)

            if previous_value == 0:
                day_change, day_change_percent = ZERO, ZERO
            else:
                day_change, day_change_percent = twr.day_change(previous_value, total_value)

            if not has_history:
                twr_return = ZERO
            else:
                day_return = twr.period_return(
                    previous_value,
                    total_value,
                    flows_by_day.get(day, []),
                    day - timedelta(days=1),
                    day,
                )
                twr_return = twr.compound([previous_twr, day_return])

            now = datetime.utcnow()
            snapshot = PerformanceSnapshot(
                id=uuid.uuid4().hex,
                portfolio_id=portfolio_id,
                date=day,
                total_value=total_value,
                total_cost=total_cost,
                day_change=day_change,
                day_change_percent=day_change_percent,
                cumulative_return=twr.cumulative_return(total_cost, total_value),
                twr_return=twr_return,
                holding_count=len(held),
                has_interpolated_prices=interpolated,
                created_at=now,
                updated_at=now,
            )
            results.append(await self.snapshots.upsert(snapshot))

            has_history = True
            previous_value = total_value
            previous_twr = twr_return
            # Let a cancelled caller abandon the run between days.
            await asyncio.sleep(0)

        return results

    async def get_snapshots(self, portfolio_id: str, start_date: date, end_date: date) -> list[PerformanceSnapshot]:
        start = as_date(start_date, field_name="start date")
        end = as_date(end_date, field_name="end date")
        if start > end:
            raise ValueError("start_date cannot be after end_date")
        return await self.snapshots.get_range(portfolio_id, start, end)

    async def get_latest_snapshot(self, portfolio_id: str) -> PerformanceSnapshot | None:
        return await self.snapshots.get_latest(portfolio_id)

    async def delete_snapshots(self, portfolio_id: str) -> int:
        async with self._exclusive(portfolio_id):
            return await self.snapshots.delete_all_for_portfolio(portfolio_id)

    async def get_aggregated_snapshots(
        self, portfolio_id: str, start_date: date, end_date: date
    ) -> list[PerformanceSnapshot]:
        snapshots = await self.get_snapshots(portfolio_id, start_date, end_date)
        return aggregate_snapshots(
            snapshots,
            as_date(start_date),
            as_date(end_date),
            weekly_min_days=self.weekly_aggregation_min_days,
            monthly_min_days=self.monthly_aggregation_min_days,
        )

    async def needs_computation(self, portfolio_id: str, today: date | None = None) -> bool:
        """True when the portfolio has transactions but no recent snapshot."""

        transactions = await self.ledger.get_by_portfolio(portfolio_id)
        if not transactions:
            return False
        latest = await self.snapshots.get_latest(portfolio_id)
        if latest is None:
            return True
        reference = today or date.today()
        return (reference - latest.date).days > STALE_AFTER_DAYS

    async def handle_trigger(self, event: SnapshotTrigger) -> list[PerformanceSnapshot]:
        """Route a ledger mutation event to an incremental or full recomputation."""

        logger.debug("Snapshot trigger %s for %s", event.type.value, event.portfolio_id)
        if event.type == SnapshotTriggerType.MANUAL_REFRESH:
            return await self.recompute_all(event.portfolio_id)
        from_day = event.recompute_from
        if from_day is None:
            raise ValueError(f"{event.type.value} trigger has no recompute date")
        return await self.compute_snapshots(event.portfolio_id, from_day)


__all__ = [
    "SnapshotInProgressError",
    "SnapshotService",
    "PerformanceSummary",
    "PortfolioLocks",
    "aggregate_snapshots",
    "cash_flow_events",
    "summarize",
]
