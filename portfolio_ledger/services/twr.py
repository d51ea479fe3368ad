"""Time-weighted return calculations (Modified Dietz).

Sub-period return::

    R = (EMV - BMV - CF) / (BMV + sum(CF_i * W_i))

where ``W_i`` is the share of the sub-period remaining after flow ``i``.
Sub-period returns are geometrically linked::

    TWR = (1 + R_1) * (1 + R_2) * ... * (1 + R_n) - 1

All arithmetic is Decimal; returns are fractions (0.05 == 5%).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence

from .types import HUNDRED, ONE, ZERO, CashFlowEvent, as_date

CALENDAR_DAYS_PER_YEAR = 365
MIN_DAYS_TO_ANNUALIZE = 30
TRADING_DAYS_PER_YEAR = 252


@dataclass
class TWRSubPeriod:
    start_date: date
    end_date: date
    start_value: Decimal = ZERO
    end_value: Decimal = ZERO
    cash_flows: list[CashFlowEvent] = field(default_factory=list)
    period_return: Decimal = ZERO


@dataclass
class TWRResult:
    total_return: Decimal
    annualized_return: Decimal
    start_date: date
    end_date: date
    sub_periods: list[TWRSubPeriod] = field(default_factory=list)


@dataclass(frozen=True)
class DailyValuePoint:
    date: date
    value: Decimal


def period_return(
    start_value: Decimal,
    end_value: Decimal,
    cash_flows: Iterable[CashFlowEvent],
    period_start: date,
    period_end: date,
) -> Decimal:
    """Modified Dietz return for one sub-period."""

    period_start = as_date(period_start, field_name="period start")
    period_end = as_date(period_end, field_name="period end")
    if period_end < period_start:
        raise ValueError("Period end cannot be before period start")
    if start_value == 0:
        # Nothing invested at the start of the period: no baseline to measure against.
        return ZERO

    flows = list(cash_flows)
    total_days = (period_end - period_start).days
    if total_days == 0:
        return (end_value - start_value) / start_value

    total_flow = sum((cf.amount for cf in flows), ZERO)
    weighted_flow = ZERO
    for cf in flows:
        days_remaining = (period_end - cf.date).days
        weight = Decimal(days_remaining) / Decimal(total_days)
        weighted_flow += cf.amount * weight

    denominator = start_value + weighted_flow
    if denominator == 0:
        return ZERO
    return (end_value - start_value - total_flow) / denominator


def compound(returns: Sequence[Decimal]) -> Decimal:
    """Geometrically link period returns; an empty sequence yields zero."""

    if not returns:
        return ZERO
    growth = ONE
    for r in returns:
        growth *= ONE + r
    return growth - ONE


def annualize_return(total_return: Decimal, days: int) -> Decimal:
    """Annualise ``total_return`` earned over ``days`` calendar days.

    Periods shorter than a month are returned unchanged.
    """

    if days <= 0:
        return ZERO
    if days < MIN_DAYS_TO_ANNUALIZE:
        return total_return
    growth = ONE + total_return
    if growth <= 0:
        return -ONE
    exponent = Decimal(CALENDAR_DAYS_PER_YEAR) / Decimal(days)
    return growth ** exponent - ONE


def annualized_volatility(daily_returns: Sequence[Decimal]) -> Decimal:
    """Sample standard deviation of daily returns scaled by sqrt(252).

    Fewer than two returns give zero.
    """

    count = len(daily_returns)
    if count < 2:
        return ZERO
    mean = sum(daily_returns, ZERO) / count
    variance = sum(((r - mean) ** 2 for r in daily_returns), ZERO) / (count - 1)
    return variance.sqrt() * Decimal(TRADING_DAYS_PER_YEAR).sqrt()


def simple_return(start_value: Decimal, end_value: Decimal) -> Decimal:
    if start_value == 0:
        return ZERO
    return (end_value - start_value) / start_value


def cumulative_return(total_cost: Decimal, current_value: Decimal) -> Decimal:
    """Return since inception measured against invested cost."""

    return simple_return(total_cost, current_value)


def day_change(previous_value: Decimal, current_value: Decimal) -> tuple[Decimal, Decimal]:
    """Absolute change and percent change (in percentage points)."""

    change = current_value - previous_value
    if previous_value == 0:
        return change, ZERO
    return change, change / previous_value * HUNDRED


def create_sub_periods(
    start_date: date,
    end_date: date,
    cash_flows: Sequence[CashFlowEvent],
) -> list[TWRSubPeriod]:
    """Split ``[start_date, end_date]`` at each distinct interior cash-flow date."""

    if not cash_flows:
        return [TWRSubPeriod(start_date=start_date, end_date=end_date)]

    flows = sorted(cash_flows, key=lambda cf: cf.date)
    breaks = sorted({cf.date for cf in flows if start_date < cf.date < end_date})

    sub_periods: list[TWRSubPeriod] = []
    period_start = start_date
    for break_date in breaks:
        period_flows = [cf for cf in flows if period_start <= cf.date < break_date]
        sub_periods.append(
            TWRSubPeriod(start_date=period_start, end_date=break_date, cash_flows=period_flows)
        )
        period_start = break_date

    final_flows = [cf for cf in flows if period_start <= cf.date <= end_date]
    sub_periods.append(TWRSubPeriod(start_date=period_start, end_date=end_date, cash_flows=final_flows))
    return sub_periods


def _value_at(points: Sequence[DailyValuePoint], target: date) -> Decimal:
    earlier = [p for p in points if p.date <= target]
    if earlier:
        return earlier[-1].value
    return points[0].value


def twr_from_daily_values(
    daily_values: Sequence[DailyValuePoint],
    cash_flows: Sequence[CashFlowEvent],
) -> TWRResult:
    """Time-weighted return over a daily value series with interleaved cash flows."""

    if len(daily_values) < 2:
        anchor = daily_values[0].date if daily_values else date.today()
        return TWRResult(total_return=ZERO, annualized_return=ZERO, start_date=anchor, end_date=anchor)

    points = sorted(daily_values, key=lambda p: p.date)
    start, end = points[0], points[-1]
    relevant = [cf for cf in cash_flows if start.date <= cf.date <= end.date]

    sub_periods = create_sub_periods(start.date, end.date, relevant)
    returns: list[Decimal] = []
    for index, period in enumerate(sub_periods):
        period.start_value = start.value if index == 0 else _value_at(points, period.start_date)
        period.end_value = end.value if index == len(sub_periods) - 1 else _value_at(points, period.end_date)
        period.period_return = period_return(
            period.start_value,
            period.end_value,
            period.cash_flows,
            period.start_date,
            period.end_date,
        )
        returns.append(period.period_return)

    total = compound(returns)
    days = (end.date - start.date).days
    return TWRResult(
        total_return=total,
        annualized_return=annualize_return(total, days),
        start_date=start.date,
        end_date=end.date,
        sub_periods=sub_periods,
    )


__all__ = [
    "DailyValuePoint",
    "TWRSubPeriod",
    "TWRResult",
    "period_return",
    "compound",
    "annualize_return",
    "annualized_volatility",
    "simple_return",
    "cumulative_return",
    "day_change",
    "create_sub_periods",
    "twr_from_daily_values",
]
