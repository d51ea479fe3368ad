"""Short-term / long-term holding period classification.

IRS Publication 550: a lot is long-term only when held for *more* than one
year. Day counts are plain calendar differences, so a lot bought on
2024-01-01 is still short-term on 2024-12-31 (365 days) and becomes
long-term on 2025-01-01 (366 days). Leap years use the same offsets.
"""

from __future__ import annotations

from datetime import date, timedelta

from .types import HoldingPeriod, as_date

LONG_TERM_MIN_DAYS = 366


def days_held(purchase_date: date, reference_date: date) -> int:
    """Return the number of calendar days between purchase and reference dates."""

    purchase = as_date(purchase_date, field_name="purchase date")
    reference = as_date(reference_date, field_name="reference date")
    if reference < purchase:
        raise ValueError("Reference date cannot be before purchase date")
    return (reference - purchase).days


def classify(purchase_date: date, reference_date: date) -> HoldingPeriod:
    """Classify a lot as short- or long-term as of ``reference_date``.

    Raises ``ValueError`` for non-date inputs or when the reference date
    precedes the purchase date.
    """

    held = days_held(purchase_date, reference_date)
    return HoldingPeriod.LONG if held >= LONG_TERM_MIN_DAYS else HoldingPeriod.SHORT


def long_term_threshold_date(purchase_date: date) -> date:
    """Return the first date on which a lot bought on ``purchase_date`` is long-term."""

    purchase = as_date(purchase_date, field_name="purchase date")
    return purchase + timedelta(days=LONG_TERM_MIN_DAYS)


def days_until_long_term(purchase_date: date, reference_date: date) -> int:
    """Days remaining until the lot turns long-term; zero once it already is."""

    held = days_held(purchase_date, reference_date)
    return max(0, LONG_TERM_MIN_DAYS - held)


__all__ = [
    "LONG_TERM_MIN_DAYS",
    "classify",
    "days_held",
    "days_until_long_term",
    "long_term_threshold_date",
]
