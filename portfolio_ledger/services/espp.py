"""ESPP qualifying / disqualifying disposition checks.

A sale is a qualifying disposition only when it happens at least two years
after the offering grant date AND at least one year after the purchase date.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum

from .types import as_date


class DispositionReason(str, Enum):
    QUALIFYING = "qualifying"
    SOLD_BEFORE_2YR_FROM_GRANT = "sold_before_2yr_from_grant"
    SOLD_BEFORE_1YR_FROM_PURCHASE = "sold_before_1yr_from_purchase"
    BOTH_REQUIREMENTS_NOT_MET = "both_requirements_not_met"


@dataclass(frozen=True)
class DispositionCheck:
    grant_date: date
    purchase_date: date
    sell_date: date
    two_years_from_grant: date
    one_year_from_purchase: date
    meets_grant_requirement: bool
    meets_purchase_requirement: bool

    @property
    def is_qualifying(self) -> bool:
        return self.meets_grant_requirement and self.meets_purchase_requirement

    @property
    def reason(self) -> DispositionReason:
        if self.is_qualifying:
            return DispositionReason.QUALIFYING
        if not self.meets_grant_requirement and not self.meets_purchase_requirement:
            return DispositionReason.BOTH_REQUIREMENTS_NOT_MET
        if not self.meets_grant_requirement:
            return DispositionReason.SOLD_BEFORE_2YR_FROM_GRANT
        return DispositionReason.SOLD_BEFORE_1YR_FROM_PURCHASE


def add_years(day: date, years: int) -> date:
    """Same calendar day ``years`` later; Feb 29 falls back to Feb 28."""

    try:
        return day.replace(year=day.year + years)
    except ValueError:
        return day.replace(year=day.year + years, day=28)


def check_disposition_status(grant_date: date, purchase_date: date, sell_date: date) -> DispositionCheck:
    grant = as_date(grant_date, field_name="grant date")
    purchase = as_date(purchase_date, field_name="purchase date")
    sell = as_date(sell_date, field_name="sell date")
    two_years_from_grant = add_years(grant, 2)
    one_year_from_purchase = add_years(purchase, 1)
    return DispositionCheck(
        grant_date=grant,
        purchase_date=purchase,
        sell_date=sell,
        two_years_from_grant=two_years_from_grant,
        one_year_from_purchase=one_year_from_purchase,
        meets_grant_requirement=sell >= two_years_from_grant,
        meets_purchase_requirement=sell >= one_year_from_purchase,
    )


def is_disqualifying_disposition(grant_date: date, purchase_date: date, sell_date: date) -> bool:
    """Return True when selling on ``sell_date`` is a disqualifying disposition.

    Raises ``ValueError`` when the grant is not before the purchase or the
    sale precedes the purchase.
    """

    grant = as_date(grant_date, field_name="grant date")
    purchase = as_date(purchase_date, field_name="purchase date")
    sell = as_date(sell_date, field_name="sell date")
    if grant >= purchase:
        raise ValueError("Grant date must be before purchase date")
    if sell < purchase:
        raise ValueError("Sell date cannot be before purchase date")
    return not check_disposition_status(grant, purchase, sell).is_qualifying


__all__ = [
    "DispositionCheck",
    "DispositionReason",
    "add_years",
    "check_disposition_status",
    "is_disqualifying_disposition",
]
