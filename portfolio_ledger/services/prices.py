"""Historical price lookup for valuations.

``HistoricalPriceLookup`` resolves a price for any calendar day from the
observations a ``PriceHistorySource`` holds: an exact observation is used
as-is, otherwise the nearest observation is used (earlier wins ties) and the
result is flagged once the gap exceeds the configured threshold.

Caching is explicit: callers construct a ``PriceCache``, wrap a lookup in
``CachingPriceLookup`` for the duration of one computation and clear it
afterwards.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Mapping, MutableMapping, Protocol

from .types import ZERO, PriceLookupResult, as_date, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_INTERPOLATION_THRESHOLD_DAYS = 3


@dataclass(frozen=True)
class PricePoint:
    date: date
    price: Decimal


class PriceLookup(Protocol):
    """Best-effort price for an asset on a calendar day."""

    async def get_price_at_date(self, asset_id: str, day: date) -> PriceLookupResult:
        ...


class PriceHistorySource(Protocol):
    """Stored price observations."""

    async def nearest_observations(
        self, asset_id: str, day: date
    ) -> tuple[PricePoint | None, PricePoint | None]:
        """Return the latest observation on or before ``day`` and the earliest after it."""
        ...


class InMemoryPriceHistory:
    """Simple price history for tests and examples."""

    def __init__(self, prices: Mapping[str, Mapping[date, Decimal | str | int]] | None = None):
        self._dates: Dict[str, list[date]] = {}
        self._prices: Dict[str, Dict[date, Decimal]] = {}
        for asset_id, series in (prices or {}).items():
            for day, price in series.items():
                self.add(asset_id, day, price)

    def add(self, asset_id: str, day: date, price: Decimal | str | int) -> None:
        day = as_date(day, field_name="price date")
        series = self._prices.setdefault(asset_id, {})
        dates = self._dates.setdefault(asset_id, [])
        if day not in series:
            bisect.insort(dates, day)
        series[day] = to_decimal(price, field_name="price")

    async def nearest_observations(
        self, asset_id: str, day: date
    ) -> tuple[PricePoint | None, PricePoint | None]:
        dates = self._dates.get(asset_id, [])
        series = self._prices.get(asset_id, {})
        index = bisect.bisect_right(dates, day)
        before = PricePoint(dates[index - 1], series[dates[index - 1]]) if index > 0 else None
        after = PricePoint(dates[index], series[dates[index]]) if index < len(dates) else None
        return before, after


class HistoricalPriceLookup:
    """Carry-forward price lookup over a ``PriceHistorySource``."""

    def __init__(
        self,
        history: PriceHistorySource,
        *,
        interpolation_threshold_days: int = DEFAULT_INTERPOLATION_THRESHOLD_DAYS,
    ):
        if interpolation_threshold_days < 0:
            raise ValueError("interpolation_threshold_days must be >= 0")
        self.history = history
        self.interpolation_threshold_days = interpolation_threshold_days

    async def get_price_at_date(self, asset_id: str, day: date) -> PriceLookupResult:
        day = as_date(day, field_name="price date")
        before, after = await self.history.nearest_observations(asset_id, day)

        if before is not None and before.date == day:
            return PriceLookupResult(price=before.price, is_interpolated=False)

        nearest: PricePoint | None
        if before is None:
            nearest = after
        elif after is None:
            nearest = before
        else:
            nearest = before if (day - before.date) <= (after.date - day) else after

        if nearest is None:
            logger.warning("No price history for %s; valuing at zero on %s", asset_id, day)
            return PriceLookupResult(price=ZERO, is_interpolated=True)

        gap = abs((day - nearest.date).days)
        if gap > self.interpolation_threshold_days:
            logger.debug("Price for %s on %s taken from %s (%s days away)", asset_id, day, nearest.date, gap)
            return PriceLookupResult(price=nearest.price, is_interpolated=True)
        return PriceLookupResult(price=nearest.price, is_interpolated=False)


class PriceCache:
    """Per-computation memo of resolved prices keyed by (asset, day)."""

    def __init__(self):
        self._entries: MutableMapping[tuple[str, date], PriceLookupResult] = {}
        self.hits = 0
        self.misses = 0

    def get(self, asset_id: str, day: date) -> PriceLookupResult | None:
        result = self._entries.get((asset_id, day))
        if result is None:
            self.misses += 1
        else:
            self.hits += 1
        return result

    def put(self, asset_id: str, day: date, result: PriceLookupResult) -> None:
        self._entries[(asset_id, day)] = result

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)


class CachingPriceLookup:
    """Cache wrapper to avoid resolving the same (asset, day) twice."""

    def __init__(self, delegate: PriceLookup, cache: PriceCache):
        self.delegate = delegate
        self.cache = cache

    async def get_price_at_date(self, asset_id: str, day: date) -> PriceLookupResult:
        cached = self.cache.get(asset_id, day)
        if cached is not None:
            return cached
        result = await self.delegate.get_price_at_date(asset_id, day)
        self.cache.put(asset_id, day, result)
        return result


__all__ = [
    "DEFAULT_INTERPOLATION_THRESHOLD_DAYS",
    "PricePoint",
    "PriceLookup",
    "PriceHistorySource",
    "InMemoryPriceHistory",
    "HistoricalPriceLookup",
    "PriceCache",
    "CachingPriceLookup",
]
