from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from portfolio_ledger.services.espp import DispositionReason
from portfolio_ledger.services.tax_lots import (
    analyze_lot,
    calculate_sale_allocations,
    detect_aging_lots,
    estimate_for_holding,
    estimate_tax_liability,
    find_tax_loss_harvesting_opportunities,
    round_currency,
)
from portfolio_ledger.services.types import Holding, HoldingPeriod, LotSelection, LotType, TaxLot, TaxSettings

PURCHASED = date(2024, 1, 1)
SETTINGS = TaxSettings(short_term_rate=Decimal("0.24"), long_term_rate=Decimal("0.15"))


def _holding(asset_id, lots, holding_id=None):
    quantity = sum((lot.remaining_quantity for lot in lots), Decimal("0"))
    basis = sum((lot.purchase_price * lot.remaining_quantity for lot in lots), Decimal("0"))
    return Holding(
        id=holding_id or f"h-{asset_id}",
        portfolio_id="p1",
        asset_id=asset_id,
        quantity=quantity,
        cost_basis=basis,
        average_cost=basis / quantity if quantity else Decimal("0"),
        lots=lots,
    )


def _lot(lot_id, quantity, price, purchased=PURCHASED, sold="0", **extra):
    return TaxLot(
        id=lot_id,
        quantity=Decimal(str(quantity)),
        purchase_price=Decimal(price),
        purchase_date=purchased,
        sold_quantity=Decimal(sold),
        **extra,
    )


def test_short_term_gain_is_taxed_at_short_term_rate():
    holding = _holding("AAPL", [_lot("l1", 100, "120")])
    estimate = estimate_for_holding(holding, Decimal("150"), SETTINGS, PURCHASED + timedelta(days=200))

    [lot] = estimate.lots
    assert lot.holding_period == HoldingPeriod.SHORT
    assert lot.unrealized_gain == Decimal("3000")
    assert estimate.short_term_gains == Decimal("3000")
    assert estimate.estimated_st_tax == Decimal("720.00")
    assert estimate.estimated_lt_tax == 0


def test_long_term_gain_is_taxed_at_long_term_rate():
    holding = _holding("AAPL", [_lot("l1", 100, "120")])
    estimate = estimate_for_holding(holding, Decimal("150"), SETTINGS, PURCHASED + timedelta(days=400))

    assert estimate.lots[0].holding_period == HoldingPeriod.LONG
    assert estimate.long_term_gains == Decimal("3000")
    assert estimate.estimated_lt_tax == Decimal("450.00")
    assert estimate.total_estimated_tax == Decimal("450.00")


def test_gains_and_losses_are_not_netted():
    holdings = [
        _holding("AAPL", [_lot("l1", 100, "120")]),
        _holding("MSFT", [_lot("l2", 50, "130")]),
    ]
    estimate = estimate_tax_liability(
        holdings,
        {"AAPL": Decimal("150"), "MSFT": Decimal("100")},
        SETTINGS,
        asset_symbols={"AAPL": "Apple"},
        reference_date=PURCHASED + timedelta(days=200),
    )

    assert estimate.short_term_gains == Decimal("3000")
    assert estimate.short_term_losses == Decimal("1500")
    assert estimate.total_unrealized_gain == Decimal("3000")
    assert estimate.total_unrealized_loss == Decimal("1500")
    assert estimate.net_unrealized_gain == Decimal("1500")
    # tax on gross short-term gains, losses do not offset
    assert estimate.estimated_st_tax == Decimal("720.00")
    assert [lot.asset_symbol for lot in estimate.lots] == ["Apple", "MSFT"]


def test_lots_split_across_holding_periods():
    holding = _holding(
        "AAPL",
        [
            _lot("old", 10, "100", purchased=date(2022, 6, 1)),
            _lot("new", 10, "100", purchased=date(2024, 6, 1)),
        ],
    )
    estimate = estimate_for_holding(holding, Decimal("110"), SETTINGS, date(2024, 7, 1))
    assert estimate.long_term_gains == Decimal("100")
    assert estimate.short_term_gains == Decimal("100")
    assert estimate.estimated_lt_tax == Decimal("15.00")
    assert estimate.estimated_st_tax == Decimal("24.00")


def test_espp_lot_reports_adjusted_basis():
    lot = _lot("espp", 100, "50", lot_type=LotType.ESPP, grant_date=date(2023, 7, 1), bargain_element=Decimal("15"))
    analysis = analyze_lot(lot, "ACME", Decimal("70"), PURCHASED + timedelta(days=30))

    assert analysis.cost_basis == Decimal("5000")
    assert analysis.adjusted_cost_basis == Decimal("6500")
    assert analysis.unrealized_gain == Decimal("2000")
    assert analysis.taxable_gain == Decimal("500")
    assert analysis.grant_date == date(2023, 7, 1)


def test_espp_taxable_gain_feeds_the_buckets():
    lot = _lot("espp", 100, "50", lot_type=LotType.ESPP, bargain_element=Decimal("15"))
    estimate = estimate_for_holding(_holding("ACME", [lot]), Decimal("60"), SETTINGS, PURCHASED + timedelta(days=30))

    assert estimate.total_unrealized_gain == Decimal("1000")
    assert estimate.short_term_gains == 0
    assert estimate.short_term_losses == Decimal("500")
    assert estimate.estimated_st_tax == 0


def test_sold_lots_and_unpriced_holdings_are_skipped():
    holdings = [
        _holding("AAPL", [_lot("gone", 10, "100", sold="10"), _lot("open", 10, "100", sold="4")]),
        _holding("MSFT", [_lot("m1", 10, "100")]),
    ]
    estimate = estimate_tax_liability(
        holdings, {"AAPL": Decimal("110")}, SETTINGS, reference_date=PURCHASED + timedelta(days=10)
    )

    assert [lot.lot_id for lot in estimate.lots] == ["open"]
    assert estimate.lots[0].quantity == Decimal("6")
    assert estimate.skipped_asset_ids == ["MSFT"]
    assert estimate.short_term_gains == Decimal("60")


def test_tax_is_rounded_half_up_to_cents():
    assert round_currency(Decimal("0.125")) == Decimal("0.13")
    assert round_currency(Decimal("10.004")) == Decimal("10.00")


@pytest.mark.parametrize("rate", [Decimal("-0.01"), Decimal("1.5")])
def test_tax_settings_rates_are_bounded(rate):
    with pytest.raises(ValueError):
        TaxSettings(short_term_rate=rate, long_term_rate=Decimal("0.15"))


def test_lot_purchased_after_reference_date_is_rejected():
    with pytest.raises(ValueError):
        analyze_lot(_lot("future", 1, "10", purchased=date(2025, 1, 1)), "X", Decimal("10"), date(2024, 1, 1))


def test_detect_aging_lots_orders_by_days_remaining():
    reference = date(2025, 1, 1)
    holdings = [
        _holding(
            "AAPL",
            [
                _lot("soon", 10, "100", purchased=reference - timedelta(days=350)),
                _lot("later", 10, "100", purchased=reference - timedelta(days=300)),
                _lot("already-long", 10, "100", purchased=reference - timedelta(days=400)),
            ],
        ),
        _holding("MSFT", [_lot("sooner", 5, "200", purchased=reference - timedelta(days=360))]),
        _holding("TSLA", [_lot("unpriced", 5, "200", purchased=reference - timedelta(days=360))]),
    ]
    aging = detect_aging_lots(
        holdings,
        {"AAPL": Decimal("120"), "MSFT": Decimal("150")},
        lookback_days=30,
        reference_date=reference,
    )

    assert [(a.lot_id, a.days_until_long_term) for a in aging] == [("sooner", 6), ("soon", 16)]
    msft = aging[0]
    assert msft.unrealized_gain == Decimal("-250")
    assert msft.unrealized_gain_percent == Decimal("-25")
    assert aging[1].current_value == Decimal("1200")


def test_detect_aging_lots_rejects_negative_lookback():
    with pytest.raises(ValueError):
        detect_aging_lots([], {}, lookback_days=-1)


def test_espp_analysis_reports_disposition_status():
    lot = _lot(
        "espp",
        10,
        "50",
        purchased=date(2023, 1, 31),
        lot_type=LotType.ESPP,
        grant_date=date(2022, 8, 1),
        bargain_element=Decimal("5"),
    )

    early = analyze_lot(lot, "ACME", Decimal("70"), date(2024, 1, 15))
    assert early.disposition == DispositionReason.BOTH_REQUIREMENTS_NOT_MET
    assert early.is_qualifying_disposition is False

    after_purchase_year = analyze_lot(lot, "ACME", Decimal("70"), date(2024, 3, 1))
    assert after_purchase_year.disposition == DispositionReason.SOLD_BEFORE_2YR_FROM_GRANT

    qualifying = analyze_lot(lot, "ACME", Decimal("70"), date(2024, 8, 1))
    assert qualifying.disposition == DispositionReason.QUALIFYING
    assert qualifying.is_qualifying_disposition is True

    standard = analyze_lot(_lot("plain", 10, "50"), "ACME", Decimal("70"), date(2024, 3, 1))
    assert standard.disposition is None
    assert standard.is_qualifying_disposition is None


def _sale_lots():
    return [
        _lot("a", 10, "100", purchased=date(2023, 1, 2)),
        _lot("b", 10, "150", purchased=date(2024, 3, 1)),
        _lot("c", 10, "120", purchased=date(2024, 5, 1)),
    ]


@pytest.mark.parametrize(
    "selection, expected",
    [
        (LotSelection.FIFO, [("a", "10", "400", HoldingPeriod.LONG), ("b", "5", "-50", HoldingPeriod.SHORT)]),
        (LotSelection.LIFO, [("c", "10", "200", HoldingPeriod.SHORT), ("b", "5", "-50", HoldingPeriod.SHORT)]),
        (LotSelection.HIFO, [("b", "10", "-100", HoldingPeriod.SHORT), ("c", "5", "100", HoldingPeriod.SHORT)]),
    ],
)
def test_sale_allocations_follow_lot_selection(selection, expected):
    lots = _sale_lots()
    allocations = calculate_sale_allocations(lots, Decimal("15"), Decimal("140"), date(2024, 6, 3), selection)

    assert [
        (a.lot_id, a.quantity, a.realized_gain, a.holding_period) for a in allocations
    ] == [(lot_id, Decimal(qty), Decimal(gain), period) for lot_id, qty, gain, period in expected]
    # planning a sale leaves the lots untouched
    assert all(lot.sold_quantity == 0 for lot in lots)


def test_sale_allocations_stop_at_open_quantity():
    allocations = calculate_sale_allocations(_sale_lots(), Decimal("40"), Decimal("140"), date(2024, 6, 3))
    assert sum(a.quantity for a in allocations) == Decimal("30")
    assert sum(a.proceeds for a in allocations) == Decimal("4200")

    with pytest.raises(ValueError):
        calculate_sale_allocations(_sale_lots(), Decimal("0"), Decimal("140"), date(2024, 6, 3))


def test_tax_loss_harvesting_ranks_holdings_by_loss():
    holdings = [
        _holding("AAPL", [_lot("l1", 10, "150", purchased=date(2024, 3, 1)), _lot("l2", 10, "90")]),
        _holding("MSFT", [_lot("m1", 10, "300", purchased=date(2022, 1, 3))]),
        _holding("TSLA", [_lot("t1", 1, "110")]),
        _holding("XYZ", [_lot("x1", 10, "500")]),
    ]
    opportunities = find_tax_loss_harvesting_opportunities(
        holdings,
        {"AAPL": Decimal("100"), "MSFT": Decimal("200"), "TSLA": Decimal("100")},
        reference_date=date(2024, 6, 3),
    )

    assert [o.asset_id for o in opportunities] == ["MSFT", "AAPL"]
    msft, aapl = opportunities
    assert msft.long_term_loss == Decimal("1000")
    assert msft.short_term_loss == 0
    assert aapl.short_term_loss == Decimal("500")
    assert aapl.unrealized_loss == Decimal("500")
    assert aapl.lot_ids == ["l1"]

    assert find_tax_loss_harvesting_opportunities(
        holdings, {"AAPL": Decimal("100")}, minimum_loss=Decimal("600"), reference_date=date(2024, 6, 3)
    ) == []
