"""Tests for per-market capital accounting and the trade entry gate."""

import threading
from datetime import datetime, timezone

import pytest

from core.capital_ledger import (
    DUPLICATE_POSITION,
    INSUFFICIENT_CAPITAL,
    MARKET_LIMIT,
    MARKET_NOT_FOUND,
    TOTAL_LIMIT,
    CapitalLedger,
)
from core.exceptions import ConfigurationError, TradeValidationError
from core.models import Trade


def _trade(symbol: str, market: str, trade_size: float = 500.0, currency: str = "USD") -> Trade:
    return Trade(
        id=None,
        symbol=symbol,
        market=market,
        entry_date=datetime(2024, 1, 10, tzinfo=timezone.utc),
        entry_price=100.0,
        target_price=108.0,
        trade_size=trade_size,
        currency=currency,
    )


def test_trade_size_is_capital_over_max_positions(store, ledger):
    capital = store.get_portfolio_capital()

    assert ledger.calculate_trade_size("UK", capital) == pytest.approx(400.0)
    assert ledger.calculate_trade_size("India", capital) == pytest.approx(50000.0)


def test_trade_size_shrinks_with_realized_losses(store, ledger):
    # US: 5000 - 800 realized = 4200 -> 420 per position
    store.release_capital("US", 0.0, -800.0)

    assert ledger.calculate_trade_size("US", store.get_portfolio_capital()) == pytest.approx(420.0)


def test_trade_size_never_below_floor(store, ledger):
    # UK: 4000 - 3800 = 200 -> dynamic 20, floor 10% of 400 = 40
    store.release_capital("UK", 0.0, -3800.0)

    assert ledger.calculate_trade_size("UK", store.get_portfolio_capital()) == pytest.approx(40.0)


def test_trade_size_unknown_market_raises(store, ledger):
    with pytest.raises(ConfigurationError):
        ledger.calculate_trade_size("Japan", store.get_portfolio_capital())


def test_valid_entry_returns_size_and_currency(ledger):
    validation = ledger.validate_trade_entry("US", "AAPL")

    assert validation.valid
    assert validation.trade_size == pytest.approx(500.0)
    assert validation.currency == "USD"


def test_total_limit_checked_first(store):
    ledger = CapitalLedger(store, max_positions_total=2, max_positions_per_market=1)
    store.allocate_capital("India", 50000.0)
    store.allocate_capital("UK", 400.0)

    validation = ledger.validate_trade_entry("UK", "VOD.L")

    # UK is also at its market cap, but the total cap wins
    assert not validation.valid
    assert validation.code == TOTAL_LIMIT
    assert validation.is_capacity_limit


def test_unknown_market_rejected(ledger):
    validation = ledger.validate_trade_entry("Japan", "7203.T")

    assert not validation.valid
    assert validation.code == MARKET_NOT_FOUND
    assert not validation.is_capacity_limit


def test_market_limit(store):
    ledger = CapitalLedger(store, max_positions_per_market=1)
    store.allocate_capital("UK", 400.0)

    validation = ledger.validate_trade_entry("UK", "BARC.L")

    assert validation.code == MARKET_LIMIT
    assert "1/1" in validation.reason


def test_insufficient_capital_reports_shortfall(store, ledger):
    store.allocate_capital("UK", 3700.0)

    validation = ledger.validate_trade_entry("UK", "VOD.L")

    assert validation.code == INSUFFICIENT_CAPITAL
    assert validation.details["required"] == pytest.approx(400.0)
    assert validation.details["available"] == pytest.approx(300.0)
    assert validation.details["shortfall"] == pytest.approx(100.0)


def test_duplicate_active_position_rejected(store, ledger):
    existing = store.insert_trade(_trade("AAPL", "US"))

    validation = ledger.validate_trade_entry("US", "AAPL")

    assert validation.code == DUPLICATE_POSITION
    assert validation.existing_trade_id == existing.id
    assert not validation.is_capacity_limit


def test_capacity_checked_before_duplicate(store, ledger):
    store.insert_trade(_trade("VOD.L", "UK", 400.0, "GBP"))
    store.allocate_capital("UK", 3700.0)

    assert ledger.validate_trade_entry("UK", "VOD.L").code == INSUFFICIENT_CAPITAL


def test_allocate_for_trade_moves_capital(store, ledger):
    allocation = ledger.allocate_for_trade("US", "AAPL", 180.0)

    assert allocation == {"allocated": pytest.approx(500.0), "currency": "USD", "market": "US"}
    us = store.get_portfolio_capital()["US"]
    assert us.allocated == pytest.approx(500.0)
    assert us.positions == 1
    assert us.available == pytest.approx(4500.0)


def test_allocate_for_trade_raises_on_invalid(store, ledger):
    store.allocate_capital("UK", 3700.0)

    with pytest.raises(TradeValidationError) as exc_info:
        ledger.allocate_for_trade("UK", "VOD.L", 120.0)

    assert exc_info.value.code == INSUFFICIENT_CAPITAL
    assert store.get_portfolio_capital()["UK"].positions == 1


def test_concurrent_allocations_never_exceed_market_cap(store, ledger):
    errors = []

    def worker(i):
        try:
            ledger.allocate_for_trade("UK", f"SYM{i}.L", 100.0)
        except TradeValidationError as e:
            errors.append(e.code)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    uk = store.get_portfolio_capital()["UK"]
    assert uk.positions == 10
    assert uk.allocated == pytest.approx(4000.0)
    assert uk.available >= 0
    assert len(errors) == 10


def test_release_uses_profit_loss_verbatim(store, ledger):
    store.allocate_capital("US", 500.0)

    result = ledger.release_from_trade({
        "symbol": "AAPL",
        "market": "US",
        "trade_size": 500.0,
        "profit_loss": -37.50,
        "profit_loss_percent": 99.0,
        "currency": "USD",
    })

    assert result["pl"] == pytest.approx(-37.50)
    us = store.get_portfolio_capital()["US"]
    assert us.realized == pytest.approx(-37.50)
    assert us.allocated == pytest.approx(0.0)
    assert us.positions == 0


def test_release_falls_back_to_percent_and_symbol_market(store, ledger):
    store.allocate_capital("UK", 400.0)

    result = ledger.release_from_trade({
        "symbol": "VOD.L",
        "investment_amount": 400.0,
        "profit_loss_percentage": 10.0,
    })

    assert result["market"] == "UK"
    assert result["released"] == pytest.approx(400.0)
    assert store.get_portfolio_capital()["UK"].realized == pytest.approx(40.0)


def test_release_accepts_trade_objects(store, ledger):
    store.allocate_capital("India", 50000.0)
    trade = _trade("RELIANCE.NS", "India", 50000.0, "INR")
    trade.profit_loss_percent = -5.0

    result = ledger.release_from_trade(trade)

    assert result == {"released": 50000.0, "pl": pytest.approx(-2500.0), "currency": "INR", "market": "India"}


def test_release_clamps_at_zero(store, ledger):
    ledger.release_from_trade({"symbol": "AAPL", "trade_size": 500.0, "profit_loss_percent": 0})

    us = store.get_portfolio_capital()["US"]
    assert us.allocated == 0.0
    assert us.positions == 0


def test_cancel_allocation_books_no_pl(store, ledger):
    allocation = ledger.allocate_for_trade("US", "MSFT", 400.0)

    ledger.cancel_allocation("US", allocation["allocated"])

    us = store.get_portfolio_capital()["US"]
    assert us.allocated == 0.0
    assert us.positions == 0
    assert us.realized == 0.0


def test_capital_status_and_summary(store, ledger):
    ledger.allocate_for_trade("US", "AAPL", 180.0)
    ledger.allocate_for_trade("UK", "VOD.L", 1.2)

    status = ledger.get_capital_status()
    assert status.total_positions == 2
    assert status.max_total_positions == 30
    assert status.utilization_percent == "6.7"

    summary = ledger.get_capital_summary()
    assert summary["US"]["currency"] == "$"
    assert summary["US"]["available"] == "4,500.00"
    assert summary["UK"]["utilization_percent"] == "10"
    assert summary["totals"]["total_positions"] == 2


@pytest.mark.parametrize("symbol,market", [
    ("RELIANCE.NS", "India"),
    ("TCS.BO", "India"),
    ("VOD.L", "UK"),
    ("AAPL", "US"),
    ("BRK-B", "US"),
])
def test_market_from_symbol(symbol, market):
    assert CapitalLedger.get_market_from_symbol(symbol) == market


def test_from_policy_reads_limits_and_sizes(store):
    policy = {
        "markets": {
            "US": {"currency": "USD", "currency_symbol": "$", "standard_trade_size": 250, "initial_capital": 5000},
        },
        "limits": {"max_positions_total": 5, "max_positions_per_market": 4, "min_trade_size_fraction": 0.5},
    }

    ledger = CapitalLedger.from_policy(policy, store)

    assert ledger.standard_trade_size("US") == 250.0
    assert ledger.max_positions_total == 5
    # 5000 / 4 = 1250
    assert ledger.calculate_trade_size("US", store.get_portfolio_capital()) == pytest.approx(1250.0)


def test_nine_of_ten_positions_still_valid_at_reduced_size(store, ledger):
    store.release_capital("US", 0.0, -800.0)
    for _ in range(8):
        store.allocate_capital("US", 20.0)
    store.allocate_capital("US", 40.0)

    us = store.get_portfolio_capital()["US"]
    assert us.positions == 9
    assert us.available == pytest.approx(4000.0)

    validation = ledger.validate_trade_entry("US", "AAPL")

    assert validation.valid
    assert validation.trade_size == pytest.approx(420.0)
