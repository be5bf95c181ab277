"""Tests for the JSON state store: capital rows, signals, trades, subscribers, leases."""

import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from core.exceptions import AllocationRejected, CriticalDataUnavailable, DataIntegrityError
from core.models import SIGNAL_ADDED, SIGNAL_DISMISSED, SIGNAL_PENDING, TRADE_CLOSED, Trade
from infra.state_store import StateStore
from tests.helpers import MARKETS_SEED


def _trade(symbol="AAPL", market="US", **overrides) -> Trade:
    fields = dict(
        id=None,
        symbol=symbol,
        market=market,
        entry_date=datetime(2024, 1, 10, 13, 0, tzinfo=timezone.utc),
        entry_price=100.0,
        target_price=108.0,
        trade_size=500.0,
        currency="USD",
    )
    fields.update(overrides)
    return Trade(**fields)


def test_missing_file_loads_defaults(tmp_path):
    store = StateStore(str(tmp_path / "nested" / "state.json"))

    state = store.load()

    assert state["portfolio_capital"] == {}
    assert state["next_trade_id"] == 1
    assert (tmp_path / "nested").is_dir()


def test_corrupt_file_raises(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    store = StateStore(str(path))

    with pytest.raises(CriticalDataUnavailable):
        store.get_portfolio_capital()


def test_init_portfolio_capital_keeps_existing_rows(store):
    store.release_capital("US", 0.0, 125.0)

    store.init_portfolio_capital(MARKETS_SEED, max_positions=10)

    assert store.get_portfolio_capital()["US"].realized == pytest.approx(125.0)


def test_state_survives_reopen(store, tmp_path):
    store.allocate_capital("UK", 400.0)

    reopened = StateStore(str(tmp_path / "state.json"))

    uk = reopened.get_portfolio_capital()["UK"]
    assert uk.allocated == pytest.approx(400.0)
    assert uk.positions == 1


def test_allocate_rejects_when_capital_short(store):
    with pytest.raises(AllocationRejected) as exc_info:
        store.allocate_capital("UK", 4000.01)

    assert exc_info.value.code == "INSUFFICIENT_CAPITAL"
    assert store.get_portfolio_capital()["UK"].allocated == 0.0


def test_allocate_rejects_at_caps(store):
    store.allocate_capital("UK", 400.0)

    with pytest.raises(AllocationRejected) as market_exc:
        store.allocate_capital("UK", 400.0, max_positions=1)
    with pytest.raises(AllocationRejected) as total_exc:
        store.allocate_capital("US", 500.0, max_total_positions=1)

    assert market_exc.value.code == "MARKET_LIMIT"
    assert total_exc.value.code == "TOTAL_LIMIT"


def test_allocate_invalid_amount_or_market(store):
    with pytest.raises(DataIntegrityError):
        store.allocate_capital("US", 0)
    with pytest.raises(DataIntegrityError):
        store.allocate_capital("Japan", 100.0)


def test_signal_transitions_are_one_way(store):
    signal = store.add_signal("AAPL", "2024-01-17", 180.0, 194.4, win_rate=72.5)

    assert signal.market == "US"
    assert signal.status == SIGNAL_PENDING
    assert signal.win_rate == pytest.approx(72.5)

    updated = store.update_signal_status(signal.id, SIGNAL_ADDED, linked_trade_id=7)
    assert updated.linked_trade_id == 7

    with pytest.raises(DataIntegrityError):
        store.update_signal_status(signal.id, SIGNAL_DISMISSED)
    with pytest.raises(DataIntegrityError):
        store.update_signal_status(999, SIGNAL_DISMISSED)


def test_pending_signals_filtered_and_ordered(store):
    first = store.add_signal("AAPL", "2024-01-17", 180.0, 194.4)
    store.add_signal("VOD.L", "2024-01-17", 0.7, 0.76)
    third = store.add_signal("MSFT", "2024-01-16", 390.0, 421.2)
    dismissed = store.add_signal("NVDA", "2024-01-17", 550.0, 594.0)
    store.update_signal_status(dismissed.id, SIGNAL_DISMISSED)

    us = store.get_pending_signals(SIGNAL_PENDING, "US")

    assert [s.id for s in us] == [first.id, third.id]
    assert len(store.get_pending_signals()) == 3


def test_delete_pending_signals_before_cutoff(store):
    store.add_signal("OLD", "2024-01-10", 10.0, 11.0)
    store.add_signal("EDGE", "2024-01-16", 10.0, 11.0)
    added = store.add_signal("DONE", "2024-01-01", 10.0, 11.0)
    store.update_signal_status(added.id, SIGNAL_ADDED, 1)

    removed = store.delete_pending_signals_before(date(2024, 1, 16))

    assert removed == [{"symbol": "OLD", "signal_date": "2024-01-10", "market": "US"}]
    assert [s.symbol for s in store.get_pending_signals()] == ["EDGE"]
    assert store.get_signal(added.id) is not None


def test_insert_and_close_trade_once(store):
    trade = store.insert_trade(_trade(shares=5.0), owner_ref="desk-1")

    assert trade.id == 1
    assert trade.owner_ref == "desk-1"
    assert store.get_active_trade_by_symbol("AAPL").id == trade.id

    closed = store.close_trade(
        trade.id,
        exit_date=date(2024, 1, 17),
        exit_price=109.0,
        profit_loss_percent=9.0,
        exit_reason="Target reached: +9.00%",
        profit_loss=45.0,
    )

    assert closed.status == TRADE_CLOSED
    assert closed.exit_date == date(2024, 1, 17)
    assert closed.profit_loss == pytest.approx(45.0)
    assert store.get_active_trades() == []
    assert store.close_trade(
        trade.id, exit_date=date(2024, 1, 17), exit_price=1.0, profit_loss_percent=0.0, exit_reason="again"
    ) is None


def test_trade_round_trips_entry_datetime(store):
    trade = store.insert_trade(_trade(square_off_date=date(2024, 2, 1)))

    loaded = store.get_trade(trade.id)

    assert loaded.entry_date == datetime(2024, 1, 10, 13, 0, tzinfo=timezone.utc)
    assert loaded.square_off_date == date(2024, 2, 1)


def test_subscriber_audiences(store):
    store.add_subscriber(1, "alice")
    store.add_subscriber(2, "bob", ["execution"])
    store.add_subscriber(3, "carol", ["alerts"])

    everyone = {s["chat_id"] for s in store.get_active_subscribers("all")}
    execution = {s["chat_id"] for s in store.get_active_subscribers("execution")}

    assert everyone == {1, 2, 3}
    assert execution == {1, 2}


def test_subscriber_activity_updated(store):
    store.add_subscriber(42, "dave")

    store.update_subscriber_activity(42)

    assert store.get_active_subscribers()[0]["last_activity"] is not None


def test_lease_exclusive_until_expiry(store):
    now = datetime(2024, 1, 17, 14, 0, tzinfo=timezone.utc)

    assert store.acquire_lease("exit-monitor", "a", 60, now=now)
    assert not store.acquire_lease("exit-monitor", "b", 60, now=now + timedelta(seconds=30))
    assert store.acquire_lease("exit-monitor", "a", 60, now=now + timedelta(seconds=30))
    assert store.acquire_lease("exit-monitor", "b", 60, now=now + timedelta(seconds=200))


def test_lease_release_only_by_owner(store):
    store.acquire_lease("execute:US", "a", 600)

    assert not store.release_lease("execute:US", "b")
    assert store.release_lease("execute:US", "a")
    assert store.acquire_lease("execute:US", "b", 600)


def test_events_are_capped(store):
    for _ in range(StateStore.MAX_EVENTS + 5):
        store.release_capital("US", 0.0, 0.0)

    assert len(store.load()["events"]) == StateStore.MAX_EVENTS


def _inject_row(store, table, key, row):
    state = store.load()
    state[table][key] = row
    store.save(state)


def test_malformed_rows_left_out_of_listings(store):
    good_signal = store.add_signal("AAPL", "2024-01-17", 180.0, 194.4)
    _inject_row(store, "signals", "90", {"id": 90, "status": SIGNAL_PENDING, "market": "US"})
    _inject_row(store, "signals", "91", {
        "id": 91, "symbol": "MSFT", "market": "US", "status": SIGNAL_PENDING, "signal_date": "17/01/2024",
    })
    good_trade = store.insert_trade(_trade())
    _inject_row(store, "trades", "90", {**_trade("MSFT").to_dict(), "id": 90, "entry_date": "not-a-date"})

    assert [s.id for s in store.get_pending_signals(SIGNAL_PENDING, "US")] == [good_signal.id]
    assert [t.id for t in store.get_active_trades()] == [good_trade.id]


def test_cleanup_keeps_unreadable_signal_dates(store):
    store.add_signal("OLD", "2024-01-10", 10.0, 11.0)
    _inject_row(store, "signals", "91", {
        "id": 91, "symbol": "MSFT", "market": "US", "status": SIGNAL_PENDING, "signal_date": "garbled",
    })

    removed = store.delete_pending_signals_before(date(2024, 1, 16))

    assert [r["symbol"] for r in removed] == ["OLD"]
    assert "91" in store.load()["signals"]


def test_lease_exclusive_across_store_instances(store):
    other = StateStore(str(store.state_file))
    doubles = 0

    for round_no in range(40):
        barrier = threading.Barrier(2)
        won = {}

        def contend(owner, target):
            barrier.wait()
            won[owner] = target.acquire_lease(f"execute:US:{round_no}", owner, 600)

        threads = [
            threading.Thread(target=contend, args=("a", store)),
            threading.Thread(target=contend, args=("b", other)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        if won["a"] and won["b"]:
            doubles += 1
        assert won["a"] or won["b"]

    assert doubles == 0


def test_allocations_from_two_instances_never_lost(store):
    other = StateStore(str(store.state_file))
    barrier = threading.Barrier(2)

    def allocate(target):
        barrier.wait()
        for _ in range(5):
            target.allocate_capital("UK", 100.0)

    threads = [threading.Thread(target=allocate, args=(s,)) for s in (store, other)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    uk = store.get_portfolio_capital()["UK"]
    assert uk.positions == 10
    assert uk.allocated == pytest.approx(1000.0)
