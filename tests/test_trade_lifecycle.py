from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from atlas.execution.backends import SimulatedBackend
from atlas.execution.broker_client import BrokerAPIError
from atlas.execution.lifecycle import DuplicateTradeError, TradeLifecycleManager
from atlas.storage.models import Settlement, Trade, TradeOrder
from atlas.storage.state_store import OPEN_TRADES, JsonStateStore

T0 = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


class FakeBackend:
    name = "fake"

    def __init__(self) -> None:
        self.counter = 0
        self.results: dict[str, Settlement] = {}
        self.checked: list[str] = []
        self.fail_place = False
        self.fail_check = False

    def place_trade(self, order: TradeOrder) -> str:
        if self.fail_place:
            raise BrokerAPIError("dispatch failed")
        self.counter += 1
        return f"fake-{self.counter}"

    def check_result(self, trade: Trade) -> Settlement:
        self.checked.append(trade.trade_id)
        if self.fail_check:
            raise BrokerAPIError("temporarily unavailable")
        return self.results.get(trade.trade_id, Settlement(status="open"))

    def get_balance(self) -> float | None:
        return None


def _order(direction: str = "CALL", stake: float = 10.0) -> TradeOrder:
    return TradeOrder(symbol="EURUSD", direction=direction, stake=stake, expiry_minutes=5)


def test_place_trade_records_and_persists(tmp_path) -> None:
    store = JsonStateStore(tmp_path)
    manager = TradeLifecycleManager(backend=FakeBackend(), store=store)

    trade = manager.place_trade(_order(), T0)

    assert trade.trade_id == "fake-1"
    assert trade.expiry_at == T0 + timedelta(minutes=5)
    assert trade.status == "open"
    assert trade.backend == "fake"
    assert [item.trade_id for item in manager.open_trades()] == ["fake-1"]
    assert store.load(OPEN_TRADES)[0]["trade_id"] == "fake-1"


def test_duplicate_direction_is_rejected() -> None:
    manager = TradeLifecycleManager(backend=FakeBackend())
    manager.place_trade(_order("CALL"), T0)

    with pytest.raises(DuplicateTradeError):
        manager.place_trade(_order("CALL"), T0)

    manager.place_trade(_order("PUT"), T0)
    assert len(manager.open_trades()) == 2


@pytest.mark.parametrize(
    "order",
    [
        TradeOrder(symbol="EURUSD", direction="UP", stake=10.0, expiry_minutes=5),
        TradeOrder(symbol="EURUSD", direction="CALL", stake=0.0, expiry_minutes=5),
        TradeOrder(symbol="EURUSD", direction="CALL", stake=float("nan"), expiry_minutes=5),
        TradeOrder(symbol="EURUSD", direction="CALL", stake=10.0, expiry_minutes=0),
        TradeOrder(symbol="  ", direction="CALL", stake=10.0, expiry_minutes=5),
    ],
)
def test_invalid_orders_are_rejected(order: TradeOrder) -> None:
    manager = TradeLifecycleManager(backend=FakeBackend())
    with pytest.raises(ValueError):
        manager.place_trade(order, T0)
    assert manager.open_trades() == []


def test_dispatch_failure_records_nothing(tmp_path) -> None:
    backend = FakeBackend()
    backend.fail_place = True
    store = JsonStateStore(tmp_path)
    manager = TradeLifecycleManager(backend=backend, store=store)

    with pytest.raises(BrokerAPIError):
        manager.place_trade(_order(), T0)

    assert manager.open_trades() == []
    assert not store.path_for(OPEN_TRADES).exists()


def test_check_result_before_expiry_does_not_hit_backend() -> None:
    backend = FakeBackend()
    manager = TradeLifecycleManager(backend=backend)
    trade = manager.place_trade(_order(), T0)

    settlement = manager.check_result(trade, T0 + timedelta(minutes=4))

    assert settlement.status == "open"
    assert backend.checked == []


def test_backend_error_after_expiry_keeps_trade_open() -> None:
    backend = FakeBackend()
    backend.fail_check = True
    manager = TradeLifecycleManager(backend=backend)
    trade = manager.place_trade(_order(), T0)

    assert manager.check_result(trade, T0 + timedelta(minutes=6)).status == "open"
    assert manager.reconcile(T0 + timedelta(minutes=6)) == []
    assert len(manager.open_trades()) == 1


def test_reconcile_closes_only_settled_trades() -> None:
    backend = FakeBackend()
    manager = TradeLifecycleManager(backend=backend)
    first = manager.place_trade(_order("CALL", 10.0), T0)
    second = manager.place_trade(_order("PUT", 20.0), T0 + timedelta(minutes=3))
    backend.results[first.trade_id] = Settlement(status="closed", result="win", profit=8.5)

    now = T0 + timedelta(minutes=6)
    closed = manager.reconcile(now)

    assert len(closed) == 1
    event = closed[0]
    assert event.trade.trade_id == first.trade_id
    assert event.result == "win"
    assert event.profit == pytest.approx(8.5)
    assert event.closed_at == now
    assert event.trade.status == "closed"
    # Second trade is not yet expired, so the backend is never asked about it.
    assert backend.checked == [first.trade_id]
    assert [item.trade_id for item in manager.open_trades()] == [second.trade_id]


def test_remove_trade_is_idempotent() -> None:
    manager = TradeLifecycleManager(backend=FakeBackend())
    trade = manager.place_trade(_order(), T0)

    assert manager.remove_trade(trade.trade_id) is True
    assert manager.remove_trade(trade.trade_id) is False
    assert manager.remove_trade("unknown") is False


def test_next_settlement_at_is_earliest_expiry() -> None:
    manager = TradeLifecycleManager(backend=FakeBackend())
    assert manager.next_settlement_at() is None

    manager.place_trade(_order("PUT"), T0 + timedelta(minutes=2))
    manager.place_trade(_order("CALL"), T0)

    assert manager.next_settlement_at() == T0 + timedelta(minutes=5)


def test_open_trades_survive_restart(tmp_path) -> None:
    store = JsonStateStore(tmp_path)
    manager = TradeLifecycleManager(backend=FakeBackend(), store=store)
    placed = manager.place_trade(_order(), T0)

    restored = TradeLifecycleManager(backend=SimulatedBackend(win_probability=1.0), store=store)
    trades = restored.open_trades()

    assert len(trades) == 1
    assert trades[0].trade_id == placed.trade_id
    assert trades[0].expiry_at == placed.expiry_at

    closed = restored.reconcile(T0 + timedelta(minutes=5))
    assert closed[0].result == "win"
    assert restored.open_trades() == []
    assert store.load(OPEN_TRADES) == []


def test_simulated_backend_settles_with_payout() -> None:
    winner = TradeLifecycleManager(backend=SimulatedBackend(win_probability=1.0, payout_rate=0.85))
    trade = winner.place_trade(_order(stake=100.0), T0)
    assert trade.trade_id.startswith("sim-")
    win = winner.check_result(trade, T0 + timedelta(minutes=5))
    assert win.result == "win"
    assert win.profit == pytest.approx(85.0)

    loser = TradeLifecycleManager(backend=SimulatedBackend(win_probability=0.0))
    trade = loser.place_trade(_order(stake=100.0), T0)
    loss = loser.check_result(trade, T0 + timedelta(minutes=5))
    assert loss.result == "loss"
    assert loss.profit == pytest.approx(-100.0)


def test_failed_closure_handler_keeps_trades_open(tmp_path) -> None:
    store = JsonStateStore(tmp_path)
    backend = FakeBackend()
    manager = TradeLifecycleManager(backend=backend, store=store)
    first = manager.place_trade(_order("CALL"), T0)
    second = manager.place_trade(_order("PUT"), T0)
    backend.results[first.trade_id] = Settlement(status="closed", result="win", profit=8.5)
    backend.results[second.trade_id] = Settlement(status="closed", result="loss", profit=-10.0)

    def on_closed(event) -> None:
        raise RuntimeError("state write failed")

    with pytest.raises(RuntimeError):
        manager.reconcile(T0 + timedelta(minutes=6), on_closed=on_closed)

    trades = manager.open_trades()
    assert [trade.trade_id for trade in trades] == [first.trade_id, second.trade_id]
    assert all(trade.status == "open" for trade in trades)
    assert len(store.load(OPEN_TRADES)) == 2

    applied = []
    events = manager.reconcile(T0 + timedelta(minutes=7), on_closed=applied.append)
    assert [event.trade.trade_id for event in events] == [first.trade_id, second.trade_id]
    assert applied == events
    assert manager.open_trades() == []
