from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
import requests

from atlas.execution.backends import BrokerBackend
from atlas.execution.broker_client import (
    BrokerAPIError,
    BrokerClient,
    RetryableBrokerAPIError,
    _parse_retry_after,
)
from atlas.execution.lifecycle import TradeLifecycleManager
from atlas.storage.models import Trade, TradeOrder


class FakeResponse:
    def __init__(self, status_code: int, payload: object = None, headers: dict | None = None):
        self.status_code = status_code
        self.headers = headers or {}
        self.text = "" if payload is None else json.dumps(payload)
        self._payload = payload

    def json(self) -> object:
        return self._payload


class FakeSession:
    def __init__(self, responses: list[object]):
        self.headers: dict[str, str] = {}
        self.responses = list(responses)
        self.calls: list[dict] = []

    def request(self, **kwargs) -> FakeResponse:
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(responses: list[object], sleeps: list[float], attempts: int = 3) -> BrokerClient:
    return BrokerClient(
        "https://broker.example/api/",
        api_key="key",
        request_max_attempts=attempts,
        session=FakeSession(responses),
        sleep=sleeps.append,
    )


def test_parse_retry_after_seconds() -> None:
    assert _parse_retry_after({"Retry-After": "3"}) == 3.0


def test_parse_retry_after_invalid() -> None:
    assert _parse_retry_after({"Retry-After": "not-a-number"}) is None
    assert _parse_retry_after({"Retry-After": "-1"}) is None
    assert _parse_retry_after({}) is None


def test_server_error_is_retried_then_succeeds() -> None:
    sleeps: list[float] = []
    client = _client([FakeResponse(503, {"error": "busy"}), FakeResponse(200, {"id": "T-1"})], sleeps)

    trade_id = client.place_trade(symbol="EURUSD", direction="CALL", amount=10.0, expiry_minutes=5)

    assert trade_id == "T-1"
    assert client.total_requests == 2
    assert client.total_retries == 1
    assert len(sleeps) == 1
    call = client.session.calls[-1]
    assert call["url"] == "https://broker.example/api/trades"
    assert call["json"]["amount"] == 10.0
    assert call["headers"] == {"Authorization": "Bearer key"}


def test_client_error_is_not_retried() -> None:
    sleeps: list[float] = []
    client = _client([FakeResponse(400, {"error": "bad amount"})], sleeps)

    with pytest.raises(BrokerAPIError) as excinfo:
        client.get_trade("T-1")

    assert not isinstance(excinfo.value, RetryableBrokerAPIError)
    assert sleeps == []


def test_network_errors_exhaust_attempts() -> None:
    sleeps: list[float] = []
    errors = [requests.ConnectionError("down") for _ in range(3)]
    client = _client(errors, sleeps, attempts=3)

    with pytest.raises(RetryableBrokerAPIError):
        client.get_balance()
    assert len(sleeps) == 2


def test_rate_limit_honours_retry_after() -> None:
    sleeps: list[float] = []
    client = _client(
        [FakeResponse(429, {"error": "slow down"}, {"Retry-After": "3"}), FakeResponse(200, {"balance": 1250.5})],
        sleeps,
    )

    assert client.get_balance() == pytest.approx(1250.5)
    assert sleeps == [3.0]


def test_missing_trade_id_is_an_error() -> None:
    client = _client([FakeResponse(200, {"status": "accepted"})], [])
    with pytest.raises(BrokerAPIError):
        client.place_trade(symbol="EURUSD", direction="PUT", amount=5.0, expiry_minutes=5)


def _trade() -> Trade:
    now = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    return Trade(trade_id="T-9", symbol="EURUSD", direction="CALL", stake=20.0, placed_at=now, expiry_at=now)


def test_broker_backend_maps_settlements() -> None:
    responses = [
        FakeResponse(200, {"id": "T-9"}),
        FakeResponse(200, {"status": "open"}),
        FakeResponse(200, {"status": "closed", "result": "WIN", "profit": 17.0}),
        FakeResponse(200, {"status": "closed", "result": "loss"}),
    ]
    backend = BrokerBackend(_client(responses, []))

    assert backend.place_trade(TradeOrder(symbol="EURUSD", direction="CALL", stake=20.0, expiry_minutes=5)) == "T-9"
    assert backend.check_result(_trade()).status == "open"

    win = backend.check_result(_trade())
    assert (win.status, win.result, win.profit) == ("closed", "win", 17.0)

    loss = backend.check_result(_trade())
    assert loss.result == "loss"
    assert loss.profit == pytest.approx(-20.0)


def test_broker_backend_rejects_closed_trade_without_result() -> None:
    backend = BrokerBackend(_client([FakeResponse(200, {"status": "closed", "result": "void"})], []))
    with pytest.raises(BrokerAPIError):
        backend.check_result(_trade())


class FakeClient:
    def __init__(self, settlement: object):
        self.settlement = settlement

    def place_trade(self, *, symbol: str, direction: str, amount: float, expiry_minutes: int) -> str:
        return "T-9"

    def get_trade(self, trade_id: str) -> object:
        return self.settlement

    def get_balance(self) -> float:
        return 1000.0


@pytest.mark.parametrize(
    "settlement",
    [
        {"status": "closed", "result": "win", "profit": "n/a"},
        {"status": "closed", "result": "win", "profit": "nan"},
        ["closed", "win"],
    ],
)
def test_malformed_settlement_keeps_trade_open(settlement: object) -> None:
    backend = BrokerBackend(FakeClient(settlement))
    with pytest.raises(BrokerAPIError):
        backend.check_result(_trade())

    placed_at = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    manager = TradeLifecycleManager(backend=backend)
    manager.place_trade(TradeOrder(symbol="EURUSD", direction="CALL", stake=20.0, expiry_minutes=5), placed_at)

    assert manager.reconcile(placed_at + timedelta(minutes=6)) == []
    assert [trade.trade_id for trade in manager.open_trades()] == ["T-9"]
