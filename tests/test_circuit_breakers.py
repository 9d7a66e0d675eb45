from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from atlas.config import RiskConfig
from atlas.risk.breakers import CircuitBreakers
from atlas.storage.state_store import RISK_STATE, JsonStateStore

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _breakers(tmp_path=None) -> CircuitBreakers:
    store = JsonStateStore(tmp_path) if tmp_path is not None else None
    return CircuitBreakers(RiskConfig(), store)


def test_three_losses_pause_for_fifteen_minutes() -> None:
    breakers = _breakers()
    for _ in range(3):
        state = breakers.register_trade("loss", T0)

    assert state.is_paused is True
    assert state.losses_in_row == 3
    assert state.pause_until == T0 + timedelta(minutes=15)
    assert state.loss_pause_until == T0 + timedelta(minutes=15)
    assert state.trade_count == 3


def test_win_resets_loss_counter() -> None:
    breakers = _breakers()
    breakers.register_trade("loss", T0)
    breakers.register_trade("loss", T0)
    state = breakers.register_trade("win", T0)

    assert state.losses_in_row == 0
    assert state.max_loss_streak == 2
    assert state.is_paused is False


def test_expired_pause_clears_and_resets_counter() -> None:
    breakers = _breakers()
    for _ in range(3):
        breakers.register_trade("loss", T0)

    assert breakers.check_status(T0 + timedelta(minutes=14)).is_paused is True
    state = breakers.check_status(T0 + timedelta(minutes=16))

    assert state.is_paused is False
    assert state.pause_until is None
    assert state.losses_in_row == 0


def test_breach_while_paused_overwrites_deadline() -> None:
    breakers = _breakers()
    for _ in range(3):
        breakers.register_trade("loss", T0)
    state = breakers.register_trade("loss", T0 + timedelta(minutes=5))

    assert state.losses_in_row == 4
    assert state.pause_until == T0 + timedelta(minutes=20)


def test_drawdown_over_limit_pauses_for_an_hour() -> None:
    breakers = _breakers()
    breakers.init_balance(1000.0)

    assert breakers.update_balance(900.0, T0).is_paused is False
    state = breakers.update_balance(790.0, T0)

    assert state.is_paused is True
    assert state.drawdown_pause_until == T0 + timedelta(minutes=60)
    assert state.max_drawdown == pytest.approx(210.0)
    assert state.max_drawdown_pct == pytest.approx(0.21)


def test_drawdown_is_measured_from_high_water_mark() -> None:
    breakers = _breakers()
    breakers.init_balance(1000.0)
    breakers.update_balance(1200.0, T0)

    at_limit = breakers.update_balance(1000.0, T0)
    assert at_limit.high_water_mark == pytest.approx(1200.0)
    assert at_limit.is_paused is False

    assert breakers.update_balance(990.0, T0).is_paused is True


def test_breakers_are_independent() -> None:
    breakers = _breakers()
    breakers.init_balance(1000.0)
    for _ in range(3):
        breakers.register_trade("loss", T0)
    breakers.update_balance(700.0, T0)

    state = breakers.check_status(T0 + timedelta(minutes=16))
    assert state.is_paused is True
    assert state.loss_pause_until is None
    assert state.losses_in_row == 0
    assert state.pause_until == T0 + timedelta(minutes=60)

    assert breakers.check_status(T0 + timedelta(minutes=61)).is_paused is False


def test_invalid_inputs_raise_without_mutation() -> None:
    breakers = _breakers()
    with pytest.raises(ValueError):
        breakers.register_trade("draw", T0)
    with pytest.raises(ValueError):
        breakers.update_balance(float("nan"), T0)
    with pytest.raises(ValueError):
        breakers.init_balance(0.0)

    assert breakers.state.trade_count == 0
    assert breakers.state.balance == 0.0


def test_state_is_persisted_after_each_mutation(tmp_path) -> None:
    breakers = _breakers(tmp_path)
    breakers.init_balance(1000.0)
    for _ in range(3):
        breakers.register_trade("loss", T0)

    restored = _breakers(tmp_path)
    state = restored.state
    assert state.is_paused is True
    assert state.losses_in_row == 3
    assert state.initial_balance == pytest.approx(1000.0)
    assert state.pause_until == T0 + timedelta(minutes=15)
    assert restored.check_status(T0 + timedelta(minutes=15)).is_paused is False


def test_single_deadline_snapshot_is_treated_as_loss_pause(tmp_path) -> None:
    until = T0 + timedelta(minutes=10)
    (tmp_path / f"{RISK_STATE}.json").write_text(
        json.dumps({"is_paused": True, "losses_in_row": 3, "pause_until": until.isoformat()}),
        encoding="utf-8",
    )

    breakers = _breakers(tmp_path)
    assert breakers.state.loss_pause_until == until
    assert breakers.is_paused(T0) is True
    assert breakers.is_paused(until) is False


def test_corrupt_state_falls_back_to_defaults(tmp_path) -> None:
    (tmp_path / f"{RISK_STATE}.json").write_text("{not json", encoding="utf-8")

    breakers = _breakers(tmp_path)
    assert breakers.state.is_paused is False
    assert breakers.state.losses_in_row == 0
