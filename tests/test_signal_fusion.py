from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from atlas.config import FusionConfig
from atlas.signals.fusion import fuse_signals
from atlas.signals.models import Action, Signal, SignalValidationError, signal_from_payload
from atlas.storage.models import Trade

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _signal(source: str, action: Action, confidence: float, ts: datetime = NOW) -> Signal:
    return Signal(source=source, action=action, confidence=confidence, timestamp=ts)


def _strong_secondaries() -> dict[str, Signal]:
    return {
        "sent": _signal("sent", Action.CALL, 1.0),
        "pred": _signal("pred", Action.CALL, 1.0),
    }


def _fuse(**overrides):
    params = {
        "primary": _signal("tech", Action.CALL, 1.0),
        "secondaries": _strong_secondaries(),
        "volatility_penalty": 0.0,
        "open_trades": [],
        "cooldowns": {},
        "symbol": "EURUSD",
        "now": NOW,
        "config": FusionConfig(),
    }
    params.update(overrides)
    return fuse_signals(**params)


def _open_trade(direction: str) -> Trade:
    return Trade(
        trade_id="t-1",
        symbol="EURUSD",
        direction=direction,
        stake=10.0,
        placed_at=NOW - timedelta(minutes=1),
        expiry_at=NOW + timedelta(minutes=4),
    )


def test_hold_primary_short_circuits() -> None:
    fused = _fuse(primary=_signal("tech", Action.HOLD, 0.9))

    assert fused.action is Action.HOLD
    assert fused.score == 0.0
    assert fused.components == {}


def test_missing_primary_is_hold() -> None:
    fused = _fuse(primary=None)
    assert fused.action is Action.HOLD
    assert fused.score == 0.0


def test_stale_primary_is_hold() -> None:
    fused = _fuse(primary=_signal("tech", Action.CALL, 1.0, ts=NOW - timedelta(minutes=10)))
    assert fused.action is Action.HOLD
    assert "stale" in fused.reason


def test_duplicate_position_blocks_same_direction() -> None:
    fused = _fuse(open_trades=[_open_trade("CALL")])

    assert fused.action is Action.HOLD
    assert fused.score == 0.0
    assert "Duplicate position" in fused.reason


def test_open_trade_in_other_direction_does_not_block() -> None:
    fused = _fuse(open_trades=[_open_trade("PUT")])
    assert fused.action is Action.CALL


def test_cooldown_blocks_within_window_and_reports_remaining() -> None:
    cooldowns = {"EURUSD-CALL": NOW - timedelta(minutes=10)}
    fused = _fuse(cooldowns=cooldowns)

    assert fused.action is Action.HOLD
    assert "5.0 min" in fused.reason


def test_cooldown_expired_allows_trade() -> None:
    cooldowns = {"EURUSD-CALL": NOW - timedelta(minutes=16)}
    fused = _fuse(cooldowns=cooldowns)

    assert fused.action is Action.CALL
    assert fused.score == pytest.approx(0.9)


def test_weighted_score_with_agreeing_secondaries() -> None:
    fused = _fuse()

    assert fused.action is Action.CALL
    assert fused.score == pytest.approx(0.9)
    assert fused.components["tech"] == pytest.approx(0.5)
    assert fused.components["macro"] == 0.0


def test_disagreeing_secondary_is_negated() -> None:
    secondaries = {
        "sent": _signal("sent", Action.PUT, 1.0),
        "pred": _signal("pred", Action.CALL, 1.0),
    }
    fused = _fuse(secondaries=secondaries)

    assert fused.components["sent"] == pytest.approx(-0.2)
    assert fused.score == pytest.approx(0.5)
    # Below threshold: HOLD, but the score is kept for diagnostics.
    assert fused.action is Action.HOLD
    assert "below threshold" in fused.reason


def test_hold_secondary_counts_as_disagreement() -> None:
    secondaries = {
        "sent": _signal("sent", Action.HOLD, 0.5),
        "pred": _signal("pred", Action.CALL, 1.0),
    }
    fused = _fuse(secondaries=secondaries)
    assert fused.components["sent"] == pytest.approx(-0.1)


def test_volatility_penalty_is_subtracted() -> None:
    fused = _fuse(volatility_penalty=1.0)

    assert fused.components["volatility"] == pytest.approx(-0.1)
    assert fused.score == pytest.approx(0.8)
    assert fused.action is Action.CALL


def test_score_is_clamped_to_zero() -> None:
    secondaries = {
        "sent": _signal("sent", Action.PUT, 1.0),
        "pred": _signal("pred", Action.PUT, 1.0),
        "macro": _signal("macro", Action.PUT, 1.0),
    }
    fused = _fuse(
        primary=_signal("tech", Action.CALL, 0.1),
        secondaries=secondaries,
        volatility_penalty=1.0,
    )
    assert fused.score == 0.0
    assert fused.action is Action.HOLD


def test_stale_secondary_contributes_nothing() -> None:
    secondaries = {
        "sent": _signal("sent", Action.PUT, 1.0, ts=NOW - timedelta(hours=1)),
        "pred": _signal("pred", Action.CALL, 1.0),
        "macro": _signal("macro", Action.CALL, 1.0),
    }
    fused = _fuse(secondaries=secondaries)
    assert fused.components["sent"] == 0.0
    assert fused.score == pytest.approx(0.8)
    assert fused.action is Action.CALL


def test_put_primary_keeps_direction() -> None:
    secondaries = {
        "sent": _signal("sent", Action.PUT, 1.0),
        "pred": _signal("pred", Action.PUT, 1.0),
    }
    fused = _fuse(primary=_signal("tech", Action.PUT, 1.0), secondaries=secondaries)
    assert fused.action is Action.PUT
    assert fused.to_dict()["action"] == "PUT"


def test_inputs_are_not_mutated() -> None:
    cooldowns = {"EURUSD-CALL": NOW - timedelta(minutes=30)}
    trades = [_open_trade("PUT")]
    _fuse(cooldowns=cooldowns, open_trades=trades)

    assert cooldowns == {"EURUSD-CALL": NOW - timedelta(minutes=30)}
    assert trades[0].status == "open"


def test_signal_payload_aliases_are_normalized() -> None:
    signal = signal_from_payload(
        "Sent",
        {"direction": "buy", "score": 0.65, "time": "2026-01-05T11:59:00Z", "headlines": 3},
        default_timestamp=NOW,
    )

    assert signal.source == "sent"
    assert signal.action is Action.CALL
    assert signal.confidence == pytest.approx(0.65)
    assert signal.timestamp == NOW - timedelta(minutes=1)
    assert signal.metadata == {"headlines": 3}


def test_signal_payload_rejects_out_of_range_confidence() -> None:
    with pytest.raises(SignalValidationError):
        signal_from_payload("tech", {"action": "CALL", "confidence": 1.5}, default_timestamp=NOW)
    with pytest.raises(SignalValidationError):
        signal_from_payload("tech", {"action": "CALL", "confidence": float("nan")}, default_timestamp=NOW)


def test_signal_payload_rejects_unknown_action() -> None:
    with pytest.raises(SignalValidationError):
        signal_from_payload("tech", {"action": "SIDEWAYS", "confidence": 0.5}, default_timestamp=NOW)
