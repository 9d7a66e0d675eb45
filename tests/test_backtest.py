from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from atlas.backtest.engine import load_bars_csv, run_backtest, run_backtest_from_csv
from atlas.config import AppConfig

T0 = datetime(2026, 1, 6, 9, 0, tzinfo=timezone.utc)


def _write_bars(path, closes: list[float]) -> None:
    rows = []
    for index, close in enumerate(closes):
        rows.append(
            {
                "timestamp": (T0 + timedelta(minutes=5 * index)).isoformat(),
                "close": close,
                "atr": 0.001,
                "vol_penalty": 0.0,
                "tech_action": "CALL",
                "tech_confidence": 0.9,
                "sent_action": "CALL",
                "sent_confidence": 0.8,
                "pred_action": "CALL",
                "pred_confidence": 0.8,
            }
        )
    pd.DataFrame(rows).to_csv(path, index=False)


def test_rising_market_wins_every_trade(tmp_path) -> None:
    path = tmp_path / "bars.csv"
    _write_bars(path, [1.1000 + 0.0005 * i for i in range(8)])

    report = run_backtest_from_csv(path, AppConfig())

    assert report.bars == 8
    assert report.trades == 3
    assert report.wins == 3
    assert report.pnl == pytest.approx(255.0)
    assert report.final_bankroll == pytest.approx(1255.0)
    assert report.max_drawdown == pytest.approx(0.0)
    assert [trade.stake for trade in report.trade_log] == [100.0, 100.0, 100.0]
    # Bars inside the cooldown window hold.
    assert report.reason_counts["SIGNAL_HOLD"] == 5


def test_falling_market_trips_the_loss_breaker(tmp_path) -> None:
    path = tmp_path / "bars.csv"
    _write_bars(path, [1.1000 - 0.0005 * i for i in range(10)])

    report = run_backtest_from_csv(path, AppConfig())

    assert report.trades == 3
    assert report.losses == 3
    assert [trade.stake for trade in report.trade_log] == [100.0, 50.0, 50.0]
    assert report.pnl == pytest.approx(-200.0)
    assert report.paused_bars == 3
    assert report.max_drawdown == pytest.approx(200.0)
    assert report.max_drawdown_pct == pytest.approx(0.2)


def test_calendar_events_deny_bars(tmp_path) -> None:
    bars = tmp_path / "bars.csv"
    _write_bars(bars, [1.1000 + 0.0005 * i for i in range(4)])
    events = tmp_path / "events.json"
    events.write_text(
        json.dumps([{"id": "1", "title": "NFP", "currency": "USD", "impact": "HIGH", "timeUTC": T0.isoformat()}]),
        encoding="utf-8",
    )

    report = run_backtest_from_csv(bars, AppConfig(), events_path=events)

    # Bars at +0 and +5 fall inside the +/-5 minute window.
    assert report.denied_bars == 2
    assert report.reason_counts["NEWS_BLACKOUT"] == 2
    assert report.trade_log[0].entry_time == T0 + timedelta(minutes=10)


def test_missing_columns_are_rejected(tmp_path) -> None:
    path = tmp_path / "bars.csv"
    pd.DataFrame({"timestamp": [T0.isoformat()]}).to_csv(path, index=False)

    with pytest.raises(ValueError):
        load_bars_csv(path)


def test_report_serializes_without_trade_objects() -> None:
    frame = pd.DataFrame(
        {
            "timestamp": pd.to_datetime([T0, T0 + timedelta(minutes=5)], utc=True),
            "close": [1.1, 1.2],
            "atr": [0.001, 0.001],
        }
    )

    payload = run_backtest(frame, AppConfig()).to_dict()

    assert payload["trades"] == 0
    assert payload["reason_counts"] == {"SIGNAL_HOLD": 2}
    assert json.dumps(payload)
