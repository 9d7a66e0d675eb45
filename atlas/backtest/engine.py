from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pandas as pd

from atlas.clock import to_utc
from atlas.config import AppConfig
from atlas.execution.sizing import CompoundTracker, SizingError, ensure_affordable
from atlas.news.calendar_provider import Event, load_events_file
from atlas.risk.assessor import assess_risk
from atlas.risk.breakers import CircuitBreakers
from atlas.signals.fusion import fuse_signals
from atlas.signals.models import Signal, SignalValidationError, signal_from_payload
from atlas.storage.models import RESULT_LOSS, RESULT_WIN, TRADE_OPEN, Trade, cooldown_key

LOGGER = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("timestamp", "close")


@dataclass(slots=True)
class BacktestTrade:
    trade_id: str
    direction: str
    stake: float
    entry_time: datetime
    entry_price: float
    exit_time: datetime
    exit_price: float
    result: str
    profit: float
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "direction": self.direction,
            "stake": self.stake,
            "entry_time": self.entry_time.isoformat(),
            "entry_price": self.entry_price,
            "exit_time": self.exit_time.isoformat(),
            "exit_price": self.exit_price,
            "result": self.result,
            "profit": self.profit,
            "score": round(self.score, 6),
        }


@dataclass(slots=True)
class BacktestReport:
    symbol: str
    bars: int
    trades: int
    wins: int
    losses: int
    win_rate: float
    pnl: float
    initial_bankroll: float
    final_bankroll: float
    max_drawdown: float
    max_drawdown_pct: float
    denied_bars: int = 0
    paused_bars: int = 0
    trade_log: list[BacktestTrade] = field(default_factory=list)
    reason_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "bars": self.bars,
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": round(self.win_rate, 6),
            "pnl": round(self.pnl, 2),
            "initial_bankroll": self.initial_bankroll,
            "final_bankroll": round(self.final_bankroll, 2),
            "max_drawdown": round(self.max_drawdown, 2),
            "max_drawdown_pct": round(self.max_drawdown_pct, 6),
            "denied_bars": self.denied_bars,
            "paused_bars": self.paused_bars,
            "reason_counts": dict(self.reason_counts),
            "trade_log": [item.to_dict() for item in self.trade_log],
        }


def load_bars_csv(path: str | Path) -> pd.DataFrame:
    """
    Load a bar file for replay.

    Required columns: ``timestamp`` and ``close``. Optional per-bar inputs:
    ``atr``, ``vol_penalty`` and, per signal source, ``<source>_action`` with
    ``<source>_confidence`` (e.g. ``tech_action``, ``tech_confidence``).
    """
    frame = pd.read_csv(path)
    missing = [column for column in REQUIRED_COLUMNS if column not in frame.columns]
    if missing:
        raise ValueError(f"Backtest CSV missing columns: {', '.join(missing)}")
    frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
    frame = frame.sort_values("timestamp").reset_index(drop=True)
    return frame


def _cell(row: pd.Series, column: str) -> Any:
    if column not in row.index:
        return None
    value = row[column]
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def _row_signals(row: pd.Series, sources: list[str], now: datetime) -> dict[str, Signal]:
    signals: dict[str, Signal] = {}
    for source in sources:
        action = _cell(row, f"{source}_action")
        if action is None:
            continue
        payload = {"action": action, "confidence": _cell(row, f"{source}_confidence") or 0.0}
        try:
            signals[source] = signal_from_payload(source, payload, default_timestamp=now)
        except SignalValidationError as exc:
            LOGGER.warning("Bar %s: invalid %s signal skipped: %s", now.isoformat(), source, exc)
    return signals


def _settle(trade: Trade, entry_price: float, exit_price: float, payout_rate: float) -> tuple[str, float]:
    if trade.direction == "CALL":
        won = exit_price > entry_price
    else:
        won = exit_price < entry_price
    if won:
        return RESULT_WIN, round(trade.stake * payout_rate, 2)
    return RESULT_LOSS, -round(trade.stake, 2)


def _drawdown(equity: list[float], initial: float) -> tuple[float, float]:
    if not equity:
        return 0.0, 0.0
    curve = pd.Series(equity, dtype="float64")
    drawdown = curve.cummax() - curve
    worst = float(drawdown.max())
    return worst, (worst / initial) if initial > 0 else 0.0


def run_backtest(
    frame: pd.DataFrame,
    config: AppConfig,
    *,
    events: list[Event] | None = None,
) -> BacktestReport:
    """
    Replay bars through the live decision code: breakers, risk assessment,
    fusion and sizing. A trade opened on a bar settles on the first bar at or
    after its expiry, CALL winning when that bar closes above the entry.
    """
    execution = config.execution
    initial = float(execution.initial_bankroll)
    breakers = CircuitBreakers(config.risk)
    breakers.init_balance(initial)
    compound = CompoundTracker(config.sizing, initial_balance=initial)
    sources = list(config.fusion.weights.as_dict())
    event_list = list(events or [])

    bankroll = initial
    open_trades: list[tuple[Trade, float, float]] = []
    cooldowns: dict[str, datetime] = {}
    trade_log: list[BacktestTrade] = []
    equity: list[float] = [initial]
    reason_counts: dict[str, int] = {}
    denied_bars = 0
    paused_bars = 0

    for index, row in frame.iterrows():
        now = to_utc(row["timestamp"].to_pydatetime())
        close = float(row["close"])

        still_open: list[tuple[Trade, float, float]] = []
        for trade, entry_price, score in open_trades:
            if now < trade.expiry_at:
                still_open.append((trade, entry_price, score))
                continue
            result, profit = _settle(trade, entry_price, close, execution.sim_payout_rate)
            bankroll = round(bankroll + profit, 2)
            breakers.register_trade(result, now)
            breakers.update_balance(bankroll, now)
            compound.on_trade_closed(bankroll, profit)
            equity.append(bankroll)
            trade_log.append(
                BacktestTrade(
                    trade_id=trade.trade_id,
                    direction=trade.direction,
                    stake=trade.stake,
                    entry_time=trade.placed_at,
                    entry_price=entry_price,
                    exit_time=now,
                    exit_price=close,
                    result=result,
                    profit=profit,
                    score=score,
                )
            )
        open_trades = still_open

        if breakers.check_status(now).is_paused:
            paused_bars += 1
            reason_counts["CIRCUIT_BREAKER"] = reason_counts.get("CIRCUIT_BREAKER", 0) + 1
            continue

        atr = _cell(row, "atr")
        assessment = assess_risk(
            now=now,
            events=event_list,
            volatility=float(atr) if atr is not None else None,
            config=config.risk,
            losses_in_row=breakers.state.losses_in_row,
        )
        if not assessment.allowed:
            denied_bars += 1
            for code in assessment.reason_codes:
                reason_counts[code] = reason_counts.get(code, 0) + 1
            continue

        signals = _row_signals(row, sources, now)
        primary_name = config.fusion.primary_source
        penalty = _cell(row, "vol_penalty")
        fused = fuse_signals(
            primary=signals.get(primary_name),
            secondaries={name: item for name, item in signals.items() if name != primary_name},
            volatility_penalty=float(penalty) if penalty is not None else None,
            open_trades=[item[0] for item in open_trades],
            cooldowns=cooldowns,
            symbol=execution.symbol,
            now=now,
            config=config.fusion,
        )
        if not fused.is_trade:
            reason_counts["SIGNAL_HOLD"] = reason_counts.get("SIGNAL_HOLD", 0) + 1
            continue

        try:
            stake = ensure_affordable(compound.stake_for(assessment.recommended_stake_pct), bankroll)
        except SizingError as exc:
            LOGGER.warning("Bar %s: sizing rejected: %s", now.isoformat(), exc)
            reason_counts["SIZING_ERROR"] = reason_counts.get("SIZING_ERROR", 0) + 1
            continue

        direction = fused.action.value
        trade = Trade(
            trade_id=f"bt-{index}",
            symbol=execution.symbol,
            direction=direction,
            stake=stake,
            placed_at=now,
            expiry_at=now + timedelta(minutes=execution.expiry_minutes),
            status=TRADE_OPEN,
            backend="backtest",
        )
        open_trades.append((trade, close, fused.score))
        cooldowns[cooldown_key(execution.symbol, direction)] = now

    wins = sum(1 for item in trade_log if item.result == RESULT_WIN)
    total = len(trade_log)
    max_dd, max_dd_pct = _drawdown(equity, initial)
    if open_trades:
        LOGGER.info("%d trade(s) still open at end of data, not counted", len(open_trades))
    return BacktestReport(
        symbol=execution.symbol,
        bars=len(frame),
        trades=total,
        wins=wins,
        losses=total - wins,
        win_rate=(wins / total) if total else 0.0,
        pnl=round(bankroll - initial, 2),
        initial_bankroll=initial,
        final_bankroll=bankroll,
        max_drawdown=max_dd,
        max_drawdown_pct=max_dd_pct,
        denied_bars=denied_bars,
        paused_bars=paused_bars,
        trade_log=trade_log,
        reason_counts=reason_counts,
    )


def run_backtest_from_csv(
    csv_path: str | Path,
    config: AppConfig,
    *,
    events_path: str | Path | None = None,
) -> BacktestReport:
    frame = load_bars_csv(csv_path)
    events = load_events_file(events_path, config.calendar.currencies) if events_path else []
    LOGGER.info("Backtest: %d bars from %s, %d calendar event(s)", len(frame), csv_path, len(events))
    return run_backtest(frame, config, events=events)
