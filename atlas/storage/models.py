from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from atlas.clock import from_iso, to_iso

TRADE_OPEN = "open"
TRADE_CLOSED = "closed"
RESULT_WIN = "win"
RESULT_LOSS = "loss"


def cooldown_key(symbol: str, direction: str) -> str:
    return f"{symbol.strip().upper()}-{direction.strip().upper()}"


def _require_mapping(payload: Any, kind: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError(f"{kind} payload must be an object, got {type(payload).__name__}")
    return payload


@dataclass(slots=True)
class TradeOrder:
    symbol: str
    direction: str
    stake: float
    expiry_minutes: int


@dataclass(slots=True)
class Trade:
    trade_id: str
    symbol: str
    direction: str
    stake: float
    placed_at: datetime
    expiry_at: datetime
    status: str = TRADE_OPEN
    result: str | None = None
    profit: float | None = None
    backend: str = "simulated"

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "symbol": self.symbol,
            "direction": self.direction,
            "stake": self.stake,
            "placed_at": to_iso(self.placed_at),
            "expiry_at": to_iso(self.expiry_at),
            "status": self.status,
            "result": self.result,
            "profit": self.profit,
            "backend": self.backend,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Trade":
        payload = _require_mapping(payload, "trade")
        placed_at = from_iso(payload["placed_at"])
        expiry_at = from_iso(payload["expiry_at"])
        if placed_at is None or expiry_at is None:
            raise ValueError("trade timestamps are required")
        profit = payload.get("profit")
        return cls(
            trade_id=str(payload["trade_id"]),
            symbol=str(payload["symbol"]),
            direction=str(payload["direction"]),
            stake=float(payload["stake"]),
            placed_at=placed_at,
            expiry_at=expiry_at,
            status=str(payload.get("status", TRADE_OPEN)),
            result=payload.get("result"),
            profit=float(profit) if profit is not None else None,
            backend=str(payload.get("backend", "simulated")),
        )


@dataclass(slots=True)
class Settlement:
    status: str
    result: str | None = None
    profit: float | None = None

    @property
    def is_closed(self) -> bool:
        return self.status == TRADE_CLOSED


@dataclass(slots=True)
class ClosedTradeEvent:
    trade: Trade
    result: str
    profit: float
    closed_at: datetime


@dataclass(slots=True)
class RiskState:
    is_paused: bool = False
    losses_in_row: int = 0
    max_loss_streak: int = 0
    pause_until: datetime | None = None
    loss_pause_until: datetime | None = None
    drawdown_pause_until: datetime | None = None
    balance: float = 0.0
    initial_balance: float = 0.0
    high_water_mark: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_pct: float = 0.0
    trade_count: int = 0
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_paused": self.is_paused,
            "losses_in_row": self.losses_in_row,
            "max_loss_streak": self.max_loss_streak,
            "pause_until": to_iso(self.pause_until),
            "loss_pause_until": to_iso(self.loss_pause_until),
            "drawdown_pause_until": to_iso(self.drawdown_pause_until),
            "balance": self.balance,
            "initial_balance": self.initial_balance,
            "high_water_mark": self.high_water_mark,
            "max_drawdown": self.max_drawdown,
            "max_drawdown_pct": self.max_drawdown_pct,
            "trade_count": self.trade_count,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RiskState":
        payload = _require_mapping(payload, "risk state")
        return cls(
            is_paused=bool(payload.get("is_paused", False)),
            losses_in_row=int(payload.get("losses_in_row", 0)),
            max_loss_streak=int(payload.get("max_loss_streak", 0)),
            pause_until=from_iso(payload.get("pause_until")),
            loss_pause_until=from_iso(payload.get("loss_pause_until")),
            drawdown_pause_until=from_iso(payload.get("drawdown_pause_until")),
            balance=float(payload.get("balance", 0.0)),
            initial_balance=float(payload.get("initial_balance", 0.0)),
            high_water_mark=float(payload.get("high_water_mark", 0.0)),
            max_drawdown=float(payload.get("max_drawdown", 0.0)),
            max_drawdown_pct=float(payload.get("max_drawdown_pct", 0.0)),
            trade_count=int(payload.get("trade_count", 0)),
            updated_at=from_iso(payload.get("updated_at")),
        )


@dataclass(slots=True)
class CompoundState:
    trade_count: int = 0
    current_lot_size: float = 0.0
    total_compounds: int = 0
    base_balance: float = 0.0
    last_balance: float = 0.0
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_count": self.trade_count,
            "current_lot_size": self.current_lot_size,
            "total_compounds": self.total_compounds,
            "base_balance": self.base_balance,
            "last_balance": self.last_balance,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CompoundState":
        payload = _require_mapping(payload, "compound state")
        return cls(
            trade_count=int(payload.get("trade_count", 0)),
            current_lot_size=float(payload.get("current_lot_size", 0.0)),
            total_compounds=int(payload.get("total_compounds", 0)),
            base_balance=float(payload.get("base_balance", 0.0)),
            last_balance=float(payload.get("last_balance", 0.0)),
            updated_at=from_iso(payload.get("updated_at")),
        )


@dataclass(slots=True)
class TradeStats:
    bankroll: float
    wins: int = 0
    losses: int = 0
    total: int = 0
    last_run: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bankroll": self.bankroll,
            "wins": self.wins,
            "losses": self.losses,
            "total": self.total,
            "last_run": to_iso(self.last_run),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, default_bankroll: float) -> "TradeStats":
        payload = _require_mapping(payload, "trade stats")
        return cls(
            bankroll=float(payload.get("bankroll", default_bankroll)),
            wins=int(payload.get("wins", 0)),
            losses=int(payload.get("losses", 0)),
            total=int(payload.get("total", 0)),
            last_run=from_iso(payload.get("last_run")),
        )


@dataclass(slots=True)
class DecisionRecord:
    created_at: datetime
    symbol: str
    action: str
    score: float
    allowed: bool
    stake: float | None
    trade_id: str | None
    reason_codes: list[str]
    payload: dict[str, Any] = field(default_factory=dict)
