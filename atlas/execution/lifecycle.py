from __future__ import annotations

import logging
import math
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

from atlas.clock import to_utc, utc_now
from atlas.execution.backends import ExecutionBackend
from atlas.execution.broker_client import BrokerAPIError
from atlas.storage.models import (
    TRADE_CLOSED,
    TRADE_OPEN,
    ClosedTradeEvent,
    Settlement,
    Trade,
    TradeOrder,
    cooldown_key,
)
from atlas.storage.state_store import OPEN_TRADES, JsonStateStore

LOGGER = logging.getLogger(__name__)

VALID_DIRECTIONS = {"CALL", "PUT"}


class DuplicateTradeError(ValueError):
    """An open trade already exists for the same symbol and direction."""


def _load_trades(payload: object) -> list[Trade]:
    if not isinstance(payload, list):
        raise ValueError("open trades payload must be a list")
    trades: list[Trade] = []
    for item in payload:
        try:
            trade = Trade.from_dict(item)
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Skipping unreadable open trade %r: %s", item, exc)
            continue
        if trade.status == TRADE_OPEN:
            trades.append(trade)
    return trades


class TradeLifecycleManager:
    """
    Owns the open-trade list. Places trades on the backend, polls expired ones
    for settlement and hands closed trades back as ClosedTradeEvent. Risk and
    sizing bookkeeping is left to the caller.
    """

    def __init__(self, *, backend: ExecutionBackend, store: JsonStateStore | None = None):
        self.backend = backend
        self.store = store
        self.lock = threading.Lock()
        self._open: list[Trade] = []
        if store is not None:
            self._open = store.load_as(OPEN_TRADES, _load_trades, list)
            if self._open:
                LOGGER.info("Restored %d open trade(s)", len(self._open))

    def open_trades(self) -> list[Trade]:
        with self.lock:
            return list(self._open)

    def save(self) -> bool:
        if self.store is None:
            return True
        with self.lock:
            payload = [trade.to_dict() for trade in self._open]
        return self.store.save(OPEN_TRADES, payload)

    @staticmethod
    def _validate(order: TradeOrder) -> None:
        if order.direction not in VALID_DIRECTIONS:
            raise ValueError(f"direction must be CALL or PUT, got {order.direction!r}")
        if not math.isfinite(order.stake) or order.stake <= 0:
            raise ValueError(f"stake must be finite and > 0, got {order.stake!r}")
        if order.expiry_minutes <= 0:
            raise ValueError(f"expiry_minutes must be > 0, got {order.expiry_minutes!r}")
        if not order.symbol.strip():
            raise ValueError("symbol must not be empty")

    def place_trade(self, order: TradeOrder, now: datetime | None = None) -> Trade:
        self._validate(order)
        key = cooldown_key(order.symbol, order.direction)
        with self.lock:
            if any(cooldown_key(item.symbol, item.direction) == key for item in self._open):
                raise DuplicateTradeError(f"Open {order.direction} trade already exists for {order.symbol}")

        placed_at = to_utc(now or utc_now())
        # Dispatch failures propagate and nothing is recorded.
        trade_id = self.backend.place_trade(order)
        trade = Trade(
            trade_id=trade_id,
            symbol=order.symbol,
            direction=order.direction,
            stake=order.stake,
            placed_at=placed_at,
            expiry_at=placed_at + timedelta(minutes=order.expiry_minutes),
            status=TRADE_OPEN,
            backend=self.backend.name,
        )
        with self.lock:
            self._open.append(trade)
        self.save()
        LOGGER.info(
            "Trade opened id=%s %s %s stake=%.2f expiry_at=%s",
            trade.trade_id,
            trade.symbol,
            trade.direction,
            trade.stake,
            trade.expiry_at.isoformat(),
        )
        return trade

    def check_result(self, trade: Trade, now: datetime | None = None) -> Settlement:
        current = to_utc(now or utc_now())
        if current < trade.expiry_at:
            return Settlement(status=TRADE_OPEN)
        try:
            return self.backend.check_result(trade)
        except BrokerAPIError as exc:
            LOGGER.warning("Could not check result for %s, retrying next poll: %s", trade.trade_id, exc)
            return Settlement(status=TRADE_OPEN)

    def remove_trade(self, trade_id: str) -> bool:
        with self.lock:
            before = len(self._open)
            self._open = [item for item in self._open if item.trade_id != trade_id]
            removed = len(self._open) != before
        if removed:
            self.save()
        return removed

    def next_settlement_at(self) -> datetime | None:
        with self.lock:
            if not self._open:
                return None
            return min(item.expiry_at for item in self._open)

    def reconcile(
        self,
        now: datetime | None = None,
        on_closed: Callable[[ClosedTradeEvent], None] | None = None,
    ) -> list[ClosedTradeEvent]:
        """
        Settle every due trade. ``on_closed`` runs before a trade leaves the
        open list; if it raises, that trade and the remaining ones stay open.
        """
        current = to_utc(now or utc_now())
        closed: list[ClosedTradeEvent] = []
        for trade in self.open_trades():
            if current < trade.expiry_at:
                continue
            settlement = self.check_result(trade, current)
            if not settlement.is_closed:
                continue
            settled = replace(
                trade,
                status=TRADE_CLOSED,
                result=settlement.result,
                profit=float(settlement.profit or 0.0),
            )
            event = ClosedTradeEvent(
                trade=settled,
                result=str(settlement.result),
                profit=settled.profit,
                closed_at=current,
            )
            LOGGER.info(
                "Trade closed id=%s result=%s profit=%.2f",
                settled.trade_id,
                settled.result,
                settled.profit,
            )
            if on_closed is not None:
                on_closed(event)
            self.remove_trade(trade.trade_id)
            closed.append(event)
        return closed
