from __future__ import annotations

import logging
import math
import random
import uuid
from typing import Protocol

from atlas.execution.broker_client import BrokerAPIError, BrokerClient
from atlas.storage.models import (
    RESULT_LOSS,
    RESULT_WIN,
    TRADE_CLOSED,
    TRADE_OPEN,
    Settlement,
    Trade,
    TradeOrder,
)

LOGGER = logging.getLogger(__name__)


class ExecutionBackend(Protocol):
    name: str

    def place_trade(self, order: TradeOrder) -> str:
        ...

    def check_result(self, trade: Trade) -> Settlement:
        ...

    def get_balance(self) -> float | None:
        ...


class SimulatedBackend:
    """
    In-process backend. Every expired trade settles on a coin flip weighted by
    ``win_probability``; a win pays ``stake * payout_rate`` and a loss costs
    the stake.
    """

    name = "simulated"

    def __init__(
        self,
        *,
        win_probability: float = 0.5,
        payout_rate: float = 0.85,
        seed: int | None = None,
        rng: random.Random | None = None,
    ):
        self.win_probability = float(win_probability)
        self.payout_rate = float(payout_rate)
        self.rng = rng or random.Random(seed)
        self.placed: list[tuple[str, TradeOrder]] = []

    def place_trade(self, order: TradeOrder) -> str:
        trade_id = f"sim-{uuid.uuid4().hex[:12]}"
        self.placed.append((trade_id, order))
        LOGGER.info(
            "[SIMULATED] Trade %s placed %s %s stake=%.2f expiry=%dm",
            trade_id,
            order.symbol,
            order.direction,
            order.stake,
            order.expiry_minutes,
        )
        return trade_id

    def check_result(self, trade: Trade) -> Settlement:
        won = self.rng.random() < self.win_probability
        if won:
            return Settlement(status=TRADE_CLOSED, result=RESULT_WIN, profit=round(trade.stake * self.payout_rate, 2))
        return Settlement(status=TRADE_CLOSED, result=RESULT_LOSS, profit=-round(trade.stake, 2))

    def get_balance(self) -> float | None:
        return None


class BrokerBackend:
    name = "live"

    def __init__(self, client: BrokerClient):
        self.client = client

    def place_trade(self, order: TradeOrder) -> str:
        trade_id = self.client.place_trade(
            symbol=order.symbol,
            direction=order.direction,
            amount=order.stake,
            expiry_minutes=order.expiry_minutes,
        )
        LOGGER.info("[LIVE] Trade %s placed %s %s stake=%.2f", trade_id, order.symbol, order.direction, order.stake)
        return trade_id

    def check_result(self, trade: Trade) -> Settlement:
        payload = self.client.get_trade(trade.trade_id)
        if not isinstance(payload, dict):
            raise BrokerAPIError(f"Unexpected settlement payload for {trade.trade_id}: {payload!r}")
        status = str(payload.get("status", TRADE_OPEN)).strip().lower()
        if status != TRADE_CLOSED:
            return Settlement(status=TRADE_OPEN)
        result = str(payload.get("result", "")).strip().lower()
        if result not in {RESULT_WIN, RESULT_LOSS}:
            raise BrokerAPIError(f"Closed trade {trade.trade_id} has no valid result: {payload}")
        raw_profit = payload.get("profit")
        if raw_profit is None:
            profit = 0.0 if result == RESULT_WIN else -trade.stake
        else:
            try:
                profit = float(raw_profit)
            except (TypeError, ValueError) as exc:
                raise BrokerAPIError(f"Closed trade {trade.trade_id} has an unreadable profit: {raw_profit!r}") from exc
            if not math.isfinite(profit):
                raise BrokerAPIError(f"Closed trade {trade.trade_id} has a non-finite profit: {raw_profit!r}")
        return Settlement(status=TRADE_CLOSED, result=result, profit=profit)

    def get_balance(self) -> float | None:
        return self.client.get_balance()
