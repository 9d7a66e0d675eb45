from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta

from atlas.clock import to_utc, utc_now
from atlas.config import RiskConfig
from atlas.storage.models import RESULT_LOSS, RESULT_WIN, RiskState
from atlas.storage.state_store import RISK_STATE, JsonStateStore

LOGGER = logging.getLogger(__name__)


class CircuitBreakers:
    """
    Stateful half of the risk engine.

    Two independent breakers share one RiskState:
    - loss streak: ``max_loss_streak`` consecutive losses pause trading for
      ``pause_duration_minutes``.
    - drawdown: a fall from the balance high-water mark larger than
      ``max_drawdown_percent`` of the initial balance pauses trading for
      ``drawdown_pause_minutes``.

    Trading is paused while either breaker is active. A breach while already
    paused overwrites that breaker's deadline; pauses never nest.
    """

    def __init__(self, config: RiskConfig, store: JsonStateStore | None = None):
        self.config = config
        self.store = store
        self._state = self._load()

    @property
    def state(self) -> RiskState:
        return replace(self._state)

    def _load(self) -> RiskState:
        if self.store is None:
            return RiskState()
        state = self.store.load_as(RISK_STATE, RiskState.from_dict, RiskState)
        if state.is_paused and state.pause_until is not None:
            if state.loss_pause_until is None and state.drawdown_pause_until is None:
                # Older snapshots only carried a single deadline.
                state.loss_pause_until = state.pause_until
        self._sync_pause_fields(state)
        LOGGER.info(
            "Risk state loaded: losses_in_row=%d/%d paused=%s",
            state.losses_in_row,
            self.config.max_loss_streak,
            state.is_paused,
        )
        return state

    def save(self) -> bool:
        self._state.updated_at = utc_now()
        if self.store is None:
            return True
        return self.store.save(RISK_STATE, self._state.to_dict())

    @staticmethod
    def _sync_pause_fields(state: RiskState) -> None:
        deadlines = [item for item in (state.loss_pause_until, state.drawdown_pause_until) if item is not None]
        state.is_paused = bool(deadlines)
        state.pause_until = max(deadlines) if deadlines else None

    def init_balance(self, balance: float) -> RiskState:
        value = float(balance)
        if not math.isfinite(value) or value <= 0:
            raise ValueError(f"initial balance must be finite and > 0, got {balance!r}")
        self._state.balance = value
        self._state.initial_balance = value
        self._state.high_water_mark = value
        self.save()
        LOGGER.info("Initial balance set to %.2f", value)
        return self.state

    def register_trade(self, result: str, now: datetime | None = None) -> RiskState:
        outcome = str(result).strip().lower()
        if outcome not in {RESULT_WIN, RESULT_LOSS}:
            raise ValueError(f"trade result must be 'win' or 'loss', got {result!r}")
        current = to_utc(now or utc_now())
        state = self._state
        state.trade_count += 1

        if outcome == RESULT_LOSS:
            state.losses_in_row += 1
            state.max_loss_streak = max(state.max_loss_streak, state.losses_in_row)
            if state.losses_in_row >= self.config.max_loss_streak:
                state.loss_pause_until = current + timedelta(minutes=self.config.pause_duration_minutes)
                LOGGER.warning(
                    "%d consecutive losses, trading paused until %s",
                    state.losses_in_row,
                    state.loss_pause_until.isoformat(),
                )
        else:
            state.losses_in_row = 0

        self._sync_pause_fields(state)
        self.save()
        return self.state

    def update_balance(self, balance: float, now: datetime | None = None) -> RiskState:
        value = float(balance)
        if not math.isfinite(value):
            raise ValueError(f"balance must be finite, got {balance!r}")
        current = to_utc(now or utc_now())
        state = self._state
        if state.initial_balance <= 0:
            state.initial_balance = value
            state.high_water_mark = value
        state.balance = value
        state.high_water_mark = max(state.high_water_mark, value)

        drawdown = max(0.0, state.high_water_mark - value)
        reference = state.initial_balance if state.initial_balance > 0 else state.high_water_mark
        drawdown_pct = drawdown / reference if reference > 0 else 0.0

        if drawdown > state.max_drawdown:
            state.max_drawdown = drawdown
            state.max_drawdown_pct = drawdown_pct
            LOGGER.warning("New max drawdown %.2f (%.1f%%)", drawdown, drawdown_pct * 100)

        if drawdown_pct > self.config.max_drawdown_percent:
            state.drawdown_pause_until = current + timedelta(minutes=self.config.drawdown_pause_minutes)
            LOGGER.error(
                "Drawdown %.1f%% exceeds %.1f%%, trading paused until %s",
                drawdown_pct * 100,
                self.config.max_drawdown_percent * 100,
                state.drawdown_pause_until.isoformat(),
            )

        self._sync_pause_fields(state)
        self.save()
        return self.state

    def check_status(self, now: datetime | None = None) -> RiskState:
        current = to_utc(now or utc_now())
        state = self._state
        changed = False
        if state.loss_pause_until is not None and current >= state.loss_pause_until:
            state.loss_pause_until = None
            state.losses_in_row = 0
            changed = True
            LOGGER.info("Loss-streak pause finished")
        if state.drawdown_pause_until is not None and current >= state.drawdown_pause_until:
            state.drawdown_pause_until = None
            changed = True
            LOGGER.info("Drawdown pause finished")
        if changed:
            self._sync_pause_fields(state)
            if not state.is_paused:
                LOGGER.info("Trading resumed")
            self.save()
        return self.state

    def is_paused(self, now: datetime | None = None) -> bool:
        return self.check_status(now).is_paused
