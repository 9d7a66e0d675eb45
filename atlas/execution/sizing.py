from __future__ import annotations

import logging
import math
from dataclasses import replace

from atlas.clock import utc_now
from atlas.config import SizingConfig
from atlas.storage.models import CompoundState
from atlas.storage.state_store import COMPOUND_STATE, JsonStateStore

LOGGER = logging.getLogger(__name__)


class SizingError(ValueError):
    """Stake could not be computed from the given inputs."""


def calculate_stake(
    bankroll: float,
    recommended_stake_pct: float,
    min_stake: float = 1.0,
    max_stake: float = 1000.0,
) -> float:
    """Return ``bankroll * pct / 100`` clamped to ``[min_stake, max_stake]``, rounded to cents."""
    bankroll = float(bankroll)
    pct = float(recommended_stake_pct)
    if not math.isfinite(bankroll) or bankroll <= 0:
        raise SizingError(f"bankroll must be finite and > 0, got {bankroll!r}")
    if not math.isfinite(pct) or pct < 0:
        raise SizingError(f"recommended_stake_pct must be finite and >= 0, got {pct!r}")
    if not math.isfinite(min_stake) or not math.isfinite(max_stake) or min_stake <= 0 or max_stake < min_stake:
        raise SizingError(f"invalid stake bounds [{min_stake!r}, {max_stake!r}]")

    raw = bankroll * pct / 100.0
    stake = round(max(min_stake, min(raw, max_stake)), 2)
    if stake <= 0:
        raise SizingError(f"computed stake {stake!r} is not positive")
    return stake


def ensure_affordable(stake: float, bankroll: float) -> float:
    """Reject a stake the current bankroll cannot cover."""
    bankroll = float(bankroll)
    if not math.isfinite(bankroll) or bankroll <= 0:
        raise SizingError(f"bankroll exhausted: {bankroll!r}")
    if stake > bankroll:
        raise SizingError(f"stake {stake:.2f} exceeds bankroll {bankroll:.2f}")
    return stake


class CompoundTracker:
    """
    Counts closed trades and, every ``compound_interval`` closes, rebases the
    sizing baseline on the live balance.

    ``current_lot_size`` is the stake the baseline alone would produce at
    ``compound_risk_pct``; the per-trade stake still comes from
    ``calculate_stake(base_balance, assessment.recommended_stake_pct)``.
    """

    def __init__(self, config: SizingConfig, store: JsonStateStore | None = None, initial_balance: float = 1000.0):
        self.config = config
        self.store = store
        self._state = self._load(initial_balance)

    @property
    def state(self) -> CompoundState:
        return replace(self._state)

    @property
    def base_balance(self) -> float:
        return self._state.base_balance

    @property
    def current_lot_size(self) -> float:
        return self._state.current_lot_size

    def _lot_size(self, balance: float) -> float:
        return calculate_stake(
            balance,
            self.config.compound_risk_pct * 100.0,
            self.config.min_stake_absolute,
            self.config.max_stake_absolute,
        )

    def _load(self, initial_balance: float) -> CompoundState:
        state = CompoundState()
        if self.store is not None:
            state = self.store.load_as(COMPOUND_STATE, CompoundState.from_dict, CompoundState)
        if state.base_balance <= 0:
            state.base_balance = float(initial_balance)
            state.last_balance = float(initial_balance)
            state.current_lot_size = self._lot_size(initial_balance)
            self._state = state
            self.save()
            LOGGER.info("Compound state initialised: lot_size=%.2f", state.current_lot_size)
        else:
            LOGGER.info(
                "Compound state loaded: trade_count=%d lot_size=%.2f base_balance=%.2f",
                state.trade_count,
                state.current_lot_size,
                state.base_balance,
            )
        return state

    def save(self) -> bool:
        self._state.updated_at = utc_now()
        if self.store is None:
            return True
        return self.store.save(COMPOUND_STATE, self._state.to_dict())

    def on_trade_closed(self, balance: float, profit: float = 0.0) -> CompoundState:
        balance = float(balance)
        if not math.isfinite(balance):
            raise SizingError(f"balance must be finite, got {balance!r}")

        trade_count = self._state.trade_count + 1
        if trade_count % self.config.compound_interval == 0:
            self._rebase(balance)
        self._state.trade_count = trade_count
        self._state.last_balance = balance
        LOGGER.debug("Trade closed profit=%.2f trade_count=%d", profit, trade_count)
        self.save()
        return self.state

    def _rebase(self, balance: float) -> None:
        try:
            new_lot = self._lot_size(balance)
        except SizingError as exc:
            LOGGER.warning("Compounding skipped, baseline kept at %.2f: %s", self._state.base_balance, exc)
            return
        old_lot = self._state.current_lot_size
        self._state.base_balance = balance
        self._state.current_lot_size = new_lot
        self._state.total_compounds += 1
        LOGGER.info(
            "Compounding applied after %d closes: balance=%.2f lot %.2f -> %.2f",
            self.config.compound_interval,
            balance,
            old_lot,
            new_lot,
        )

    def reset_counter(self) -> CompoundState:
        LOGGER.info("Compound counter reset")
        self._state.trade_count = 0
        self.save()
        return self.state

    def stake_for(self, recommended_stake_pct: float) -> float:
        return calculate_stake(
            self._state.base_balance,
            recommended_stake_pct,
            self.config.min_stake_absolute,
            self.config.max_stake_absolute,
        )
