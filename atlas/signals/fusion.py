from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, Mapping

from atlas.clock import minutes_between, to_utc
from atlas.config import FusionConfig
from atlas.signals.models import Action, FusedSignal, Signal
from atlas.storage.models import TRADE_OPEN, Trade, cooldown_key


def _hold(now: datetime, reason: str, score: float = 0.0, components: dict[str, float] | None = None) -> FusedSignal:
    return FusedSignal(
        action=Action.HOLD,
        score=score,
        reason=reason,
        timestamp=to_utc(now),
        components=components or {},
    )


def _clamp_penalty(value: float | None) -> float:
    if value is None:
        return 0.0
    penalty = float(value)
    if not math.isfinite(penalty):
        return 1.0
    return max(0.0, min(1.0, penalty))


def fuse_signals(
    *,
    primary: Signal | None,
    secondaries: Mapping[str, Signal],
    volatility_penalty: float | None,
    open_trades: Iterable[Trade],
    cooldowns: Mapping[str, datetime],
    symbol: str,
    now: datetime,
    config: FusionConfig,
) -> FusedSignal:
    """
    Combine the primary (technical) signal with the secondary signals into
    one directional decision.

    The primary fixes the direction; secondaries only add or subtract
    confidence. A secondary whose action differs from the primary (HOLD
    included) contributes its negated confidence. ``volatility_penalty`` is
    in [0,1] and is subtracted with ``config.volatility_weight``.

    Pure: ``now``, the open trades and the cooldown map are all inputs and
    nothing is mutated.
    """
    current = to_utc(now)
    max_age = config.max_signal_age_seconds

    if primary is None or primary.action is Action.HOLD:
        return _hold(current, "Primary signal is HOLD")
    if primary.is_stale(current, max_age):
        return _hold(current, f"Primary signal is stale (older than {max_age}s)")

    direction = primary.action
    key = cooldown_key(symbol, direction.value)

    for trade in open_trades:
        if trade.status == TRADE_OPEN and cooldown_key(trade.symbol, trade.direction) == key:
            return _hold(current, f"Duplicate position: {direction.value} already open on {symbol}")

    last_trade_at = cooldowns.get(key)
    if last_trade_at is not None:
        elapsed = minutes_between(current, last_trade_at)
        if elapsed < config.cooldown_minutes:
            remaining = config.cooldown_minutes - elapsed
            return _hold(
                current,
                f"Cooldown active for {symbol} {direction.value}, {remaining:.1f} min remaining",
            )

    weights = config.weights.as_dict()
    components: dict[str, float] = {}
    score = 0.0
    for name, weight in weights.items():
        if name == config.primary_source:
            signed = primary.confidence
        else:
            signal = secondaries.get(name)
            if signal is None or signal.is_stale(current, max_age):
                components[name] = 0.0
                continue
            signed = signal.confidence if signal.action is direction else -signal.confidence
        contribution = weight * signed
        components[name] = contribution
        score += contribution

    penalty = _clamp_penalty(volatility_penalty)
    components["volatility"] = -config.volatility_weight * penalty
    score += components["volatility"]

    score = max(0.0, min(1.0, score))
    breakdown = " | ".join(f"{name}: {value:+.2f}" for name, value in components.items())

    if score < config.min_signal_score:
        return _hold(
            current,
            f"Score {score:.2f} below threshold {config.min_signal_score:.2f} | {breakdown}",
            score=score,
            components=components,
        )

    return FusedSignal(
        action=direction,
        score=score,
        reason=f"Score {score:.2f} | {breakdown}",
        timestamp=current,
        components=components,
    )
