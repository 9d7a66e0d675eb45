from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime

from atlas.config import RiskConfig
from atlas.news.calendar_provider import Event
from atlas.news.gate import blocking_events


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    allowed: bool
    reason: str
    recommended_stake_pct: float
    reason_codes: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "recommended_stake_pct": self.recommended_stake_pct,
            "reason_codes": list(self.reason_codes),
        }


def _deny(reason: str, code: str) -> RiskAssessment:
    return RiskAssessment(allowed=False, reason=reason, recommended_stake_pct=0.0, reason_codes=(code,))


def assess_risk(
    *,
    now: datetime,
    events: list[Event] | None,
    volatility: float | None,
    config: RiskConfig,
    losses_in_row: int = 0,
) -> RiskAssessment:
    """
    Per-cycle pre-trade gate. Pure: the clock, the event list and the
    volatility reading are all passed in.

    ``events=None`` means the calendar feed could not be read. That is
    treated as an unknown news state and denied.
    """
    if events is None:
        return _deny("Economic calendar unavailable, news state unknown", "NEWS_FEED_UNAVAILABLE")

    blockers = blocking_events(now, events, config.news_window_minutes)
    if blockers:
        first = blockers[0]
        return _deny(
            f"High-impact event '{first.title}' ({first.currency}) at {first.time.isoformat()} "
            f"within +/-{config.news_window_minutes} min",
            "NEWS_BLACKOUT",
        )

    stake_pct = float(config.default_risk_pct)
    codes: list[str] = []
    reasons: list[str] = []

    if losses_in_row > 0:
        stake_pct = min(stake_pct, float(config.reduced_risk_pct))
        codes.append("LOSS_RECOVERY")
        reasons.append(f"{losses_in_row} loss(es) in a row, stake capped at {config.reduced_risk_pct}%")

    if volatility is None:
        stake_pct /= 2.0
        codes.append("VOLATILITY_UNKNOWN")
        reasons.append("no volatility reading, stake halved")
    elif not math.isfinite(volatility) or volatility < 0:
        return _deny(f"Invalid volatility reading {volatility!r}", "INVALID_VOLATILITY")
    elif volatility > config.max_atr_threshold:
        stake_pct /= 2.0
        codes.append("HIGH_VOLATILITY")
        reasons.append(f"volatility {volatility:.5f} > {config.max_atr_threshold:.5f}, stake halved")

    if not codes:
        codes.append("RISK_OK")
        reasons.append("risk accepted")
    return RiskAssessment(
        allowed=True,
        reason="; ".join(reasons),
        recommended_stake_pct=round(stake_pct, 6),
        reason_codes=tuple(codes),
    )
