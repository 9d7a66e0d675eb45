from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from atlas.clock import parse_dt, to_utc


class SignalValidationError(ValueError):
    """Signal payload could not be normalized."""


class Action(str, Enum):
    CALL = "CALL"
    PUT = "PUT"
    HOLD = "HOLD"

    @classmethod
    def parse(cls, raw: Any) -> "Action":
        if isinstance(raw, Action):
            return raw
        value = str(raw or "").strip().upper()
        aliases = {
            "BUY": "CALL",
            "UP": "CALL",
            "LONG": "CALL",
            "SELL": "PUT",
            "DOWN": "PUT",
            "SHORT": "PUT",
            "NEUTRAL": "HOLD",
            "": "HOLD",
        }
        value = aliases.get(value, value)
        try:
            return cls(value)
        except ValueError as exc:
            raise SignalValidationError(f"Unknown signal action '{raw}'") from exc


@dataclass(frozen=True, slots=True)
class Signal:
    source: str
    action: Action
    confidence: float
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_stale(self, now: datetime, max_age_seconds: float) -> bool:
        return (to_utc(now) - to_utc(self.timestamp)).total_seconds() > max_age_seconds


@dataclass(frozen=True, slots=True)
class FusedSignal:
    action: Action
    score: float
    reason: str
    timestamp: datetime
    components: dict[str, float] = field(default_factory=dict)

    @property
    def is_trade(self) -> bool:
        return self.action is not Action.HOLD

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "score": round(self.score, 6),
            "reason": self.reason,
            "timestamp": to_utc(self.timestamp).isoformat(),
            "components": {key: round(value, 6) for key, value in self.components.items()},
        }


def signal_from_payload(source: str, payload: dict[str, Any], *, default_timestamp: datetime) -> Signal:
    """
    Normalize a producer payload into a Signal.

    Producers disagree on key names, so both spellings are accepted:
    - action: "action" | "direction"
    - confidence: "confidence" | "score"
    - timestamp: "timestamp" | "time" (ISO-8601, defaults to default_timestamp)

    Any remaining keys are carried in metadata.
    """
    if not isinstance(payload, dict):
        raise SignalValidationError(f"{source}: payload must be an object")
    action = Action.parse(payload.get("action", payload.get("direction")))
    raw_confidence = payload.get("confidence", payload.get("score", 0.0))
    try:
        confidence = float(raw_confidence if raw_confidence is not None else 0.0)
    except (TypeError, ValueError) as exc:
        raise SignalValidationError(f"{source}: confidence is not a number") from exc
    if not math.isfinite(confidence) or not (0.0 <= confidence <= 1.0):
        raise SignalValidationError(f"{source}: confidence {raw_confidence!r} outside [0,1]")

    raw_ts = payload.get("timestamp") or payload.get("time")
    if raw_ts is None:
        timestamp = to_utc(default_timestamp)
    elif isinstance(raw_ts, datetime):
        timestamp = to_utc(raw_ts)
    else:
        try:
            timestamp = parse_dt(str(raw_ts))
        except ValueError as exc:
            raise SignalValidationError(f"{source}: bad timestamp {raw_ts!r}") from exc

    known = {"action", "direction", "confidence", "score", "timestamp", "time", "source"}
    metadata = {key: value for key, value in payload.items() if key not in known}
    return Signal(
        source=source.strip().lower(),
        action=action,
        confidence=confidence,
        timestamp=timestamp,
        metadata=metadata,
    )
