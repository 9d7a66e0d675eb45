from __future__ import annotations

from datetime import datetime, timedelta

from atlas.clock import to_utc
from atlas.news.calendar_provider import Event


def blocking_events(now: datetime, events: list[Event], block_minutes: int) -> list[Event]:
    window = timedelta(minutes=block_minutes)
    current = to_utc(now)
    return [event for event in events if abs(to_utc(event.time) - current) <= window]


def is_blocked(now: datetime, events: list[Event], block_minutes: int = 5) -> bool:
    return len(blocking_events(now, events, block_minutes)) > 0
