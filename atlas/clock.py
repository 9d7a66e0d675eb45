from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_dt(value: str) -> datetime:
    normalized = value.strip().replace(" ", "T")
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(normalized))


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return to_utc(dt).isoformat()


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return parse_dt(str(value))


def minutes_between(later: datetime, earlier: datetime) -> float:
    return (to_utc(later) - to_utc(earlier)).total_seconds() / 60.0

