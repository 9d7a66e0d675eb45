from __future__ import annotations

import json
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

import requests

from atlas.clock import parse_dt, utc_now

LOGGER = logging.getLogger(__name__)

HIGH_IMPACT_LABELS = {"HIGH", "3", "HIGH_IMPACT", "HIGH IMPACT EXPECTED"}


class CalendarUnavailableError(RuntimeError):
    """Event feed could not be read; callers must treat the news state as unknown."""


@dataclass(slots=True)
class Event:
    event_id: str
    title: str
    currency: str
    impact: str
    time: datetime
    source: str = "unknown"


class CalendarProvider(Protocol):
    def get_upcoming_high_impact_events(
        self,
        window_minutes: int,
        now: datetime | None = None,
    ) -> list[Event]:
        ...


def _is_relevant_event(event: Event, currencies: set[str]) -> bool:
    high_impact = event.impact.strip().upper() in HIGH_IMPACT_LABELS
    if not currencies:
        return high_impact
    currency = event.currency.upper()
    return high_impact and any(item in currency for item in currencies)


def _event_from_item(item: dict[str, Any], index: int, source: str) -> Event | None:
    ts = item.get("timeUTC") or item.get("time") or item.get("datetime") or item.get("date")
    if ts is None:
        return None
    try:
        event_time = parse_dt(str(ts))
    except ValueError:
        return None
    return Event(
        event_id=str(item.get("id", index)),
        title=str(item.get("title") or item.get("event") or "Untitled"),
        currency=str(item.get("currency", "USD")),
        impact=str(item.get("impact") or item.get("importance") or "HIGH"),
        time=event_time,
        source=source,
    )


def _events_from_payload(payload: Any, source: str) -> list[Event]:
    raw_events = payload.get("events", payload) if isinstance(payload, dict) else payload
    if not isinstance(raw_events, list):
        raise CalendarUnavailableError(f"{source}: expected a list of events")
    events: list[Event] = []
    for index, item in enumerate(raw_events):
        if not isinstance(item, dict):
            continue
        event = _event_from_item(item, index, source)
        if event is not None:
            events.append(event)
    return sorted(events, key=lambda x: x.time)


def _within_window(events: Iterable[Event], now: datetime, window_minutes: int, currencies: set[str]) -> list[Event]:
    window = timedelta(minutes=max(0, window_minutes))
    return [
        event
        for event in events
        if (now - window) <= event.time <= (now + window) and _is_relevant_event(event, currencies)
    ]


def load_events_file(json_path: str | Path, currencies: Iterable[str] = ()) -> list[Event]:
    """All relevant high-impact events in a calendar JSON file, sorted by time."""
    path = Path(json_path)
    if not path.exists():
        raise CalendarUnavailableError(f"Calendar file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise CalendarUnavailableError(f"Calendar file unreadable: {path}: {exc}") from exc
    wanted = {str(item).upper() for item in currencies}
    return [event for event in _events_from_payload(payload, "file") if _is_relevant_event(event, wanted)]


class FileCalendarProvider:
    """Reads events dropped by an external calendar fetcher into a JSON file."""

    def __init__(self, json_path: str | Path, currencies: Iterable[str] = ()):
        self.json_path = Path(json_path)
        self.currencies = {str(item).upper() for item in currencies}

    def get_upcoming_high_impact_events(
        self,
        window_minutes: int,
        now: datetime | None = None,
    ) -> list[Event]:
        events = load_events_file(self.json_path, self.currencies)
        return _within_window(events, now or utc_now(), window_minutes, self.currencies)


class HttpCalendarProvider:
    """
    Generic HTTP calendar provider.

    Expected response: list[dict] or {"events": list[dict]}.
    Fields used (fallback keys supported):
    - time: "timeUTC" | "time" | "datetime" | "date"
    - impact: "impact" | "importance"
    - currency: "currency"
    - title: "title" | "event"
    """

    def __init__(
        self,
        *,
        url: str,
        token: str | None = None,
        currencies: Iterable[str] = (),
        timeout_seconds: int = 10,
        cache_ttl_seconds: int = 300,
        request_max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        session: requests.Session | None = None,
        sleep=time.sleep,
    ):
        self.url = url
        self.token = token
        self.currencies = {str(item).upper() for item in currencies}
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.0, float(backoff_base_seconds))
        self.session = session or requests.Session()
        self._sleep = sleep
        self._cache_events: list[Event] = []
        self._cache_expiry: datetime = datetime.min.replace(tzinfo=timezone.utc)

    def get_upcoming_high_impact_events(
        self,
        window_minutes: int,
        now: datetime | None = None,
    ) -> list[Event]:
        current = now or utc_now()
        if current >= self._cache_expiry:
            self._cache_events = self._fetch_events()
            self._cache_expiry = current + timedelta(seconds=self.cache_ttl_seconds)
        return _within_window(self._cache_events, current, window_minutes, self.currencies)

    def _fetch_events(self) -> list[Event]:
        headers: dict[str, str] = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        last_error: Exception | None = None
        for attempt in range(1, self.request_max_attempts + 1):
            try:
                response = self.session.get(self.url, headers=headers, timeout=self.timeout_seconds)
                response.raise_for_status()
                return _events_from_payload(response.json(), "http")
            except (requests.RequestException, ValueError) as exc:
                last_error = exc
                if attempt >= self.request_max_attempts:
                    break
                delay = self.backoff_base_seconds * (2 ** (attempt - 1))
                delay += random.uniform(0.0, max(0.01, delay * 0.2))
                LOGGER.warning(
                    "Retrying calendar fetch attempt=%d/%d sleep=%.2fs reason=%s",
                    attempt,
                    self.request_max_attempts,
                    delay,
                    type(exc).__name__,
                )
                self._sleep(delay)
        raise CalendarUnavailableError(
            f"Calendar fetch failed after {self.request_max_attempts} attempts: {last_error}"
        ) from last_error


def build_calendar_provider(
    *,
    provider_name: str,
    events_file: str | Path,
    http_url: str | None,
    http_token: str | None,
    currencies: Iterable[str],
    timeout_seconds: int,
    cache_ttl_seconds: int,
    request_max_attempts: int,
    backoff_base_seconds: float,
) -> CalendarProvider:
    if provider_name.lower() == "http" and http_url:
        LOGGER.info("Using HTTP calendar provider: %s", http_url)
        return HttpCalendarProvider(
            url=http_url,
            token=http_token,
            currencies=currencies,
            timeout_seconds=timeout_seconds,
            cache_ttl_seconds=cache_ttl_seconds,
            request_max_attempts=request_max_attempts,
            backoff_base_seconds=backoff_base_seconds,
        )
    LOGGER.info("Using file calendar provider: %s", events_file)
    return FileCalendarProvider(events_file, currencies=currencies)
