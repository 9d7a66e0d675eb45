from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Protocol

from atlas.clock import to_utc
from atlas.signals.models import Signal, SignalValidationError, signal_from_payload

LOGGER = logging.getLogger(__name__)


class SignalSource(Protocol):
    name: str

    def get_signal(self, symbol: str) -> dict[str, Any] | None:
        ...


def _read_json(path: Path) -> Any | None:
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def _symbol_entry(payload: Any, symbol: str) -> Any:
    # Producers either write one flat signal or a map keyed by symbol.
    if isinstance(payload, dict) and symbol.upper() in payload:
        return payload[symbol.upper()]
    return payload


class JsonFileSignalSource:
    """Reads the latest signal an external producer dropped into a JSON file."""

    def __init__(self, name: str, path: str | Path):
        self.name = name.strip().lower()
        self.path = Path(path)

    def get_signal(self, symbol: str) -> dict[str, Any] | None:
        payload = _read_json(self.path)
        if payload is None:
            return None
        entry = _symbol_entry(payload, symbol)
        if not isinstance(entry, dict):
            raise SignalValidationError(f"{self.name}: expected an object in {self.path}")
        return entry


@dataclass(frozen=True, slots=True)
class VolatilityReading:
    atr: float | None
    penalty: float | None


class JsonFileVolatilitySource:
    """
    Volatility snapshot written by the volatility producer.

    Accepted keys: ``atr`` (or ``value``) for the raw reading compared with
    ``risk.max_atr_threshold`` and ``penalty`` in [0,1] for the fusion
    penalty.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def read(self, symbol: str) -> VolatilityReading:
        try:
            payload = _read_json(self.path)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Volatility file unreadable %s: %s", self.path, exc)
            return VolatilityReading(atr=None, penalty=None)
        entry = _symbol_entry(payload, symbol)
        if not isinstance(entry, dict):
            return VolatilityReading(atr=None, penalty=None)
        return VolatilityReading(
            atr=_optional_float(entry.get("atr", entry.get("value"))),
            penalty=_optional_float(entry.get("penalty")),
        )


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def collect_signals(
    sources: Iterable[SignalSource],
    *,
    symbol: str,
    now: datetime,
    max_age_seconds: float,
) -> dict[str, Signal]:
    """
    Poll every source once. Missing, stale, invalid or failing sources are
    logged and left out; one bad producer never aborts the tick.
    """
    current = to_utc(now)
    collected: dict[str, Signal] = {}
    for source in sources:
        try:
            payload = source.get_signal(symbol)
            if payload is None:
                LOGGER.debug("No %s signal for %s", source.name, symbol)
                continue
            signal = signal_from_payload(source.name, payload, default_timestamp=current)
        except SignalValidationError as exc:
            LOGGER.warning("Invalid %s signal dropped: %s", source.name, exc)
            continue
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Signal source %s failed: %s", source.name, exc)
            continue
        if signal.is_stale(current, max_age_seconds):
            LOGGER.info(
                "Stale %s signal dropped (timestamp=%s)",
                source.name,
                signal.timestamp.isoformat(),
            )
            continue
        collected[signal.source] = signal
    return collected


def build_signal_sources(files: dict[str, str], base_dir: str | Path | None = None) -> list[JsonFileSignalSource]:
    root = Path(base_dir) if base_dir is not None else None
    sources: list[JsonFileSignalSource] = []
    for name, file_path in files.items():
        path = Path(file_path)
        if root is not None and not path.is_absolute():
            path = root / path
        sources.append(JsonFileSignalSource(name, path))
    return sources
