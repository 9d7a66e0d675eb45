from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, TypeVar

LOGGER = logging.getLogger(__name__)

RISK_STATE = "risk_state"
COMPOUND_STATE = "compound_state"
OPEN_TRADES = "open_trades"
COOLDOWNS = "cooldowns"
AUTOMATION_STATE = "automation_state"

T = TypeVar("T")


class JsonStateStore:
    """
    One JSON file per owning component under a single directory.

    Writes go to ``<name>.json.tmp`` and are swapped in with ``Path.replace`` so
    a crash mid-write leaves the previous file intact. Reads never raise: a
    missing or unparsable file is reported as ``None`` and the caller falls
    back to its defaults.
    """

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)

    def path_for(self, name: str) -> Path:
        return self.state_dir / f"{name}.json"

    def load(self, name: str) -> Any | None:
        path = self.path_for(name)
        if not path.exists():
            LOGGER.info("No %s state at %s, starting from defaults", name, path)
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Corrupt %s state at %s (%s), starting from defaults", name, path, exc)
            return None

    def load_as(self, name: str, parser: Callable[[Any], T], default: Callable[[], T]) -> T:
        raw = self.load(name)
        if raw is None:
            return default()
        try:
            return parser(raw)
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Invalid %s state payload (%s), starting from defaults", name, exc)
            return default()

    def save(self, name: str, payload: Any) -> bool:
        path = self.path_for(name)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=True), encoding="utf-8")
            tmp_path.replace(path)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.error("Could not persist %s state to %s: %s", name, path, exc)
            return False
        return True
