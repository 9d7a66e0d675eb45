from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)


class StatusWriter:
    """Writes the engine status snapshot read by the status API and external dashboards."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def write(self, payload: dict[str, Any]) -> bool:
        snapshot = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(snapshot, indent=2, ensure_ascii=True, default=str), encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as exc:
            LOGGER.error("Could not write status snapshot %s: %s", self.path, exc)
            return False
        return True

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Unreadable status snapshot %s: %s", self.path, exc)
            return None
        return payload if isinstance(payload, dict) else None
