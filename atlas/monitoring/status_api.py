from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from atlas.monitoring.dashboard import StatusWriter


def create_status_app(
    *,
    status_provider: Callable[[], dict[str, Any]] | None = None,
    snapshot: StatusWriter | None = None,
) -> FastAPI:
    """
    Read-only HTTP view of the engine.

    With a ``status_provider`` (normally ``TradingEngine.status``) the app
    serves live state from the same process. Otherwise it serves the last
    snapshot written by ``StatusWriter``.
    """
    app = FastAPI(title="Atlas Status API", version="1.0.0")

    def _current() -> dict[str, Any] | None:
        if status_provider is not None:
            return status_provider()
        if snapshot is not None:
            return snapshot.read()
        return None

    @app.get("/health")
    def health() -> JSONResponse:
        payload = _current() or {}
        return JSONResponse(
            {
                "status": "ok",
                "time": datetime.now(timezone.utc).isoformat(),
                "mode": payload.get("mode"),
                "is_cycle_running": payload.get("is_cycle_running", False),
                "last_run": payload.get("last_run"),
                "stats": payload.get("stats"),
            }
        )

    @app.get("/status")
    def status() -> JSONResponse:
        payload = _current()
        if payload is None:
            raise HTTPException(status_code=503, detail="status not available yet")
        return JSONResponse(payload)

    return app
