from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from atlas.storage.models import ClosedTradeEvent, RiskState

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AlertConfig:
    enabled: bool = True
    discord_webhook: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    cooldown_seconds: int = 30

    @classmethod
    def from_env(cls, *, enabled: bool = True) -> "AlertConfig":
        return cls(
            enabled=enabled,
            discord_webhook=os.getenv("DISCORD_WEBHOOK_URL"),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID"),
            cooldown_seconds=int(os.getenv("ALERT_COOLDOWN_SECONDS", "30")),
        )


class AlertDispatcher:
    """Fan-out to Discord and Telegram. Sends with the same key are rate limited."""

    def __init__(
        self,
        config: AlertConfig,
        *,
        post: Callable[..., Any] = requests.post,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._post = post
        self._clock = clock
        self._last_sent_ts: dict[str, float] = {}
        self.sent: list[str] = []

    def send(
        self,
        *,
        event: str,
        message: str,
        level: str = "info",
        context: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> bool:
        if not self.config.enabled:
            return False
        key = dedupe_key or event
        now = self._clock()
        prev = self._last_sent_ts.get(key)
        if prev is not None and (now - prev) < self.config.cooldown_seconds:
            return False
        self._last_sent_ts[key] = now

        details = f"[{level.upper()}] {event}: {message}"
        if context:
            details += " | " + " ".join(f"{k}={v}" for k, v in context.items())

        self.sent.append(details)
        self._send_discord(details)
        self._send_telegram(details)
        return True

    def trade_closed(self, event: ClosedTradeEvent, bankroll: float) -> bool:
        trade = event.trade
        return self.send(
            event="TRADE_CLOSED",
            message=f"{trade.symbol} {trade.direction} {event.result.upper()} {event.profit:+.2f}",
            context={"trade_id": trade.trade_id, "bankroll": f"{bankroll:.2f}"},
            dedupe_key=f"trade:{trade.trade_id}",
        )

    def breaker_tripped(self, state: RiskState) -> bool:
        until = state.pause_until.isoformat() if state.pause_until else "-"
        return self.send(
            event="TRADING_PAUSED",
            message=f"Circuit breaker active until {until}",
            level="warning",
            context={
                "losses_in_row": state.losses_in_row,
                "max_drawdown_pct": f"{state.max_drawdown_pct:.2%}",
            },
            dedupe_key=f"paused:{until}",
        )

    def _send_discord(self, text: str) -> None:
        webhook = (self.config.discord_webhook or "").strip()
        if not webhook:
            return
        try:
            response = self._post(webhook, json={"content": text}, timeout=10)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Discord alert failed: %s", exc)

    def _send_telegram(self, text: str) -> None:
        bot_token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not bot_token or not chat_id:
            return
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text}
        try:
            response = self._post(url, json=payload, timeout=10)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Telegram alert failed: %s", exc)
