from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from atlas.clock import from_iso, to_iso, to_utc, utc_now
from atlas.config import AppConfig
from atlas.execution.broker_client import BrokerAPIError
from atlas.execution.lifecycle import DuplicateTradeError, TradeLifecycleManager
from atlas.execution.sizing import CompoundTracker, SizingError, ensure_affordable
from atlas.monitoring.alerts import AlertDispatcher
from atlas.monitoring.dashboard import StatusWriter
from atlas.news.calendar_provider import CalendarProvider, CalendarUnavailableError, Event
from atlas.risk.assessor import RiskAssessment, assess_risk
from atlas.risk.breakers import CircuitBreakers
from atlas.signals.fusion import fuse_signals
from atlas.signals.models import FusedSignal
from atlas.signals.sources import JsonFileVolatilitySource, SignalSource, VolatilityReading, collect_signals
from atlas.storage.journal import Journal
from atlas.storage.models import (
    RESULT_WIN,
    ClosedTradeEvent,
    DecisionRecord,
    TradeOrder,
    TradeStats,
    cooldown_key,
)
from atlas.storage.state_store import AUTOMATION_STATE, COOLDOWNS, JsonStateStore

LOGGER = logging.getLogger("atlas")

CYCLE_TRADED = "TRADED"
CYCLE_HOLD = "HOLD"
CYCLE_DENIED = "DENIED"
CYCLE_PAUSED = "PAUSED"
CYCLE_SKIPPED_OVERLAP = "SKIPPED_OVERLAP"
CYCLE_ERROR = "ERROR"

SETTLEMENT_RETRY_SECONDS = 5


@dataclass(slots=True)
class CycleOutcome:
    started_at: datetime
    finished_at: datetime
    status: str
    action: str = "HOLD"
    score: float = 0.0
    reason: str = ""
    trade_id: str | None = None
    closed_trades: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "status": self.status,
            "action": self.action,
            "score": round(self.score, 6),
            "reason": self.reason,
            "trade_id": self.trade_id,
            "closed_trades": self.closed_trades,
        }


def _load_cooldowns(payload: Any) -> dict[str, datetime]:
    if not isinstance(payload, dict):
        raise ValueError("cooldowns payload must be an object")
    cooldowns: dict[str, datetime] = {}
    for key, value in payload.items():
        try:
            parsed = from_iso(value)
        except ValueError:
            LOGGER.warning("Skipping unreadable cooldown %s=%r", key, value)
            continue
        if parsed is not None:
            cooldowns[str(key)] = parsed
    return cooldowns


class TradingEngine:
    """
    One decision loop for one symbol.

    Each tick settles expired trades first, feeds the closures into the
    breakers, the compounding tracker and the journal, and only then runs the
    pre-trade pipeline: breaker check, calendar, risk assessment, signal
    fusion, sizing and placement. Ticks never overlap.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        lifecycle: TradeLifecycleManager,
        breakers: CircuitBreakers,
        compound: CompoundTracker,
        calendar: CalendarProvider,
        signal_sources: Iterable[SignalSource],
        store: JsonStateStore,
        volatility_source: JsonFileVolatilitySource | None = None,
        journal: Journal | None = None,
        alerts: AlertDispatcher | None = None,
        status_writer: StatusWriter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.symbol = config.execution.symbol
        self.lifecycle = lifecycle
        self.breakers = breakers
        self.compound = compound
        self.calendar = calendar
        self.signal_sources = list(signal_sources)
        self.volatility_source = volatility_source
        self.store = store
        self.journal = journal
        self.alerts = alerts
        self.status_writer = status_writer
        self.clock = clock

        self._cycle_lock = threading.Lock()
        self.last_outcome: CycleOutcome | None = None
        self.stats = store.load_as(
            AUTOMATION_STATE,
            lambda raw: TradeStats.from_dict(raw, default_bankroll=config.execution.initial_bankroll),
            lambda: TradeStats(bankroll=config.execution.initial_bankroll),
        )
        self.cooldowns: dict[str, datetime] = store.load_as(COOLDOWNS, _load_cooldowns, dict)
        if self.breakers.state.initial_balance <= 0:
            self.breakers.init_balance(self.stats.bankroll)

    @property
    def mode(self) -> str:
        return self.config.execution.mode

    @property
    def is_cycle_running(self) -> bool:
        return self._cycle_lock.locked()

    # ---- persistence -----------------------------------------------------

    def _save_stats(self) -> None:
        self.store.save(AUTOMATION_STATE, self.stats.to_dict())

    def _save_cooldowns(self) -> None:
        self.store.save(COOLDOWNS, {key: to_iso(value) for key, value in self.cooldowns.items()})

    def save_all(self) -> None:
        self._save_stats()
        self._save_cooldowns()
        self.lifecycle.save()
        self.breakers.save()
        self.compound.save()

    def write_status(self) -> None:
        if self.status_writer is None:
            return
        try:
            self.status_writer.write(self.status())
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not write status snapshot")

    # ---- closures --------------------------------------------------------

    def _apply_closure(self, event: ClosedTradeEvent, now: datetime) -> None:
        self.stats.total += 1
        if event.result == RESULT_WIN:
            self.stats.wins += 1
        else:
            self.stats.losses += 1
        self.stats.bankroll = round(self.stats.bankroll + event.profit, 2)

        self.breakers.register_trade(event.result, now)
        self.breakers.update_balance(self.stats.bankroll, now)
        self.compound.on_trade_closed(self.stats.bankroll, event.profit)
        self._save_stats()
        if self.journal is not None:
            try:
                self.journal.record_closed_trade(event)
            except sqlite3.Error as exc:
                LOGGER.error("Could not journal closed trade %s: %s", event.trade.trade_id, exc)
        if self.alerts is not None:
            self.alerts.trade_closed(event, self.stats.bankroll)
        LOGGER.info(
            "Closure applied id=%s result=%s profit=%.2f bankroll=%.2f stats=%d/%d/%d",
            event.trade.trade_id,
            event.result,
            event.profit,
            self.stats.bankroll,
            self.stats.wins,
            self.stats.losses,
            self.stats.total,
        )

    def _settle_due(self, now: datetime) -> list[ClosedTradeEvent]:
        was_paused = self.breakers.state.is_paused
        events = self.lifecycle.reconcile(now, on_closed=lambda event: self._apply_closure(event, now))
        if not events:
            return events

        self._sync_live_balance(now)
        self._save_stats()

        state = self.breakers.state
        if state.is_paused and not was_paused and self.alerts is not None:
            self.alerts.breaker_tripped(state)
        return events

    def _sync_live_balance(self, now: datetime) -> None:
        if self.mode != "live":
            return
        try:
            balance = self.lifecycle.backend.get_balance()
        except BrokerAPIError as exc:
            LOGGER.warning("Could not read broker balance, keeping tracked bankroll: %s", exc)
            return
        if balance is None or abs(balance - self.stats.bankroll) < 0.005:
            return
        LOGGER.info("Broker balance %.2f differs from tracked %.2f, syncing", balance, self.stats.bankroll)
        self.stats.bankroll = balance
        self.breakers.update_balance(balance, now)

    def settle(self, now: datetime | None = None) -> list[ClosedTradeEvent]:
        """Settle due trades outside a full tick. Skipped while a tick is running."""
        if not self._cycle_lock.acquire(blocking=False):
            return []
        try:
            return self._settle_due(to_utc(now or self.clock()))
        finally:
            self._cycle_lock.release()

    # ---- cycle -----------------------------------------------------------

    def _fetch_events(self, now: datetime) -> list[Event] | None:
        try:
            return self.calendar.get_upcoming_high_impact_events(self.config.risk.news_window_minutes, now=now)
        except CalendarUnavailableError as exc:
            LOGGER.warning("Economic calendar unavailable, news state unknown: %s", exc)
            return None

    def _read_volatility(self) -> VolatilityReading:
        if self.volatility_source is None:
            return VolatilityReading(atr=None, penalty=None)
        return self.volatility_source.read(self.symbol)

    def _log_decision(
        self,
        outcome: CycleOutcome,
        *,
        allowed: bool,
        reason_codes: list[str],
        stake: float | None = None,
        assessment: RiskAssessment | None = None,
        fused: FusedSignal | None = None,
    ) -> None:
        if self.journal is None:
            return
        payload: dict[str, Any] = {"status": outcome.status, "reason": outcome.reason}
        if assessment is not None:
            payload["assessment"] = assessment.to_dict()
        if fused is not None:
            payload["fused"] = fused.to_dict()
        record = DecisionRecord(
            created_at=outcome.started_at,
            symbol=self.symbol,
            action=outcome.action,
            score=outcome.score,
            allowed=allowed,
            stake=stake,
            trade_id=outcome.trade_id,
            reason_codes=reason_codes,
            payload=payload,
        )
        try:
            self.journal.log_decision(record)
        except sqlite3.Error as exc:
            LOGGER.error("Could not journal cycle decision: %s", exc)

    def _run_cycle_locked(self, current: datetime) -> CycleOutcome:
        def outcome(status: str, reason: str, **kwargs: Any) -> CycleOutcome:
            return CycleOutcome(
                started_at=current,
                finished_at=self.clock(),
                status=status,
                reason=reason,
                closed_trades=len(closed),
                **kwargs,
            )

        closed = self._settle_due(current)

        risk_state = self.breakers.check_status(current)
        if risk_state.is_paused:
            until = risk_state.pause_until.isoformat() if risk_state.pause_until else "-"
            result = outcome(CYCLE_PAUSED, f"Trading paused until {until}")
            LOGGER.warning("Cycle skipped: %s", result.reason)
            self._log_decision(result, allowed=False, reason_codes=["CIRCUIT_BREAKER"])
            return result

        events = self._fetch_events(current)
        volatility = self._read_volatility()
        assessment = assess_risk(
            now=current,
            events=events,
            volatility=volatility.atr,
            config=self.config.risk,
            losses_in_row=risk_state.losses_in_row,
        )
        if not assessment.allowed:
            result = outcome(CYCLE_DENIED, assessment.reason)
            LOGGER.warning("Trade denied by risk assessor: %s", assessment.reason)
            self._log_decision(result, allowed=False, reason_codes=list(assessment.reason_codes), assessment=assessment)
            return result

        signals = collect_signals(
            self.signal_sources,
            symbol=self.symbol,
            now=current,
            max_age_seconds=self.config.fusion.max_signal_age_seconds,
        )
        primary_name = self.config.fusion.primary_source
        fused = fuse_signals(
            primary=signals.get(primary_name),
            secondaries={name: item for name, item in signals.items() if name != primary_name},
            volatility_penalty=volatility.penalty,
            open_trades=self.lifecycle.open_trades(),
            cooldowns=dict(self.cooldowns),
            symbol=self.symbol,
            now=current,
            config=self.config.fusion,
        )
        if not fused.is_trade:
            result = outcome(CYCLE_HOLD, fused.reason, score=fused.score)
            LOGGER.info("HOLD score=%.2f reason=%s", fused.score, fused.reason)
            self._log_decision(
                result,
                allowed=True,
                reason_codes=list(assessment.reason_codes) + ["SIGNAL_HOLD"],
                assessment=assessment,
                fused=fused,
            )
            return result

        direction = fused.action.value
        try:
            stake = self.compound.stake_for(assessment.recommended_stake_pct)
            ensure_affordable(stake, self.stats.bankroll)
        except SizingError as exc:
            result = outcome(CYCLE_DENIED, f"Sizing rejected: {exc}", action=direction, score=fused.score)
            LOGGER.warning(result.reason)
            self._log_decision(result, allowed=False, reason_codes=["SIZING_ERROR"], assessment=assessment, fused=fused)
            return result

        order = TradeOrder(
            symbol=self.symbol,
            direction=direction,
            stake=stake,
            expiry_minutes=self.config.execution.expiry_minutes,
        )
        try:
            trade = self.lifecycle.place_trade(order, current)
        except DuplicateTradeError as exc:
            result = outcome(CYCLE_HOLD, str(exc), score=fused.score)
            LOGGER.info("HOLD: %s", exc)
            self._log_decision(result, allowed=False, reason_codes=["DUPLICATE_POSITION"], assessment=assessment, fused=fused)
            return result
        except BrokerAPIError as exc:
            result = outcome(CYCLE_ERROR, f"Placement failed: {exc}", action=direction, score=fused.score)
            LOGGER.error(result.reason)
            if self.alerts is not None:
                self.alerts.send(
                    event="PLACEMENT_FAILED",
                    level="error",
                    message=str(exc),
                    dedupe_key="placement-failed",
                )
            self._log_decision(result, allowed=False, reason_codes=["BROKER_ERROR"], stake=stake, assessment=assessment, fused=fused)
            return result

        self.cooldowns[cooldown_key(self.symbol, direction)] = current
        self._save_cooldowns()

        result = outcome(
            CYCLE_TRADED,
            fused.reason,
            action=direction,
            score=fused.score,
            trade_id=trade.trade_id,
        )
        LOGGER.info(
            "Trade placed id=%s %s %s stake=%.2f score=%.2f risk_pct=%.2f",
            trade.trade_id,
            self.symbol,
            direction,
            stake,
            fused.score,
            assessment.recommended_stake_pct,
        )
        self._log_decision(
            result,
            allowed=True,
            reason_codes=list(assessment.reason_codes),
            stake=stake,
            assessment=assessment,
            fused=fused,
        )
        return result

    def run_cycle(self, now: datetime | None = None) -> CycleOutcome:
        current = to_utc(now or self.clock())
        if not self._cycle_lock.acquire(blocking=False):
            LOGGER.warning("Previous trading cycle still running, skipping this one")
            return CycleOutcome(
                started_at=current,
                finished_at=current,
                status=CYCLE_SKIPPED_OVERLAP,
                reason="previous cycle still running",
            )
        LOGGER.info("--- Trading cycle start %s ---", self.symbol)
        try:
            outcome = self._run_cycle_locked(current)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Unhandled cycle error")
            if self.alerts is not None:
                self.alerts.send(
                    event="UNHANDLED_RUNTIME_ERROR",
                    level="error",
                    message=f"Unhandled exception in trading cycle: {exc}",
                    dedupe_key="runtime-unhandled",
                )
            outcome = CycleOutcome(
                started_at=current,
                finished_at=self.clock(),
                status=CYCLE_ERROR,
                reason=f"{type(exc).__name__}: {exc}",
            )
        finally:
            self.stats.last_run = current
            self._save_stats()
            self._cycle_lock.release()
        self.last_outcome = outcome
        self.write_status()
        LOGGER.info("--- Trading cycle end status=%s ---", outcome.status)
        return outcome

    def _next_wake(self, now: datetime, deadline: datetime) -> datetime:
        settlement = self.lifecycle.next_settlement_at()
        if settlement is None:
            return deadline
        earliest = now + timedelta(seconds=SETTLEMENT_RETRY_SECONDS)
        return min(deadline, max(settlement, earliest))

    def run_forever(self, stop_event: threading.Event) -> None:
        interval = timedelta(seconds=self.config.execution.operation_interval_seconds)
        LOGGER.info(
            "Engine started | mode=%s | symbol=%s | interval=%ss",
            self.mode,
            self.symbol,
            self.config.execution.operation_interval_seconds,
        )
        while not stop_event.is_set():
            self.run_cycle()
            deadline = self.clock() + interval
            while not stop_event.is_set():
                now = self.clock()
                if now >= deadline:
                    break
                wake = self._next_wake(now, deadline)
                if stop_event.wait(max(0.0, (wake - now).total_seconds())):
                    break
                if wake < deadline:
                    try:
                        settled = self.settle()
                    except Exception:  # noqa: BLE001
                        LOGGER.exception("Settlement between cycles failed")
                        continue
                    if settled:
                        self.write_status()

    def shutdown(self, timeout: float = 30.0) -> None:
        LOGGER.warning("Shutting down, persisting state")
        if not self._cycle_lock.acquire(timeout=timeout):
            # The running tick persists its own mutations.
            LOGGER.error("Trading cycle still running after %.0fs, skipping final state save", timeout)
            return
        try:
            self.save_all()
            self.write_status()
        finally:
            self._cycle_lock.release()
        LOGGER.info("Shutdown complete")

    def _journal_summary(self) -> dict[str, Any] | None:
        if self.journal is None:
            return None
        try:
            return self.journal.trade_summary()
        except sqlite3.Error as exc:
            LOGGER.warning("Journal summary unavailable: %s", exc)
            return None

    def status(self) -> dict[str, Any]:
        open_trades = self.lifecycle.open_trades()
        cooldowns = dict(self.cooldowns)
        next_settlement = self.lifecycle.next_settlement_at()
        return {
            "mode": self.mode,
            "symbol": self.symbol,
            "is_cycle_running": self.is_cycle_running,
            "last_run": to_iso(self.stats.last_run),
            "bankroll": self.stats.bankroll,
            "stats": {
                "wins": self.stats.wins,
                "losses": self.stats.losses,
                "total": self.stats.total,
            },
            "risk_state": self.breakers.state.to_dict(),
            "compound_state": self.compound.state.to_dict(),
            "open_trade_count": len(open_trades),
            "open_trades": [trade.to_dict() for trade in open_trades],
            "next_settlement_at": to_iso(next_settlement),
            "cooldowns": {key: to_iso(value) for key, value in cooldowns.items()},
            "last_cycle": self.last_outcome.to_dict() if self.last_outcome else None,
            "journal": self._journal_summary(),
        }
