from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sqlite3
import threading
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from atlas.backtest.engine import run_backtest_from_csv
from atlas.config import AppConfig, load_config
from atlas.engine import TradingEngine
from atlas.execution.backends import BrokerBackend, ExecutionBackend, SimulatedBackend
from atlas.execution.broker_client import BrokerClient
from atlas.execution.lifecycle import TradeLifecycleManager
from atlas.execution.sizing import CompoundTracker
from atlas.monitoring.alerts import AlertConfig, AlertDispatcher
from atlas.monitoring.dashboard import StatusWriter
from atlas.monitoring.status_api import create_status_app
from atlas.news.calendar_provider import CalendarProvider, build_calendar_provider
from atlas.risk.breakers import CircuitBreakers
from atlas.signals.sources import JsonFileVolatilitySource, build_signal_sources
from atlas.storage.db import get_connection, init_db
from atlas.storage.journal import Journal
from atlas.storage.state_store import JsonStateStore

LOGGER = logging.getLogger("atlas")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Risk-gated fixed-expiry trading bot")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--simulated", action="store_true", help="Settle trades with the in-process simulator")
    mode_group.add_argument("--live", action="store_true", help="Place trades on the broker API")

    parser.add_argument("--once", action="store_true", help="Run a single trading cycle and exit.")
    parser.add_argument("--status-server", action="store_true", help="Serve /health and /status while running.")

    parser.add_argument("--backtest", action="store_true", help="Run offline backtest from CSV and exit.")
    parser.add_argument("--backtest-data", default=None)
    parser.add_argument("--backtest-events", default=None)

    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    return parser.parse_args()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def resolve_path(root: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else root / path


def resolve_mode(args: argparse.Namespace, config: AppConfig) -> str:
    if args.live:
        return "live"
    if args.simulated:
        return "simulated"
    mode = os.getenv("EXECUTION_MODE", config.execution.mode).strip().lower()
    if mode in {"sim", "simulation", "backtest"}:
        mode = "simulated"
    if mode not in {"live", "simulated"}:
        raise ValueError(f"EXECUTION_MODE must be live or simulated, got {mode!r}")
    return mode


def build_backend(config: AppConfig, mode: str) -> ExecutionBackend:
    if mode != "live":
        seed_raw = os.getenv("SIM_SEED")
        return SimulatedBackend(
            win_probability=config.execution.sim_win_probability,
            payout_rate=config.execution.sim_payout_rate,
            seed=int(seed_raw) if seed_raw else config.execution.sim_seed,
        )
    api_key = os.getenv("BROKER_API_KEY")
    if not api_key:
        raise RuntimeError("Live mode requires BROKER_API_KEY in .env")
    client = BrokerClient(
        base_url=os.getenv("BROKER_BASE_URL", config.broker.base_url),
        api_key=api_key,
        timeout_seconds=config.broker.timeout_seconds,
        request_max_attempts=int(os.getenv("BROKER_REQUEST_MAX_ATTEMPTS", str(config.broker.request_max_attempts))),
        backoff_base_seconds=float(os.getenv("BROKER_BACKOFF_BASE_SECONDS", str(config.broker.backoff_base_seconds))),
        backoff_max_seconds=float(os.getenv("BROKER_BACKOFF_MAX_SECONDS", str(config.broker.backoff_max_seconds))),
    )
    return BrokerBackend(client)


def build_news_provider(config: AppConfig, root: Path) -> CalendarProvider:
    return build_calendar_provider(
        provider_name=os.getenv("NEWS_PROVIDER", config.calendar.provider),
        events_file=resolve_path(root, config.calendar.events_file),
        http_url=os.getenv("NEWS_HTTP_URL"),
        http_token=os.getenv("NEWS_HTTP_TOKEN"),
        currencies=config.calendar.currencies,
        timeout_seconds=config.calendar.http_timeout_seconds,
        cache_ttl_seconds=config.calendar.http_cache_ttl_seconds,
        request_max_attempts=config.calendar.request_max_attempts,
        backoff_base_seconds=config.calendar.backoff_base_seconds,
    )


def build_alert_dispatcher(config: AppConfig) -> AlertDispatcher:
    return AlertDispatcher(AlertConfig.from_env(enabled=config.monitoring.alerts_enabled))


def build_engine(config: AppConfig, root: Path, mode: str) -> tuple[TradingEngine, sqlite3.Connection]:
    config.execution.mode = mode
    store = JsonStateStore(resolve_path(root, os.getenv("STATE_DIR", config.storage.state_dir)))
    conn = get_connection(resolve_path(root, config.storage.journal_path))
    init_db(conn)
    journal = Journal(conn)
    LOGGER.info("State dir: %s | journal: %s", store.state_dir, config.storage.journal_path)

    breakers = CircuitBreakers(config.risk, store)
    compound = CompoundTracker(config.sizing, store, initial_balance=config.execution.initial_bankroll)
    lifecycle = TradeLifecycleManager(backend=build_backend(config, mode), store=store)
    engine = TradingEngine(
        config=config,
        lifecycle=lifecycle,
        breakers=breakers,
        compound=compound,
        calendar=build_news_provider(config, root),
        signal_sources=build_signal_sources(config.signals.files, base_dir=root),
        volatility_source=JsonFileVolatilitySource(resolve_path(root, config.signals.volatility_file)),
        store=store,
        journal=journal,
        alerts=build_alert_dispatcher(config),
        status_writer=StatusWriter(resolve_path(root, os.getenv("STATUS_PATH", config.monitoring.status_path))),
    )
    return engine, conn


def start_status_server(engine: TradingEngine, config: AppConfig) -> threading.Thread:
    app = create_status_app(status_provider=engine.status)
    host = os.getenv("STATUS_HOST", config.monitoring.status_host)
    port = int(os.getenv("PORT", str(config.monitoring.status_port)))
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="status-api", daemon=True)
    thread.start()
    LOGGER.info("Status API listening on http://%s:%d", host, port)
    return thread


def run_backtest_mode(args: argparse.Namespace, config: AppConfig, root: Path) -> None:
    if not args.backtest_data:
        raise RuntimeError("--backtest requires --backtest-data")
    report = run_backtest_from_csv(
        resolve_path(root, args.backtest_data),
        config,
        events_path=resolve_path(root, args.backtest_events) if args.backtest_events else None,
    )
    payload = report.to_dict()
    payload.pop("trade_log", None)
    LOGGER.info("Backtest summary:\n%s", json.dumps(payload, indent=2, ensure_ascii=True))


def run() -> None:
    args = parse_args()
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    config = load_config(resolve_path(root, args.config))

    if args.backtest:
        run_backtest_mode(args, config, root)
        return

    mode = resolve_mode(args, config)
    engine, conn = build_engine(config, root, mode)
    LOGGER.info("*** Starting | mode=%s | symbol=%s ***", mode, config.execution.symbol)

    try:
        if args.once:
            outcome = engine.run_cycle()
            LOGGER.info("Single cycle finished: %s", json.dumps(outcome.to_dict(), ensure_ascii=True))
            return

        if args.status_server:
            start_status_server(engine, config)

        stop_event = threading.Event()

        def _stop(signum: int, _frame: object) -> None:
            LOGGER.info("Received signal %s, shutting down.", signum)
            stop_event.set()

        signal.signal(signal.SIGINT, _stop)
        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, _stop)

        engine.run_forever(stop_event)
    finally:
        engine.shutdown()
        conn.close()


if __name__ == "__main__":
    run()
