from __future__ import annotations

import json
import sqlite3
import threading
from typing import Any

from atlas.clock import to_iso
from atlas.storage.models import RESULT_LOSS, RESULT_WIN, ClosedTradeEvent, DecisionRecord


class Journal:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()

    def log_decision(self, record: DecisionRecord) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO decisions (
                    created_at, symbol, action, score, allowed, stake, trade_id, reason_codes, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    to_iso(record.created_at),
                    record.symbol,
                    record.action,
                    record.score,
                    int(record.allowed),
                    record.stake,
                    record.trade_id,
                    json.dumps(record.reason_codes),
                    json.dumps(record.payload, default=str),
                ),
            )
            self.conn.commit()

    def record_closed_trade(self, event: ClosedTradeEvent) -> None:
        trade = event.trade
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO closed_trades (
                    trade_id, symbol, direction, stake, placed_at, expiry_at, closed_at, result, profit, backend
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(trade_id) DO UPDATE SET
                    closed_at=excluded.closed_at,
                    result=excluded.result,
                    profit=excluded.profit
                """,
                (
                    trade.trade_id,
                    trade.symbol,
                    trade.direction,
                    trade.stake,
                    to_iso(trade.placed_at),
                    to_iso(trade.expiry_at),
                    to_iso(event.closed_at),
                    event.result,
                    event.profit,
                    trade.backend,
                ),
            )
            self.conn.commit()

    def recent_decisions(self, limit: int = 20) -> list[dict[str, Any]]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT * FROM decisions ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            {
                "created_at": row["created_at"],
                "symbol": row["symbol"],
                "action": row["action"],
                "score": float(row["score"]),
                "allowed": bool(row["allowed"]),
                "stake": row["stake"],
                "trade_id": row["trade_id"],
                "reason_codes": json.loads(row["reason_codes"] or "[]"),
            }
            for row in rows
        ]

    def trade_summary(self) -> dict[str, float | int]:
        with self.lock:
            row = self.conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN result = ? THEN 1 ELSE 0 END) AS wins,
                    SUM(CASE WHEN result = ? THEN 1 ELSE 0 END) AS losses,
                    COALESCE(SUM(profit), 0) AS net_profit
                FROM closed_trades
                """,
                (RESULT_WIN, RESULT_LOSS),
            ).fetchone()
        total = int(row["total"] or 0)
        wins = int(row["wins"] or 0)
        return {
            "total": total,
            "wins": wins,
            "losses": int(row["losses"] or 0),
            "net_profit": float(row["net_profit"] or 0.0),
            "win_rate": (wins / total) if total else 0.0,
        }
