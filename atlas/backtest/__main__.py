from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from atlas.backtest.engine import run_backtest_from_csv
from atlas.config import load_config
from atlas.news.calendar_provider import CalendarUnavailableError


def _resolve_path(base: Path, value: str) -> Path:
    path = Path(value)
    if path.is_absolute():
        return path
    cwd_candidate = Path.cwd() / path
    if cwd_candidate.exists():
        return cwd_candidate
    return base / path


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay a bar/signal CSV through the decision pipeline")
    parser.add_argument("--data", required=True, help="CSV with timestamp, close and <source>_action/_confidence columns")
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--events", default=None, help="Optional calendar JSON used as the news feed")
    parser.add_argument("--trades", action="store_true", help="Include the per-trade log in the output")
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    project_root = Path(__file__).resolve().parents[2]
    config = load_config(_resolve_path(project_root, args.config))
    data_path = _resolve_path(project_root, args.data)
    if not data_path.exists():
        parser.error(f"--data not found: {data_path}")
    events_path = _resolve_path(project_root, args.events) if args.events else None

    try:
        report = run_backtest_from_csv(data_path, config, events_path=events_path)
    except (CalendarUnavailableError, ValueError) as exc:
        print(f"BACKTEST_ERROR: {exc}", file=sys.stderr)
        return 2
    payload = report.to_dict()
    if not args.trades:
        payload.pop("trade_log", None)
    print(json.dumps(payload, indent=2, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
