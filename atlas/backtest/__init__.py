from atlas.backtest.engine import (
    BacktestReport,
    BacktestTrade,
    load_bars_csv,
    run_backtest,
    run_backtest_from_csv,
)

__all__ = [
    "BacktestReport",
    "BacktestTrade",
    "load_bars_csv",
    "run_backtest",
    "run_backtest_from_csv",
]
