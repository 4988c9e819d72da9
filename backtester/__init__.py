"""Candle-driven strategy backtesting engine."""

from .config import BacktestRunConfig, EngineConfig, SpreadConfig, StrategyConfig
from .errors import (
    BacktestCancelled,
    BacktestError,
    CompanionUnavailable,
    ConfigurationError,
    DataError,
    DataNotReady,
)
from .models import Instrument, Pricing, StrategyType, TradeDirection, TradeIn, TradeOut, TradeType
from .results import BacktestResult, StrategySummary, build_backtest_result, summarize_strategy
from .runtime import BacktestEngine, BacktestRun
from .strategy import Position, Strategy

__all__ = [
    "BacktestCancelled",
    "BacktestEngine",
    "BacktestError",
    "BacktestResult",
    "BacktestRun",
    "BacktestRunConfig",
    "CompanionUnavailable",
    "ConfigurationError",
    "DataError",
    "DataNotReady",
    "EngineConfig",
    "Instrument",
    "Position",
    "Pricing",
    "SpreadConfig",
    "Strategy",
    "StrategyConfig",
    "StrategySummary",
    "StrategyType",
    "TradeDirection",
    "TradeIn",
    "TradeOut",
    "TradeType",
    "build_backtest_result",
    "summarize_strategy",
]
