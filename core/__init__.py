"""Core utilities shared by the backtester, strategies and CLI."""

from .logging_setup import get_logger, setup_logging, teardown_logging
from .market_metadata import (
    MARKETS,
    SUPPORTED_TIMEFRAMES,
    SYMBOL_ALIASES,
    TIMEFRAME_ALIASES,
    TIMEFRAME_NS,
    get_instrument_class,
    get_pip_value,
    normalize_market,
    normalize_symbol,
    normalize_timeframe,
    resolve_symbol_alias,
    timeframe_duration_ns,
)

__all__ = [
    "setup_logging",
    "teardown_logging",
    "get_logger",
    "MARKETS",
    "SYMBOL_ALIASES",
    "TIMEFRAME_ALIASES",
    "TIMEFRAME_NS",
    "SUPPORTED_TIMEFRAMES",
    "resolve_symbol_alias",
    "normalize_symbol",
    "normalize_timeframe",
    "normalize_market",
    "timeframe_duration_ns",
    "get_instrument_class",
    "get_pip_value",
]
