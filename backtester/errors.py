"""Exception taxonomy for backtest runs."""

from __future__ import annotations


class BacktestError(Exception):
    """Base class for all backtester failures."""


class ConfigurationError(BacktestError, ValueError):
    """Missing or invalid configuration. Raised before any simulation starts."""


class DataError(BacktestError):
    """Upstream data defect: empty series, misaligned arrays, bad index or unknown indicator."""


class DataNotReady(DataError):
    """A value needed at this index is not available yet (indicator warm-up)."""


class CompanionUnavailable(DataError):
    """Higher-timeframe data could not be obtained for a strategy that requires it."""


class BacktestCancelled(BacktestError):
    """The run was aborted between steps; partial state is discarded."""
