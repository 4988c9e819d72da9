"""pandas indicator series read by the shipped strategies.

Every function returns a float series aligned with its input; warm-up rows are NaN
and surface as ``DataNotReady`` through ``Instrument.indicator``.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

DEFAULT_INDICATORS: tuple[str, ...] = (
    "atr",
    "ema_a",
    "ema_b",
    "ema_c",
    "macd_a",
    "macd_b",
    "bb_a",
    "bb_b",
    "bb_c",
    "stoch_a",
    "stoch_b",
    "rsi",
)


def ema(series: pd.Series, period: int) -> pd.Series:
    return series.astype(float).ewm(span=period, adjust=False, min_periods=period).mean()


def atr(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.Series:
    """Wilder average true range."""
    prev_close = close.shift(1)
    true_range = pd.concat(
        [high - low, (high - prev_close).abs(), (low - prev_close).abs()],
        axis=1,
    ).max(axis=1)
    return true_range.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()


def macd(close: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> tuple[pd.Series, pd.Series]:
    line = ema(close, fast) - ema(close, slow)
    return line, line.ewm(span=signal, adjust=False, min_periods=signal).mean()


def bollinger_bands(close: pd.Series, period: int = 20, deviations: float = 2.0) -> tuple[pd.Series, pd.Series, pd.Series]:
    """Return (top, low, mid)."""
    mid = close.rolling(period, min_periods=period).mean()
    std = close.rolling(period, min_periods=period).std(ddof=0)
    return mid + deviations * std, mid - deviations * std, mid


def stochastic(
    high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14, smooth: int = 3
) -> tuple[pd.Series, pd.Series]:
    lowest = low.rolling(period, min_periods=period).min()
    highest = high.rolling(period, min_periods=period).max()
    width = (highest - lowest).replace(0.0, np.nan)
    k_line = (close - lowest) / width * 100.0
    return k_line, k_line.rolling(smooth, min_periods=smooth).mean()


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    delta = close.diff()
    gains = delta.clip(lower=0.0).ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    losses = (-delta.clip(upper=0.0)).ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    strength = gains / losses.replace(0.0, np.nan)
    values = 100.0 - 100.0 / (1.0 + strength)
    # no losses in the window
    return values.where(~(losses == 0.0) | gains.isna(), 100.0)


def compute_indicators(frame: pd.DataFrame) -> dict[str, np.ndarray]:
    """Compute the default indicator set from a candle frame with open/high/low/close columns."""
    high = frame["high"].astype(float)
    low = frame["low"].astype(float)
    close = frame["close"].astype(float)

    macd_line, macd_signal = macd(close)
    bb_top, bb_low, bb_mid = bollinger_bands(close)
    stoch_k, stoch_d = stochastic(high, low, close)
    series = {
        "atr": atr(high, low, close),
        "ema_a": ema(close, 8),
        "ema_b": ema(close, 13),
        "ema_c": ema(close, 21),
        "macd_a": macd_line,
        "macd_b": macd_signal,
        "bb_a": bb_top,
        "bb_b": bb_low,
        "bb_c": bb_mid,
        "stoch_a": stoch_k,
        "stoch_b": stoch_d,
        "rsi": rsi(close),
    }
    return {name: values.to_numpy(dtype=np.float64) for name, values in series.items()}
