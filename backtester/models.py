"""Data models for instruments, candles and trade records."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import numpy as np
import pandas as pd

from core.market_metadata import normalize_market, normalize_symbol, normalize_timeframe

from .errors import ConfigurationError, DataError, DataNotReady

_EPOCH_UTC = datetime(1970, 1, 1, tzinfo=timezone.utc)
_PRICE_COLUMNS: tuple[str, ...] = ("open", "high", "low", "close", "volume")


def iso_utc(value: Any) -> Optional[str]:
    """Serialize datetime-like values to ISO8601 UTC string when possible."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat().replace("+00:00", "Z")
        except TypeError:
            return str(value)
    return str(value)


def ns_to_datetime(value: int) -> datetime:
    return pd.Timestamp(int(value), tz="UTC").to_pydatetime()


def to_time_ns(value: Any) -> int:
    """Coerce ints, datetimes and ISO strings to UTC nanoseconds since epoch."""
    if isinstance(value, (int, np.integer)):
        return int(value)
    if isinstance(value, datetime):
        dt_value = value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)
        delta = dt_value - _EPOCH_UTC
        return ((delta.days * 86400) + delta.seconds) * 1_000_000_000 + (delta.microseconds * 1_000)
    timestamp = pd.Timestamp(str(value).replace("Z", "+00:00"))
    if timestamp.tzinfo is None:
        timestamp = timestamp.tz_localize("UTC")
    return int(timestamp.value)


class TradeDirection(str, Enum):
    LONG = "Long"
    SHORT = "Short"
    NONE = "None"

    @property
    def sign(self) -> int:
        if self is TradeDirection.LONG:
            return 1
        if self is TradeDirection.SHORT:
            return -1
        return 0

    @classmethod
    def from_value(cls, value: Any) -> "TradeDirection":
        key = str(value or "").strip().upper()
        if key in {"LONG", "BUY"}:
            return cls.LONG
        if key in {"SHORT", "SELL"}:
            return cls.SHORT
        if key in {"NONE", ""}:
            return cls.NONE
        raise ValueError(f"Unsupported trade direction: {value}")


class TradeType(str, Enum):
    ENTRY_LONG = "EntryLong"
    ENTRY_SHORT = "EntryShort"
    EXIT_LONG = "ExitLong"
    EXIT_SHORT = "ExitShort"
    ORDER_IN_LONG = "OrderInLong"
    ORDER_IN_SHORT = "OrderInShort"
    ORDER_OUT_LONG = "OrderOutLong"
    ORDER_OUT_SHORT = "OrderOutShort"
    STOP_LOSS_LONG = "StopLossLong"
    STOP_LOSS_SHORT = "StopLossShort"

    @property
    def direction(self) -> TradeDirection:
        return TradeDirection.LONG if self.value.endswith("Long") else TradeDirection.SHORT

    @property
    def is_entry(self) -> bool:
        return self in _ENTRY_TRADE_TYPES

    @property
    def is_order(self) -> bool:
        return self.value.startswith("Order")

    @property
    def is_stop(self) -> bool:
        return self.value.startswith("StopLoss")

    @classmethod
    def market_in(cls, direction: TradeDirection) -> "TradeType":
        return cls.ENTRY_LONG if direction is TradeDirection.LONG else cls.ENTRY_SHORT

    @classmethod
    def market_out(cls, direction: TradeDirection) -> "TradeType":
        return cls.EXIT_LONG if direction is TradeDirection.LONG else cls.EXIT_SHORT

    @classmethod
    def order_in(cls, direction: TradeDirection) -> "TradeType":
        return cls.ORDER_IN_LONG if direction is TradeDirection.LONG else cls.ORDER_IN_SHORT

    @classmethod
    def order_out(cls, direction: TradeDirection) -> "TradeType":
        return cls.ORDER_OUT_LONG if direction is TradeDirection.LONG else cls.ORDER_OUT_SHORT

    @classmethod
    def stop_loss(cls, direction: TradeDirection) -> "TradeType":
        return cls.STOP_LOSS_LONG if direction is TradeDirection.LONG else cls.STOP_LOSS_SHORT


_ENTRY_TRADE_TYPES = frozenset(
    {TradeType.ENTRY_LONG, TradeType.ENTRY_SHORT, TradeType.ORDER_IN_LONG, TradeType.ORDER_IN_SHORT}
)


class StrategyType(str, Enum):
    ONLY_LONG = "OnlyLong"
    ONLY_SHORT = "OnlyShort"
    LONG_SHORT = "LongShort"
    ONLY_LONG_MTF = "OnlyLongMTF"
    ONLY_SHORT_MTF = "OnlyShortMTF"
    LONG_SHORT_MTF = "LongShortMTF"

    @property
    def is_multi_timeframe(self) -> bool:
        return self.value.endswith("MTF")

    @property
    def allows_long(self) -> bool:
        return not self.value.startswith("OnlyShort")

    @property
    def allows_short(self) -> bool:
        return not self.value.startswith("OnlyLong")

    @property
    def is_long_only(self) -> bool:
        return self.value.startswith("OnlyLong")

    @classmethod
    def from_value(cls, value: Any) -> "StrategyType":
        if isinstance(value, StrategyType):
            return value
        key = str(value or "").strip().replace("_", "").replace("-", "").lower()
        for member in cls:
            if member.value.lower() == key or member.name.replace("_", "").lower() == key:
                return member
        raise ConfigurationError(f"Unsupported strategy_type: {value}")


class CandleType(str, Enum):
    DEFAULT = "Default"
    DOJI = "Doji"
    KARAKASA = "Karakasa"
    BEARISH_KARAKASA = "BearishKarakasa"
    HANGING_MAN = "HangingMan"
    MARUBOZU = "Marubozu"
    BEARISH_MARUBOZU = "BearishMarubozu"
    ENGULFING = "Engulfing"
    BEARISH_ENGULFING = "BearishEngulfing"
    HARAMI = "Harami"
    BEARISH_HARAMI = "BearishHarami"


def _ratio(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return math.inf if numerator > 0 else 0.0
    return numerator / denominator


def classify_candle(
    ohlc: tuple[float, float, float, float],
    prev_ohlc: tuple[float, float, float, float] | None = None,
) -> CandleType:
    """Classify the candle shape. Single-bar shapes win over two-bar shapes."""
    o, h, l, c = ohlc
    rng = h - l
    span = 0.001 + rng

    if o == c or abs(o - c) <= rng * 0.1:
        return CandleType.DOJI
    if rng > 3.0 * (o - c) and (c - l) / span > 0.6 and (o - l) / span > 0.6:
        return CandleType.KARAKASA
    if rng > 3.0 * (o - c) and (h - c) / span > 0.6 and (h - o) / span > 0.6:
        return CandleType.BEARISH_KARAKASA
    if rng > 4.0 * (o - c) and (c - l) / span > 0.75 and (o - l) / span > 0.75:
        return CandleType.HANGING_MAN
    if o <= l and _ratio(l - o, o) < 0.1 and h >= c and _ratio(h - c, c) < 0.1:
        return CandleType.MARUBOZU
    if o >= h and _ratio(h - o, o) < 0.1 and l <= c and _ratio(l - c, c) < 0.1:
        return CandleType.BEARISH_MARUBOZU

    if prev_ohlc is None:
        return CandleType.DEFAULT
    po, _ph, _pl, pc = prev_ohlc
    if po > pc and c > o and c >= po and pc >= o and (c - o) > (po - pc):
        return CandleType.ENGULFING
    if pc > po and o > c and o >= pc and po >= c and (o - c) > (pc - po):
        return CandleType.BEARISH_ENGULFING
    if po > pc and c > o and c <= po and pc <= o and (c - o) < (po - pc):
        return CandleType.HARAMI
    if pc > po and o > c and o <= pc and po <= c and (o - c) < (pc - po):
        return CandleType.BEARISH_HARAMI
    return CandleType.DEFAULT


def classify_series(
    open_: np.ndarray, high: np.ndarray, low: np.ndarray, close: np.ndarray
) -> tuple[CandleType, ...]:
    kinds: list[CandleType] = []
    prev: tuple[float, float, float, float] | None = None
    for o, h, l, c in zip(open_.tolist(), high.tolist(), low.tolist(), close.tolist()):
        current = (o, h, l, c)
        kinds.append(classify_candle(current, prev))
        prev = current
    return tuple(kinds)


@dataclass(frozen=True)
class Candle:
    time_utc: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    candle_type: CandleType = CandleType.DEFAULT

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": iso_utc(self.time_utc),
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
            "volume": float(self.volume),
            "candle_type": self.candle_type.value,
        }


@dataclass(frozen=True)
class Pattern:
    """Chart pattern annotation produced upstream, located by candle index."""

    pattern_type: str
    index: int
    target: float | None = None
    active: bool = True

    @classmethod
    def from_raw(cls, value: Any) -> "Pattern":
        if isinstance(value, Pattern):
            return value
        if not isinstance(value, Mapping):
            raise DataError("pattern entries must be mappings")
        target = value.get("target")
        return cls(
            pattern_type=str(value.get("pattern_type") or value.get("type") or ""),
            index=int(value["index"]),
            target=None if target in (None, "") else float(target),
            active=bool(value.get("active", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern_type": self.pattern_type,
            "index": int(self.index),
            "target": None if self.target is None else float(self.target),
            "active": bool(self.active),
        }


def _as_column(name: str, values: Any, dtype: Any) -> np.ndarray:
    try:
        array = np.array(values, dtype=dtype)
    except (TypeError, ValueError) as exc:
        raise DataError(f"Column {name} is not numeric: {exc}") from exc
    if array.ndim != 1:
        raise DataError(f"Column {name} must be one-dimensional")
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class Instrument:
    """Immutable columnar candle series with aligned indicator arrays."""

    symbol: str
    time_frame: str
    time_ns: np.ndarray
    open: np.ndarray
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray
    volume: np.ndarray
    candle_types: tuple[CandleType, ...] = ()
    indicators: Mapping[str, np.ndarray] = field(default_factory=dict)
    patterns: tuple[Pattern, ...] = ()
    market: str = "FOREX"

    def __post_init__(self) -> None:
        rows = int(self.time_ns.size)
        for name in _PRICE_COLUMNS:
            if getattr(self, name).size != rows:
                raise DataError(f"{self.symbol}: column {name} has {getattr(self, name).size} rows, expected {rows}")
        if len(self.candle_types) != rows:
            raise DataError(f"{self.symbol}: candle_types has {len(self.candle_types)} rows, expected {rows}")
        for name, series in self.indicators.items():
            if series.size != rows:
                raise DataError(f"{self.symbol}: indicator {name} has {series.size} rows, expected {rows}")
        if rows > 1 and bool(np.any(np.diff(self.time_ns) <= 0)):
            raise DataError(f"{self.symbol}: candle timestamps must be strictly increasing")

    @classmethod
    def from_columns(
        cls,
        symbol: str,
        time_frame: str,
        *,
        time_ns: Any,
        open: Any,
        high: Any,
        low: Any,
        close: Any,
        volume: Any | None = None,
        indicators: Mapping[str, Any] | None = None,
        patterns: Any = (),
        candle_types: Any = None,
        market: str = "FOREX",
    ) -> "Instrument":
        times = np.array([to_time_ns(item) for item in time_ns], dtype=np.int64)
        times.setflags(write=False)
        open_ = _as_column("open", open, np.float64)
        high_ = _as_column("high", high, np.float64)
        low_ = _as_column("low", low, np.float64)
        close_ = _as_column("close", close, np.float64)
        volume_ = _as_column("volume", volume if volume is not None else np.zeros(times.size), np.float64)
        if candle_types is None:
            kinds = classify_series(open_, high_, low_, close_) if open_.size == times.size == high_.size == low_.size == close_.size else ()
        else:
            kinds = tuple(CandleType(item) for item in candle_types)
        return cls(
            symbol=normalize_symbol(symbol),
            time_frame=normalize_timeframe(time_frame),
            time_ns=times,
            open=open_,
            high=high_,
            low=low_,
            close=close_,
            volume=volume_,
            candle_types=kinds,
            indicators={str(name): _as_column(str(name), values, np.float64) for name, values in (indicators or {}).items()},
            patterns=tuple(Pattern.from_raw(item) for item in patterns or ()),
            market=normalize_market(market),
        )

    @classmethod
    def from_dataframe(
        cls,
        frame: pd.DataFrame,
        symbol: str,
        time_frame: str,
        *,
        market: str = "FOREX",
        indicators: Mapping[str, Any] | None = None,
        patterns: Any = (),
    ) -> "Instrument":
        missing = sorted({"time", "open", "high", "low", "close"}.difference(frame.columns))
        if missing:
            raise DataError(f"Candle frame for {symbol} is missing columns {missing}")
        return cls.from_columns(
            symbol,
            time_frame,
            time_ns=frame["time"].tolist(),
            open=frame["open"].to_numpy(dtype=np.float64),
            high=frame["high"].to_numpy(dtype=np.float64),
            low=frame["low"].to_numpy(dtype=np.float64),
            close=frame["close"].to_numpy(dtype=np.float64),
            volume=frame["volume"].to_numpy(dtype=np.float64) if "volume" in frame.columns else None,
            indicators=indicators,
            patterns=patterns,
            market=market,
        )

    @classmethod
    def from_record(cls, payload: Mapping[str, Any]) -> "Instrument":
        """Build from the JSON-shaped record served by the scanner/storage layer."""
        if not isinstance(payload, Mapping):
            raise DataError("Instrument record must be a JSON object")
        data = payload.get("data")
        if not isinstance(data, list):
            raise DataError("Instrument record requires a data list")
        try:
            return cls.from_columns(
                str(payload.get("symbol") or ""),
                str(payload.get("time_frame") or ""),
                time_ns=[row["date"] for row in data],
                open=[row["open"] for row in data],
                high=[row["high"] for row in data],
                low=[row["low"] for row in data],
                close=[row["close"] for row in data],
                volume=[row.get("volume", 0.0) for row in data],
                candle_types=[row["candle_type"] for row in data] if data and all("candle_type" in row for row in data) else None,
                indicators={
                    name: [np.nan if item is None else item for item in values]
                    for name, values in dict(payload.get("indicators") or {}).items()
                },
                patterns=payload.get("patterns") or (),
                market=str(payload.get("market") or "FOREX"),
            )
        except (KeyError, TypeError) as exc:
            raise DataError(f"Malformed instrument record: {exc}") from exc
        except ValueError as exc:
            raise DataError(f"Malformed instrument record: {exc}") from exc

    def to_record(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "time_frame": self.time_frame,
            "market": self.market,
            "data": [self.candle(index).to_dict() for index in range(self.rows)],
            "indicators": {
                name: [None if math.isnan(value) else float(value) for value in series.tolist()]
                for name, series in self.indicators.items()
            },
            "patterns": [item.to_dict() for item in self.patterns],
        }

    @property
    def rows(self) -> int:
        return int(self.time_ns.size)

    def _check_index(self, index: int) -> int:
        if index < 0 or index >= self.rows:
            raise DataError(f"{self.symbol} {self.time_frame}: index {index} out of range for {self.rows} candles")
        return int(index)

    def time_utc(self, index: int) -> datetime:
        return ns_to_datetime(int(self.time_ns[self._check_index(index)]))

    def candle(self, index: int) -> Candle:
        idx = self._check_index(index)
        return Candle(
            time_utc=ns_to_datetime(int(self.time_ns[idx])),
            open=float(self.open[idx]),
            high=float(self.high[idx]),
            low=float(self.low[idx]),
            close=float(self.close[idx]),
            volume=float(self.volume[idx]),
            candle_type=self.candle_types[idx],
        )

    def has_indicator(self, name: str) -> bool:
        return name in self.indicators

    def indicator(self, name: str, index: int) -> float:
        series = self.indicators.get(name)
        if series is None:
            raise DataError(f"{self.symbol} {self.time_frame}: unknown indicator {name}")
        value = float(series[self._check_index(index)])
        if math.isnan(value):
            raise DataNotReady(f"{self.symbol} {self.time_frame}: {name} not ready at index {index}")
        return value

    def index_at_or_before(self, time_ns: int) -> int | None:
        """Most recent candle whose timestamp is <= ``time_ns``."""
        position = int(np.searchsorted(self.time_ns, int(time_ns), side="right")) - 1
        return None if position < 0 else position

    def current_pattern(self, index: int) -> Pattern | None:
        found: Pattern | None = None
        for item in self.patterns:
            if item.index <= index and (found is None or item.index >= found.index):
                found = item
        return found


def htf_index(index: int, instrument: Instrument, htf: Instrument | None) -> int | None:
    """Align a primary-timeframe index to the companion candle covering it."""
    if htf is None or htf.rows == 0:
        return None
    return htf.index_at_or_before(int(instrument.time_ns[instrument._check_index(index)]))


def htf_value(
    index: int,
    instrument: Instrument,
    htf: Instrument | None,
    fn: Callable[[int, int, Instrument], Any],
    default: Any = False,
) -> Any:
    """Evaluate ``fn(idx, prev_idx, htf)`` on the aligned companion candle, or return ``default``."""
    idx = htf_index(index, instrument, htf)
    if idx is None or htf is None:
        return default
    return fn(idx, max(idx - 1, 0), htf)


@dataclass(frozen=True)
class Pricing:
    symbol: str
    pip_size: float
    spread: float = 0.0

    @property
    def half_spread(self) -> float:
        return self.spread / 2.0

    @property
    def spread_pips(self) -> float:
        return self.spread / self.pip_size if self.pip_size else 0.0

    def to_pips(self, pips: float) -> float:
        """Convert a pip count to a price distance."""
        return float(pips) * self.pip_size

    def to_dict(self) -> dict[str, Any]:
        return {"symbol": self.symbol, "pip_size": float(self.pip_size), "spread": float(self.spread)}


@dataclass(frozen=True)
class TradeIn:
    id: int
    trade_type: TradeType
    index_in: int
    date_in: datetime
    price_in: float
    size: float
    spread: float
    order_id: int | None = None

    @property
    def direction(self) -> TradeDirection:
        return self.trade_type.direction

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": int(self.id),
            "trade_type": self.trade_type.value,
            "direction": self.direction.value,
            "index_in": int(self.index_in),
            "date_in": iso_utc(self.date_in),
            "price_in": float(self.price_in),
            "size": float(self.size),
            "spread": float(self.spread),
            "order_id": self.order_id,
        }


@dataclass(frozen=True)
class TradeOut:
    id: int
    trade_type: TradeType
    trade_in_id: int
    trade_in_type: TradeType
    index_in: int
    date_in: datetime
    price_in: float
    index_out: int
    date_out: datetime
    price_out: float
    size: float
    spread_out: float
    profit: float
    profit_per: float
    run_up: float
    run_up_per: float
    draw_down: float
    draw_down_per: float
    stop_loss: bool = False
    order_id: int | None = None

    @property
    def direction(self) -> TradeDirection:
        return self.trade_in_type.direction

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": int(self.id),
            "trade_type": self.trade_type.value,
            "direction": self.direction.value,
            "trade_in_id": int(self.trade_in_id),
            "trade_in_type": self.trade_in_type.value,
            "index_in": int(self.index_in),
            "date_in": iso_utc(self.date_in),
            "price_in": float(self.price_in),
            "index_out": int(self.index_out),
            "date_out": iso_utc(self.date_out),
            "price_out": float(self.price_out),
            "size": float(self.size),
            "spread_out": float(self.spread_out),
            "profit": float(self.profit),
            "profit_per": float(self.profit_per),
            "run_up": float(self.run_up),
            "run_up_per": float(self.run_up_per),
            "draw_down": float(self.draw_down),
            "draw_down_per": float(self.draw_down_per),
            "stop_loss": bool(self.stop_loss),
            "order_id": self.order_id,
        }
